import base64

import pytest
from argon2 import PasswordHasher

from projecthub_auth.config import TestingConfig
from projecthub_auth.crypto import CryptoManager, FieldCodec


@pytest.fixture
def crypto():
    return CryptoManager.from_config(TestingConfig())


class TestFieldEncryption:
    def test_round_trip(self, crypto):
        payload = crypto.encrypt('JBSWY3DPEHPK3PXP')
        assert payload != 'JBSWY3DPEHPK3PXP'
        assert crypto.decrypt(payload) == 'JBSWY3DPEHPK3PXP'

    def test_fresh_iv_every_time(self, crypto):
        assert crypto.encrypt('same') != crypto.encrypt('same')

    def test_tampered_ciphertext_rejected(self, crypto):
        iv, ct, tag = crypto.encrypt('secret-value').split(':')
        flipped = format(int(ct[:2], 16) ^ 0x01, '02x') + ct[2:]
        with pytest.raises(ValueError, match='tampered'):
            crypto.decrypt(f'{iv}:{flipped}:{tag}')

    def test_malformed_payload_rejected(self, crypto):
        with pytest.raises(ValueError):
            crypto.decrypt('not-a-payload')

    def test_key_must_be_32_bytes(self):
        short_key = base64.urlsafe_b64encode(b'x' * 16).decode()
        with pytest.raises(ValueError, match='32 bytes'):
            CryptoManager(short_key, PasswordHasher())

    def test_other_key_cannot_decrypt(self, crypto):
        other_key = base64.urlsafe_b64encode(b'k' * 32).decode()
        other = CryptoManager(other_key, PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1))
        with pytest.raises(ValueError):
            other.decrypt(crypto.encrypt('secret'))


class TestFieldCodec:
    def test_empty_values_stay_empty(self, crypto):
        codec = FieldCodec(crypto)
        assert codec.encode(None) is None
        assert codec.encode('') is None
        assert codec.decode(None) is None

    def test_encode_then_decode(self, crypto):
        codec = FieldCodec(crypto)
        stored = codec.encode('+972-50-0000000')
        assert '+972' not in stored
        assert codec.decode(stored) == '+972-50-0000000'


class TestPasswordHashing:
    def test_argon2id_hash_verifies(self, crypto):
        hashed = crypto.hash_password('Str0ng!Passw0rd#2024')
        assert hashed.startswith('$argon2id$')
        assert crypto.verify_password(hashed, 'Str0ng!Passw0rd#2024')
        assert not crypto.verify_password(hashed, 'something-else')

    def test_missing_hash_never_verifies(self, crypto):
        assert not crypto.verify_password(None, 'anything')
        assert not crypto.verify_password('', 'anything')

    def test_garbage_hash_is_a_mismatch(self, crypto):
        assert not crypto.verify_password('not-an-argon2-hash', 'anything')

    def test_equalize_timing_never_raises(self, crypto):
        crypto.equalize_timing('whatever')
        crypto.equalize_timing(None)
