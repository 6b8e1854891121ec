import base64
import logging
import os
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.backends import default_backend

logger = logging.getLogger(__name__)


class CryptoManager:
    """
    Handles symmetrical encryption for sensitive fields (MFA secrets, phone)
    using AES-256-GCM, plus Argon2id hashing for passwords and backup codes.
    """

    def __init__(self, encryption_key: str, password_hasher: PasswordHasher):
        try:
            self.key = base64.urlsafe_b64decode(encryption_key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid Encryption Key configuration: {e}")
        if len(self.key) != 32:
            raise ValueError("Invalid Encryption Key configuration: key must be 32 bytes (256 bits) for AES-256")
        self.ph = password_hasher
        self._dummy_hash = None

    @classmethod
    def from_config(cls, config) -> 'CryptoManager':
        key = config.ENCRYPTION_KEY
        if not key:
            # An ephemeral key makes every stored secret unreadable after restart
            logger.warning("ENCRYPTION_KEY not configured - generating an ephemeral key")
            key = base64.urlsafe_b64encode(os.urandom(32)).decode()
        hasher = PasswordHasher(
            time_cost=config.ARGON2_TIME_COST,
            memory_cost=config.ARGON2_MEMORY_COST,
            parallelism=config.ARGON2_PARALLELISM,
            hash_len=config.ARGON2_HASH_LENGTH,
            salt_len=config.ARGON2_SALT_LENGTH,
        )
        return cls(key, hasher)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypts data using AES-GCM.
        IV is generated randomly for every operation.
        Returns: iv_hex:ciphertext_hex:tag_hex
        """
        iv = os.urandom(12)  # NIST recommended IV length for GCM
        encryptor = Cipher(
            algorithms.AES(self.key),
            modes.GCM(iv),
            backend=default_backend()
        ).encryptor()

        ciphertext = encryptor.update(plaintext.encode()) + encryptor.finalize()

        return f"{iv.hex()}:{ciphertext.hex()}:{encryptor.tag.hex()}"

    def decrypt(self, encrypted_payload: str) -> str:
        """
        Decrypts AES-GCM payload.
        Verifies authentication tag to prevent tampering.
        """
        try:
            iv_hex, ct_hex, tag_hex = encrypted_payload.split(':')
            iv = bytes.fromhex(iv_hex)
            ciphertext = bytes.fromhex(ct_hex)
            tag = bytes.fromhex(tag_hex)

            decryptor = Cipher(
                algorithms.AES(self.key),
                modes.GCM(iv, tag),
                backend=default_backend()
            ).decryptor()

            return (decryptor.update(ciphertext) + decryptor.finalize()).decode()
        except (ValueError, InvalidTag):
            raise ValueError("Decryption failed or data tampered")

    def hash_password(self, password: str) -> str:
        return self.ph.hash(password)

    def equalize_timing(self, password: Optional[str]) -> None:
        """Spend one hash verification when there is no account to check against."""
        if self._dummy_hash is None:
            self._dummy_hash = self.ph.hash(os.urandom(16).hex())
        self.verify_password(self._dummy_hash, password or '')

    def verify_password(self, hash: Optional[str], password: str) -> bool:
        if not hash or password is None:
            return False
        try:
            return self.ph.verify(hash, password)
        except VerifyMismatchError:
            return False
        except (VerificationError, InvalidHashError):
            logger.warning("Stored hash could not be verified")
            return False


class FieldCodec:
    """
    Explicit encode/decode boundary for encrypted account fields.

    Models only ever hold ciphertext; services call ``encode`` before
    assigning and ``decode`` right before use.
    """

    def __init__(self, crypto: CryptoManager):
        self.crypto = crypto

    def encode(self, value: Optional[str]) -> Optional[str]:
        if value is None or value == '':
            return None
        return self.crypto.encrypt(value)

    def decode(self, stored: Optional[str]) -> Optional[str]:
        if not stored:
            return None
        return self.crypto.decrypt(stored)
