"""Tests for bearer tokens and the bounded per-account session list."""
import jwt
import pytest

from projecthub_auth.errors import NotFoundError, SessionRevokedError, TokenInvalidError
from projecthub_auth.tokens import TokenService


class TestTokenService:
    @pytest.fixture(autouse=True)
    def setup(self, services, clock):
        self.clock = clock
        self.tokens = services.tokens
        self.config = services.config

    def test_payload_names_account_and_session(self):
        payload = self.tokens.decode_token(self.tokens.create_token('acct-1', 'sess-1'))
        assert payload['sub'] == 'acct-1'
        assert payload['sid'] == 'sess-1'
        assert payload['exp'] - payload['iat'] == 30 * 24 * 3600

    def test_missing_token(self):
        with pytest.raises(TokenInvalidError, match='no token'):
            self.tokens.decode_token('')

    def test_wrong_signature(self):
        forged = jwt.encode({'sub': 'acct-1', 'sid': 's', 'exp': 4102444800}, 'other-key', algorithm='HS256')
        with pytest.raises(TokenInvalidError, match='token failed'):
            self.tokens.decode_token(forged)

    def test_session_id_is_required(self):
        token = jwt.encode({'sub': 'acct-1', 'exp': 4102444800}, self.config.JWT_SECRET_KEY, algorithm='HS256')
        with pytest.raises(TokenInvalidError):
            self.tokens.decode_token(token)

    def test_expired_token(self):
        token = self.tokens.create_token('acct-1', 'sess-1')
        self.clock.advance(days=30)
        with pytest.raises(TokenInvalidError, match='token failed'):
            self.tokens.decode_token(token)

    def test_valid_until_expiry(self):
        token = TokenService(self.config, self.clock).create_token('acct-1', 'sess-1')
        self.clock.advance(days=29, hours=23)
        assert self.tokens.decode_token(token)['sub'] == 'acct-1'

    def test_mfa_challenge_names_account(self):
        challenge = self.tokens.create_mfa_challenge('acct-1')
        assert self.tokens.decode_mfa_challenge(challenge) == 'acct-1'

    def test_mfa_challenge_expires_after_five_minutes(self):
        challenge = self.tokens.create_mfa_challenge('acct-1')
        self.clock.advance(minutes=5)
        with pytest.raises(TokenInvalidError, match='MFA session'):
            self.tokens.decode_mfa_challenge(challenge)

    def test_challenge_and_session_token_are_not_interchangeable(self):
        challenge = self.tokens.create_mfa_challenge('acct-1')
        session_token = self.tokens.create_token('acct-1', 'sess-1')

        with pytest.raises(TokenInvalidError):
            self.tokens.decode_token(challenge)
        with pytest.raises(TokenInvalidError):
            self.tokens.decode_mfa_challenge(session_token)

    def test_forged_mfa_challenge(self):
        forged = jwt.encode({'sub': 'acct-1', 'purpose': 'mfa', 'exp': 4102444800}, 'other-key', algorithm='HS256')
        with pytest.raises(TokenInvalidError):
            self.tokens.decode_mfa_challenge(forged)
        with pytest.raises(TokenInvalidError):
            self.tokens.decode_mfa_challenge('')


class TestSessionManager:
    @pytest.fixture(autouse=True)
    def setup(self, services, db, make_account, email, clock):
        self.db = db
        self.email = email
        self.clock = clock
        self.manager = services.sessions(db)
        self.account = make_account()

    def open_session(self, ip='10.0.0.1'):
        return self.manager.create_session(self.account, ip, 'pytest-agent')

    def alerts(self):
        return [m for m in self.email.sent if m['template'] == 'loginAlert']

    def test_authenticate_round_trip(self):
        issued = self.open_session()
        self.clock.advance(minutes=3)

        account, session = self.manager.authenticate(issued.token)

        assert account.id == self.account.id
        assert session.session_id == issued.session_id
        assert session.last_activity == self.clock()
        assert session.location == 'Tel Aviv, IL'

    def test_oldest_session_is_evicted(self):
        issued = [self.open_session() for _ in range(6)]

        ids = [s.session_id for s in self.account.active_sessions]
        assert len(ids) == 5
        assert issued[0].session_id not in ids
        assert ids == [i.session_id for i in issued[1:]]

        with pytest.raises(SessionRevokedError, match='Session has been revoked or expired'):
            self.manager.authenticate(issued[0].token)
        self.manager.authenticate(issued[-1].token)

    def test_revoked_session_rejects_valid_token(self):
        issued = self.open_session()
        self.manager.revoke(self.account, issued.session_id)

        with pytest.raises(SessionRevokedError):
            self.manager.authenticate(issued.token)

    def test_revoke_unknown_session(self):
        with pytest.raises(NotFoundError, match='Session not found'):
            self.manager.revoke(self.account, 'missing')

    def test_unknown_account(self, services):
        token = services.tokens.create_token('no-such-account', 'sess')
        with pytest.raises(TokenInvalidError, match='User no longer exists'):
            self.manager.authenticate(token)

    def test_revoke_all_except_current(self):
        current = self.open_session()
        self.open_session()
        self.open_session()

        assert self.manager.revoke_all_except(self.account, current.session_id) == 2
        assert [s.session_id for s in self.account.active_sessions] == [current.session_id]

    def test_revoke_all(self):
        self.open_session()
        self.open_session()
        assert self.manager.revoke_all(self.account) == 2
        assert self.account.active_sessions == []

    def test_list_marks_current_session(self):
        first = self.open_session()
        second = self.open_session(ip='10.0.0.2')

        listed = self.manager.list_sessions(self.account, second.session_id)

        assert [s['sessionId'] for s in listed] == [first.session_id, second.session_id]
        assert [s['isCurrent'] for s in listed] == [False, True]
        assert listed[1]['ipAddress'] == '10.0.0.2'

    def test_first_login_sends_alert(self):
        issued = self.open_session()
        assert issued.is_new_location
        alert = self.email.last('loginAlert')
        assert alert['to'] == self.account.email
        assert alert['data']['location'] == 'Tel Aviv, IL'

    def test_new_city_sends_login_alert(self):
        self.open_session('10.0.0.1')
        repeat = self.open_session('10.0.0.1')
        assert not repeat.is_new_location
        assert len(self.alerts()) == 1

        moved = self.open_session('10.0.0.3')

        assert moved.is_new_location
        assert len(self.alerts()) == 2
        alert = self.email.last('loginAlert')
        assert alert['to'] == self.account.email
        assert alert['data']['location'] == 'Berlin, DE'
        assert alert['data']['ip'] == '10.0.0.3'

    def test_unresolvable_ip_is_unknown(self):
        issued = self.open_session('192.0.2.10')
        assert issued.session.location == 'Unknown'
        history = self.manager.login_history(self.account)
        assert history[-1]['city'] == 'Unknown'

    def test_cookie_settings(self):
        settings = self.manager.cookie_settings()
        assert settings['httponly'] is True
        assert settings['samesite'] == 'Strict'
        assert settings['max_age'] == 30 * 24 * 3600
