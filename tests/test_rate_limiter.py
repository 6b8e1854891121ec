"""Tests for account lockout, IP blocking, CAPTCHA and endpoint throttles."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
import requests

from projecthub_auth.config import TestingConfig
from projecthub_auth.models import Account
from projecthub_auth.rate_limiter import (
    AccountLockout, CaptchaVerifier, DatabaseIPBlockStore, InMemoryIPBlockStore,
    RequestRateLimiter, build_ip_block_store,
)

from .conftest import FrozenClock


class CaptchaConfig(TestingConfig):
    RECAPTCHA_SECRET_KEY = 'recaptcha-test-secret'


@pytest.fixture
def clock():
    return FrozenClock()


class TestAccountLockout:
    @pytest.fixture(autouse=True)
    def setup(self, clock):
        self.clock = clock
        self.lockout = AccountLockout(TestingConfig(), clock)
        self.account = Account(email='a@example.com', failed_login_count=0)

    def test_progressive_delay_is_capped(self):
        delays = [self.lockout.record_failure(self.account).retry_after for _ in range(6)]
        assert delays == [2, 4, 8, 16, 16, 16]

    def test_locks_on_fifth_failure(self):
        outcomes = [self.lockout.record_failure(self.account) for _ in range(5)]
        assert [o.locked for o in outcomes] == [False, False, False, False, True]
        assert outcomes[-1].locked_until == self.clock() + timedelta(minutes=5)
        assert self.lockout.check(self.account) == (True, self.account.locked_until)

    def test_expired_lock_resets_counter(self):
        for _ in range(5):
            self.lockout.record_failure(self.account)
        self.clock.advance(minutes=5, seconds=1)

        locked, until = self.lockout.check(self.account)

        assert not locked
        assert until is None
        assert self.account.failed_login_count == 0
        assert self.account.locked_until is None

    def test_success_clears_state(self):
        self.lockout.record_failure(self.account)
        self.lockout.record_failure(self.account)
        self.lockout.record_success(self.account)
        assert self.account.failed_login_count == 0
        assert self.account.last_failed_login_at is None

    def test_captcha_threshold(self):
        for _ in range(2):
            self.lockout.record_failure(self.account)
        assert not self.lockout.requires_captcha(self.account)
        self.lockout.record_failure(self.account)
        assert self.lockout.requires_captcha(self.account)
        assert not self.lockout.requires_captcha(None)

    def test_high_severity_from_fourth_failure(self):
        assert not self.lockout.is_high_severity(3)
        assert self.lockout.is_high_severity(4)


class IPStoreContract:
    """Behaviour shared by every IP block store backend."""

    def make_store(self, clock, services):
        raise NotImplementedError

    @pytest.fixture(autouse=True)
    def setup(self, clock, services):
        self.clock = clock
        self.store = self.make_store(clock, services)

    def test_blocks_after_max_failures(self):
        for _ in range(4):
            self.store.increment('10.9.9.9')
        assert self.store.is_blocked('10.9.9.9') == (False, None)

        state = self.store.increment('10.9.9.9')

        assert state.failure_count == 5
        blocked, until = self.store.is_blocked('10.9.9.9')
        assert blocked
        assert until == self.clock() + timedelta(minutes=10)

    def test_other_ips_unaffected(self):
        for _ in range(5):
            self.store.increment('10.9.9.9')
        assert self.store.is_blocked('10.9.9.8') == (False, None)

    def test_block_expires_and_entry_is_dropped(self):
        for _ in range(5):
            self.store.increment('10.9.9.9')
        self.clock.advance(minutes=10)

        assert self.store.is_blocked('10.9.9.9') == (False, None)
        # Counter starts again from zero
        assert self.store.increment('10.9.9.9').failure_count == 1

    def test_reset(self):
        for _ in range(5):
            self.store.increment('10.9.9.9')
        self.store.reset('10.9.9.9')
        assert self.store.is_blocked('10.9.9.9') == (False, None)
        self.store.reset('10.1.1.1')


class TestInMemoryIPBlockStore(IPStoreContract):
    def make_store(self, clock, services):
        return InMemoryIPBlockStore(5, timedelta(minutes=10), clock,
                                    retention=timedelta(hours=24), sweep_interval=timedelta(minutes=15))

    def test_idle_counters_are_swept(self):
        for ip in ('10.9.9.1', '10.9.9.2', '10.9.9.3'):
            self.store.increment(ip)
        self.clock.advance(hours=23)
        self.store.increment('10.9.9.1')
        self.clock.advance(hours=1)

        assert self.store.sweep() == 2
        assert self.store.size() == 1

    def test_sweep_runs_on_increment(self):
        for _ in range(5):
            self.store.increment('10.9.9.9')
        self.clock.advance(minutes=15)

        self.store.increment('10.9.9.8')

        assert self.store.size() == 1
        assert self.store.is_blocked('10.9.9.9') == (False, None)

    def test_idle_counter_starts_over(self):
        for _ in range(4):
            self.store.increment('10.9.9.9')
        self.clock.advance(hours=24)
        assert self.store.increment('10.9.9.9').failure_count == 1


class TestDatabaseIPBlockStore(IPStoreContract):
    def make_store(self, clock, services):
        return DatabaseIPBlockStore(services.session_factory, 5, timedelta(minutes=10), clock)


class TestBuildIPBlockStore:
    def test_backend_selection(self, services, clock):
        class DatabaseConfig(TestingConfig):
            IP_BLOCK_BACKEND = 'database'

        assert isinstance(build_ip_block_store(TestingConfig(), services.session_factory, clock),
                          InMemoryIPBlockStore)
        assert isinstance(build_ip_block_store(DatabaseConfig(), services.session_factory, clock),
                          DatabaseIPBlockStore)


class TestCaptchaVerifier:
    @pytest.fixture(autouse=True)
    def setup(self):
        self.session = MagicMock()
        self.verifier = CaptchaVerifier(CaptchaConfig(), session=self.session)

    def respond(self, payload):
        response = MagicMock()
        response.raise_for_status.return_value = None
        response.json.return_value = payload
        self.session.post.return_value = response

    def test_not_configured_passes(self):
        verifier = CaptchaVerifier(TestingConfig(), session=self.session)
        assert not verifier.enabled
        result = verifier.verify(None)
        assert result.passed
        assert result.reason == 'not_configured'
        self.session.post.assert_not_called()

    def test_missing_token(self):
        result = self.verifier.verify('')
        assert not result.passed
        assert result.reason == 'missing'

    def test_good_score_passes(self):
        self.respond({'success': True, 'score': 0.9})
        assert self.verifier.verify('token', '10.0.0.1').passed
        data = self.session.post.call_args.kwargs['data']
        assert data == {'secret': 'recaptcha-test-secret', 'response': 'token', 'remoteip': '10.0.0.1'}

    def test_low_score_fails(self):
        self.respond({'success': True, 'score': 0.3})
        result = self.verifier.verify('token')
        assert not result.passed
        assert result.reason == 'low_score'

    def test_rejected_token_fails(self):
        self.respond({'success': False, 'error-codes': ['invalid-input-response']})
        assert self.verifier.verify('token').reason == 'failed'

    def test_service_unreachable_fails_open(self):
        self.session.post.side_effect = requests.Timeout('slow')
        result = self.verifier.verify('token')
        assert result.passed
        assert result.reason == 'service_unavailable'


class TestRequestRateLimiter:
    @pytest.fixture(autouse=True)
    def setup(self, clock):
        self.clock = clock
        self.limiter = RequestRateLimiter.from_config(TestingConfig(), clock)

    def test_password_reset_allows_three_per_hour(self):
        results = [self.limiter.hit('password_reset', '10.0.0.1') for _ in range(4)]
        assert results == [True, True, True, False]

    def test_window_rolls_over(self):
        for _ in range(3):
            self.limiter.hit('password_reset', '10.0.0.1')
        self.clock.advance(hours=1)
        assert self.limiter.hit('password_reset', '10.0.0.1')

    def test_keys_and_types_are_independent(self):
        for _ in range(3):
            self.limiter.hit('password_reset', '10.0.0.1')
        assert self.limiter.hit('password_reset', '10.0.0.2')
        assert self.limiter.hit('mfa_verify', '10.0.0.1')

    def test_reset(self):
        for _ in range(4):
            self.limiter.hit('password_reset', '10.0.0.1')
        self.limiter.reset('password_reset', '10.0.0.1')
        assert self.limiter.hit('password_reset', '10.0.0.1')

    def test_closed_windows_are_swept(self):
        self.limiter.hit('password_reset', '10.0.0.1')
        self.limiter.hit('mfa_verify', '10.0.0.2')
        self.clock.advance(minutes=15)

        self.limiter.hit('otp_verify', '10.0.0.3')

        # mfa_verify window (15 min) closed, password_reset (1 h) still open
        assert self.limiter.size() == 2
        self.clock.advance(hours=1)
        assert self.limiter.sweep() == 2
        assert self.limiter.size() == 0
