"""
Rate Limiting and Brute Force Protection

Two independent layers plus an escalation step:
- Account lockout: per-account failure counter with a timed lock
- IP blocking: per-IP failure counter, independent of the account targeted
- CAPTCHA: required once an account has accumulated failures

Failed attempts also produce a progressive delay, returned to the caller as
a retry-after value rather than slept on the request thread.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import requests

from .models import Account, IPBlock
from .utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class IPBlockState:
    failure_count: int = 0
    last_attempt: Optional[datetime] = None
    blocked_until: Optional[datetime] = None


# ==================== IP BLOCK STORES ====================

class IPBlockStore:
    """Key-value store of failure counters per IP address."""

    def __init__(self, max_failures: int, block_duration, clock: Callable[[], datetime] = utcnow):
        self.max_failures = max_failures
        self.block_duration = block_duration
        self.clock = clock

    def increment(self, ip_address: str) -> IPBlockState:
        raise NotImplementedError

    def is_blocked(self, ip_address: str) -> Tuple[bool, Optional[datetime]]:
        raise NotImplementedError

    def reset(self, ip_address: str) -> None:
        raise NotImplementedError

    def _apply_failure(self, state: IPBlockState, now: datetime) -> IPBlockState:
        state.failure_count += 1
        state.last_attempt = now
        if state.failure_count >= self.max_failures:
            state.blocked_until = now + self.block_duration
        return state


class InMemoryIPBlockStore(IPBlockStore):
    """
    Process-local store. Not shared between workers or hosts and emptied on
    restart; use DatabaseIPBlockStore when running more than one instance.
    """

    def __init__(self, max_failures: int, block_duration, clock: Callable[[], datetime] = utcnow,
                 retention=timedelta(hours=24), sweep_interval=timedelta(minutes=15)):
        super().__init__(max_failures, block_duration, clock)
        self.retention = retention
        self.sweep_interval = sweep_interval
        self._lock = threading.Lock()
        self._entries: Dict[str, IPBlockState] = {}
        self._next_sweep: Optional[datetime] = None

    def size(self) -> int:
        return len(self._entries)

    def increment(self, ip_address: str) -> IPBlockState:
        now = self.clock()
        with self._lock:
            if self._next_sweep is None or now >= self._next_sweep:
                self._sweep(now)
            state = self._entries.get(ip_address)
            if state is None or self._is_stale(state, now):
                state = self._entries[ip_address] = IPBlockState()
            self._apply_failure(state, now)
            return IPBlockState(state.failure_count, state.last_attempt, state.blocked_until)

    def is_blocked(self, ip_address: str) -> Tuple[bool, Optional[datetime]]:
        now = self.clock()
        with self._lock:
            state = self._entries.get(ip_address)
            if state is None or state.blocked_until is None:
                return False, None
            if now < state.blocked_until:
                return True, state.blocked_until
            # Block expired
            del self._entries[ip_address]
            return False, None

    def reset(self, ip_address: str) -> None:
        with self._lock:
            self._entries.pop(ip_address, None)

    def sweep(self) -> int:
        """Drop expired blocks and counters idle for longer than the retention. Returns the number dropped."""
        with self._lock:
            return self._sweep(self.clock())

    def _sweep(self, now: datetime) -> int:
        stale = [ip for ip, state in self._entries.items() if self._is_stale(state, now)]
        for ip in stale:
            del self._entries[ip]
        self._next_sweep = now + self.sweep_interval
        return len(stale)

    def _is_stale(self, state: IPBlockState, now: datetime) -> bool:
        if state.blocked_until is not None:
            return now >= state.blocked_until
        return state.last_attempt is None or now - state.last_attempt >= self.retention


class DatabaseIPBlockStore(IPBlockStore):
    """Shared store backed by the ip_blocks table."""

    def __init__(self, session_factory: Callable, max_failures: int, block_duration,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__(max_failures, block_duration, clock)
        self.session_factory = session_factory

    def increment(self, ip_address: str) -> IPBlockState:
        now = self.clock()
        db = self.session_factory()
        try:
            row = db.get(IPBlock, ip_address)
            if row is None:
                row = IPBlock(ip_address=ip_address, failure_count=0)
                db.add(row)
            state = self._apply_failure(
                IPBlockState(row.failure_count or 0, row.last_attempt_at, row.blocked_until), now
            )
            row.failure_count = state.failure_count
            row.last_attempt_at = state.last_attempt
            row.blocked_until = state.blocked_until
            db.commit()
            return state
        finally:
            db.close()

    def is_blocked(self, ip_address: str) -> Tuple[bool, Optional[datetime]]:
        now = self.clock()
        db = self.session_factory()
        try:
            row = db.get(IPBlock, ip_address)
            if row is None or row.blocked_until is None:
                return False, None
            if now < row.blocked_until:
                return True, row.blocked_until
            db.delete(row)
            db.commit()
            return False, None
        finally:
            db.close()

    def reset(self, ip_address: str) -> None:
        db = self.session_factory()
        try:
            row = db.get(IPBlock, ip_address)
            if row is not None:
                db.delete(row)
                db.commit()
        finally:
            db.close()


def build_ip_block_store(config, session_factory, clock: Callable[[], datetime] = utcnow) -> IPBlockStore:
    if config.IP_BLOCK_BACKEND == 'database':
        return DatabaseIPBlockStore(
            session_factory, config.MAX_IP_LOGIN_ATTEMPTS, config.IP_BLOCK_DURATION, clock
        )
    return InMemoryIPBlockStore(
        config.MAX_IP_LOGIN_ATTEMPTS, config.IP_BLOCK_DURATION, clock,
        retention=config.IP_FAILURE_RETENTION, sweep_interval=config.RATE_LIMIT_SWEEP_INTERVAL,
    )


# ==================== ACCOUNT LOCKOUT ====================

@dataclass
class FailureOutcome:
    failure_count: int
    locked: bool
    locked_until: Optional[datetime]
    retry_after: int


class AccountLockout:
    """Per-account failure tracking stored on the Account row."""

    def __init__(self, config, clock: Callable[[], datetime] = utcnow):
        self.max_attempts = config.MAX_LOGIN_ATTEMPTS
        self.lockout_duration = config.ACCOUNT_LOCKOUT_DURATION
        self.captcha_threshold = config.CAPTCHA_AFTER_FAILED_ATTEMPTS
        self.delay_base = config.FAILED_LOGIN_DELAY_BASE
        self.delay_cap = config.FAILED_LOGIN_DELAY_CAP
        self.clock = clock

    def check(self, account: Account) -> Tuple[bool, Optional[datetime]]:
        """
        Returns (is_locked, locked_until). An expired lock clears the
        counter so the account starts fresh.
        """
        if account.locked_until is None:
            return False, None
        now = self.clock()
        if now < account.locked_until:
            return True, account.locked_until
        account.failed_login_count = 0
        account.locked_until = None
        return False, None

    def record_failure(self, account: Account) -> FailureOutcome:
        now = self.clock()
        account.failed_login_count = (account.failed_login_count or 0) + 1
        account.last_failed_login_at = now

        locked = account.failed_login_count >= self.max_attempts
        if locked:
            account.locked_until = now + self.lockout_duration

        return FailureOutcome(
            failure_count=account.failed_login_count,
            locked=locked,
            locked_until=account.locked_until,
            retry_after=self.delay_for(account.failed_login_count),
        )

    def record_success(self, account: Account) -> None:
        account.failed_login_count = 0
        account.last_failed_login_at = None
        account.locked_until = None

    def requires_captcha(self, account: Optional[Account]) -> bool:
        return account is not None and (account.failed_login_count or 0) >= self.captcha_threshold

    def is_high_severity(self, failure_count: int) -> bool:
        return failure_count >= self.max_attempts - 1

    def delay_for(self, failure_count: int) -> int:
        """Exponential backoff in seconds for the n-th consecutive failure."""
        return min(self.delay_base ** failure_count, self.delay_cap)


# ==================== CAPTCHA ====================

@dataclass
class CaptchaResult:
    passed: bool
    reason: str = ''


class CaptchaVerifier:
    """
    reCAPTCHA v3 verification. The verification service being unreachable
    lets the request through; a low score or an explicit failure does not.
    """

    def __init__(self, config, session: Optional[requests.Session] = None):
        self.secret = config.RECAPTCHA_SECRET_KEY
        self.verify_url = config.CAPTCHA_VERIFY_URL
        self.min_score = config.CAPTCHA_MIN_SCORE
        self.timeout = config.CAPTCHA_TIMEOUT
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    def verify(self, token: Optional[str], remote_ip: Optional[str] = None) -> CaptchaResult:
        if not self.enabled:
            logger.warning("reCAPTCHA secret key not configured - skipping CAPTCHA verification")
            return CaptchaResult(passed=True, reason='not_configured')

        if not token:
            return CaptchaResult(passed=False, reason='missing')

        try:
            response = self.session.post(
                self.verify_url,
                data={'secret': self.secret, 'response': token, 'remoteip': remote_ip},
                timeout=self.timeout,
            )
            response.raise_for_status()
            result = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"CAPTCHA verification unavailable ({e}) - allowing request to proceed")
            return CaptchaResult(passed=True, reason='service_unavailable')

        if not result.get('success'):
            logger.info(f"CAPTCHA verification failed: {result.get('error-codes')}")
            return CaptchaResult(passed=False, reason='failed')

        if float(result.get('score', 0.0)) < self.min_score:
            return CaptchaResult(passed=False, reason='low_score')

        return CaptchaResult(passed=True)


# ==================== ENDPOINT RATE LIMITS ====================

class RequestRateLimiter:
    """
    Fixed-window request counter per (limit type, key), for endpoints that
    need throttling independent of login failures.
    """

    def __init__(self, limits: Dict[str, Tuple[int, object]], clock: Callable[[], datetime] = utcnow,
                 sweep_interval=timedelta(minutes=15)):
        self.limits = limits
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._lock = threading.Lock()
        self._windows: Dict[Tuple[str, str], Tuple[int, datetime]] = {}
        self._next_sweep: Optional[datetime] = None

    @classmethod
    def from_config(cls, config, clock: Callable[[], datetime] = utcnow) -> 'RequestRateLimiter':
        return cls({
            'mfa_verify': config.MFA_VERIFY_RATE_LIMIT,
            'password_reset': config.PASSWORD_RESET_RATE_LIMIT,
            'otp_verify': config.OTP_VERIFY_RATE_LIMIT,
        }, clock, sweep_interval=config.RATE_LIMIT_SWEEP_INTERVAL)

    def size(self) -> int:
        return len(self._windows)

    def hit(self, limit_type: str, key: str) -> bool:
        """
        Count one request. Returns False once the window's allowance is
        used up. Closed windows of other keys are swept periodically.
        """
        max_requests, window = self.limits[limit_type]
        now = self.clock()
        with self._lock:
            if self._next_sweep is None or now >= self._next_sweep:
                self._sweep(now)
            count, window_end = self._windows.get((limit_type, key), (0, now + window))
            if now >= window_end:
                count, window_end = 0, now + window
            count += 1
            self._windows[(limit_type, key)] = (count, window_end)
        return count <= max_requests

    def reset(self, limit_type: str, key: str) -> None:
        with self._lock:
            self._windows.pop((limit_type, key), None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep(self.clock())

    def _sweep(self, now: datetime) -> int:
        closed = [key for key, (_, window_end) in self._windows.items() if now >= window_end]
        for key in closed:
            del self._windows[key]
        self._next_sweep = now + self.sweep_interval
        return len(closed)
