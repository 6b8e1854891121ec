"""
Password Policy and Validation Module

Implements the password gate used by registration, change and reset:
- Complexity requirements (minimum length)
- Strength estimation (zxcvbn, seeded with the user's own identity)
- Breach database lookup (HaveIBeenPwned range API, k-anonymity)
- Password expiry reporting
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

import requests
from zxcvbn import zxcvbn

from .utils import utcnow

logger = logging.getLogger(__name__)

# zxcvbn refuses very long inputs; strength beyond this length is not in question
ZXCVBN_MAX_LENGTH = 72


@dataclass
class StrengthResult:
    score: int
    warning: str = ''
    suggestions: List[str] = field(default_factory=list)
    crack_time_display: str = ''

    def to_dict(self) -> dict:
        return {
            'score': self.score,
            'warning': self.warning,
            'suggestions': self.suggestions,
            'crackTimeDisplay': self.crack_time_display,
        }


@dataclass
class BreachResult:
    is_compromised: bool
    message: str
    check_failed: bool = False


@dataclass
class ExpiryStatus:
    is_expired: bool
    days_until_expiry: Optional[int]
    should_warn: bool

    def to_dict(self) -> dict:
        return {
            'isExpired': self.is_expired,
            'daysUntilExpiry': self.days_until_expiry,
            'shouldWarn': self.should_warn,
        }


@dataclass
class PasswordValidation:
    is_valid: bool
    complexity_errors: List[str]
    strength: StrengthResult
    breach: BreachResult

    @property
    def strength_score(self) -> int:
        return self.strength.score

    @property
    def is_compromised(self) -> bool:
        return self.breach.is_compromised

    def to_dict(self) -> dict:
        return {
            'errors': self.complexity_errors,
            'strength': self.strength.to_dict(),
            'isCompromised': self.breach.is_compromised,
            'breachCheck': self.breach.message,
        }


class BreachChecker:
    """
    Queries the HaveIBeenPwned range API.

    Only the first 5 hex characters of the SHA-1 are sent; the suffix is
    matched locally against the returned candidate list.
    """

    def __init__(self, api_url: str, timeout: float, session: Optional[requests.Session] = None):
        self.api_url = api_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def check(self, password: str) -> BreachResult:
        sha1_hash = hashlib.sha1(password.encode('utf-8')).hexdigest().upper()
        prefix, suffix = sha1_hash[:5], sha1_hash[5:]

        try:
            response = self.session.get(f"{self.api_url}{prefix}", timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            # Fail open: an unreachable breach service must not block registration
            logger.warning(f"Breach database check failed: {e}")
            return BreachResult(
                is_compromised=False,
                message='Could not verify password against breach database.',
                check_failed=True,
            )

        found = False
        for line in response.text.splitlines():
            candidate = line.split(':', 1)[0].strip().upper()
            if candidate == suffix:
                found = True
                break

        if found:
            return BreachResult(
                is_compromised=True,
                message='This password has been found in data breaches. Please choose a different password.',
            )
        return BreachResult(
            is_compromised=False,
            message='Password has not been found in known data breaches.',
        )


class PasswordPolicy:
    """
    Password validation against security policy.

    Valid means: complexity passes, zxcvbn score is at least the configured
    minimum, and the password is not in a known breach corpus.
    """

    def __init__(self, config, breach_checker: Optional[BreachChecker] = None):
        self.min_length = config.PASSWORD_MIN_LENGTH
        self.min_score = config.PASSWORD_MIN_STRENGTH_SCORE
        self.expiry_warning_days = config.PASSWORD_EXPIRY_WARNING_DAYS
        self.check_breaches = config.CHECK_COMPROMISED_PASSWORDS
        self.breach_checker = breach_checker or BreachChecker(
            config.BREACH_API_URL, config.BREACH_API_TIMEOUT
        )

    def check_complexity(self, password: str) -> List[str]:
        # Character-class rules are documented for clients but only length is enforced
        errors = []
        if not password or len(password) < self.min_length:
            errors.append(f"Password must be at least {self.min_length} characters long")
        return errors

    def estimate_strength(self, password: str, user_inputs: Iterable[Optional[str]] = ()) -> StrengthResult:
        if not password:
            return StrengthResult(score=0)
        inputs = [str(value) for value in user_inputs if value]
        result = zxcvbn(password[:ZXCVBN_MAX_LENGTH], user_inputs=inputs)
        feedback = result.get('feedback') or {}
        crack_times = result.get('crack_times_display') or {}
        return StrengthResult(
            score=int(result['score']),
            warning=feedback.get('warning') or '',
            suggestions=list(feedback.get('suggestions') or []),
            crack_time_display=str(crack_times.get('offline_slow_hashing_1e4_per_second', '')),
        )

    def check_breach(self, password: str) -> BreachResult:
        if not self.check_breaches or not password:
            return BreachResult(is_compromised=False, message='Breach check skipped.', check_failed=True)
        return self.breach_checker.check(password)

    def validate(self, password: str, disallowed_inputs: Iterable[Optional[str]] = ()) -> PasswordValidation:
        """
        Validate password against all policies.

        Args:
            password: Password to validate
            disallowed_inputs: Identity strings (name, email) that weaken a password

        Returns:
            PasswordValidation with the combined verdict and each sub-result
        """
        complexity_errors = self.check_complexity(password)
        strength = self.estimate_strength(password, disallowed_inputs)
        breach = self.check_breach(password)

        is_valid = (
            not complexity_errors
            and strength.score >= self.min_score
            and not breach.is_compromised
        )
        return PasswordValidation(
            is_valid=is_valid,
            complexity_errors=complexity_errors,
            strength=strength,
            breach=breach,
        )

    def check_expiry(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> ExpiryStatus:
        return check_password_expiry(expires_at, now, self.expiry_warning_days)


def check_password_expiry(expires_at: Optional[datetime], now: Optional[datetime] = None,
                          warning_days: int = 14) -> ExpiryStatus:
    """Report whether a password has expired or is about to."""
    if expires_at is None:
        return ExpiryStatus(is_expired=False, days_until_expiry=None, should_warn=False)

    now = now or utcnow()
    seconds = (expires_at - now).total_seconds()
    days = -(-int(seconds) // 86400) if seconds > 0 else 0

    return ExpiryStatus(
        is_expired=days <= 0,
        days_until_expiry=days,
        should_warn=0 < days <= warning_days,
    )
