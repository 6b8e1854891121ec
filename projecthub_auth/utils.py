import hashlib
import re
import secrets
from datetime import datetime, timezone

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Validator:
    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or '').strip().lower()

    @staticmethod
    def is_valid_email(email: str) -> bool:
        return bool(email) and bool(EMAIL_PATTERN.match(email))

    @staticmethod
    def generate_token(length_bytes: int = 32) -> str:
        """Generates cryptographically secure URL-safe token"""
        return secrets.token_urlsafe(length_bytes)

    @staticmethod
    def generate_hex_token(length_bytes: int = 32) -> str:
        return secrets.token_hex(length_bytes)

    @staticmethod
    def generate_numeric_code(digits: int = 6) -> str:
        """Uniform code in [10**(digits-1), 10**digits), never a leading zero"""
        low = 10 ** (digits - 1)
        return str(low + secrets.randbelow(9 * low))

    @staticmethod
    def hash_token(token: str) -> str:
        """SHA-256 hash for storing one-time tokens and codes safely in DB"""
        return hashlib.sha256(token.encode()).hexdigest()

    @staticmethod
    def tokens_match(token: str, token_hash: str) -> bool:
        if not token or not token_hash:
            return False
        return secrets.compare_digest(Validator.hash_token(token), token_hash)


def minutes_remaining(until: datetime, now: datetime) -> int:
    """Whole minutes left until ``until``, rounded up, at least 1."""
    seconds = (until - now).total_seconds()
    return max(1, -(-int(seconds) // 60))
