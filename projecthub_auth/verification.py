"""
Email verification strategies.

An account has a single verification slot (hash, expiry, kind). A numeric
code is issued on registration, on an unverified login and on resend-otp; an
opaque link token is issued on resend-verification. Issuing either one
overwrites whatever the slot held before.
"""

from datetime import datetime
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session as DBSession

from .errors import VerificationError
from .models import Account
from .utils import Validator, utcnow


class VerificationStrategy:
    kind: str = ''
    template: str = ''
    invalid_message = 'Invalid or expired token'
    expired_message = 'Verification has expired. Please request a new one.'

    def __init__(self, ttl, clock: Callable[[], datetime] = utcnow):
        self.ttl = ttl
        self.clock = clock

    def generate(self) -> str:
        raise NotImplementedError

    def email_payload(self, account: Account, secret: str) -> dict:
        raise NotImplementedError

    def issue(self, account: Account) -> str:
        """Fill the account's slot and return the plaintext secret to deliver."""
        secret = self.generate()
        account.email_verification_hash = Validator.hash_token(secret)
        account.email_verification_expires = self.clock() + self.ttl
        account.email_verification_kind = self.kind
        return secret

    def check(self, account: Optional[Account], secret: str) -> None:
        """
        Raises VerificationError unless ``secret`` matches the slot and is
        still valid. The hash is compared first so an expired-but-correct
        secret gets its own message.
        """
        if (
            account is None
            or account.email_verification_kind != self.kind
            or not Validator.tokens_match(str(secret or ''), account.email_verification_hash)
        ):
            raise VerificationError(self.invalid_message)

        expires = account.email_verification_expires
        if expires is None or expires <= self.clock():
            raise VerificationError(self.expired_message)

    def complete(self, account: Account) -> None:
        account.is_email_verified = True
        clear_slot(account)


class CodeVerification(VerificationStrategy):
    kind = 'code'
    template = 'otpVerification'
    invalid_message = 'Invalid or expired OTP'
    expired_message = 'Verification code has expired. Please request a new one.'

    def __init__(self, ttl, digits: int = 6, clock: Callable[[], datetime] = utcnow):
        super().__init__(ttl, clock)
        self.digits = digits

    def generate(self) -> str:
        return Validator.generate_numeric_code(self.digits)

    def email_payload(self, account: Account, secret: str) -> dict:
        return {'code': secret, 'name': account.name}


class LinkVerification(VerificationStrategy):
    kind = 'link'
    template = 'emailVerification'
    expired_message = 'Verification link has expired. Please request a new one.'

    def __init__(self, ttl, client_url: str, token_bytes: int = 32,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__(ttl, clock)
        self.client_url = client_url.rstrip('/')
        self.token_bytes = token_bytes

    def generate(self) -> str:
        return Validator.generate_hex_token(self.token_bytes)

    def email_payload(self, account: Account, secret: str) -> dict:
        return {'verifyUrl': f"{self.client_url}/auth/verify-email/{secret}"}

    def find_account(self, db: DBSession, token: str) -> Optional[Account]:
        """Links carry no email, so the account is found by the token hash."""
        if not token:
            return None
        return db.query(Account).filter(
            Account.email_verification_hash == Validator.hash_token(token),
            Account.email_verification_kind == self.kind,
        ).first()


def clear_slot(account: Account) -> None:
    account.email_verification_hash = None
    account.email_verification_expires = None
    account.email_verification_kind = None


def build_strategies(config, clock: Callable[[], datetime] = utcnow) -> Tuple[CodeVerification, LinkVerification]:
    code = CodeVerification(config.EMAIL_OTP_EXPIRES, config.EMAIL_OTP_DIGITS, clock)
    link = LinkVerification(
        config.EMAIL_VERIFICATION_TOKEN_EXPIRES,
        config.CLIENT_URL,
        config.EMAIL_VERIFICATION_TOKEN_BYTES,
        clock,
    )
    return code, link
