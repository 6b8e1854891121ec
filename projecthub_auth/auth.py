"""
Authentication Module

Complete account authentication with security controls:
- Registration with password policy and email verification
- Login state machine (IP block, lockout, CAPTCHA, password, ban, MFA,
  email verification, session issuance)
- Password change and token-based reset
- OAuth login and account linking

Every security-relevant outcome is written to the audit trail before the
result or error is returned.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy.orm import Session as DBSession

from .audit import ClientInfo
from .errors import (
    AccountBannedError, AccountLockedError, CaptchaRequiredError, ConflictError,
    EmailDeliveryError, IPBlockedError, InvalidCredentialsError, NotFoundError,
    ValidationError, VerificationError,
)
from .models import Account, AccountSession, AuditAction, AuditStatus, Role, Severity
from .oauth import OAuthIdentity
from .password_policy import ExpiryStatus
from .session import IssuedSession
from .utils import Validator, minutes_remaining

logger = logging.getLogger(__name__)

CAPTCHA_MESSAGES = {
    'missing': 'CAPTCHA verification required after multiple failed attempts',
    'failed': 'CAPTCHA verification failed. Please try again.',
    'low_score': 'CAPTCHA score too low. Please try again.',
}


@dataclass
class RegistrationResult:
    account: Account
    email_delivered: bool


@dataclass
class LoginResult:
    SUCCESS = 'success'
    MFA_REQUIRED = 'mfa_required'
    VERIFICATION_REQUIRED = 'verification_required'

    status: str
    account: Account
    issued: Optional[IssuedSession] = None
    email_delivered: Optional[bool] = None
    password_expiry: Optional[ExpiryStatus] = None
    mfa_challenge: Optional[str] = None

    @property
    def token(self) -> Optional[str]:
        return self.issued.token if self.issued else None

    def to_dict(self) -> dict:
        account = self.account
        if self.status == self.MFA_REQUIRED:
            return {'mfaRequired': True, 'mfaToken': self.mfa_challenge, 'message': 'MFA verification required'}
        if self.status == self.VERIFICATION_REQUIRED:
            return {
                'message': 'Please verify your email address',
                'requiresVerification': True,
                'userId': account.id,
                'email': account.email,
                'emailDelivered': bool(self.email_delivered),
            }
        body = {
            '_id': account.id,
            'name': account.name,
            'email': account.email,
            'role': account.role,
            'token': self.issued.token,
            'sessionId': self.issued.session_id,
        }
        if self.password_expiry is not None:
            body['passwordExpiry'] = self.password_expiry.to_dict()
        return body


class AuthService:
    """Per-request authentication service bound to one database session."""

    def __init__(self, db: DBSession, services):
        self.db = db
        self.config = services.config
        self.clock = services.clock
        self.crypto = services.crypto
        self.codec = services.codec
        self.policy = services.policy
        self.lockout = services.lockout
        self.ip_store = services.ip_store
        self.captcha = services.captcha
        self.email = services.email
        self.audit = services.audit
        self.tokens = services.tokens
        self.code_verification = services.code_verification
        self.link_verification = services.link_verification
        self.sessions = services.sessions(db)
        self.mfa = services.mfa(db)

    # ==================== LOOKUPS ====================

    def find_by_email(self, email: str) -> Optional[Account]:
        email = Validator.normalize_email(email)
        if not email:
            return None
        return self.db.query(Account).filter(Account.email == email).first()

    def get_account(self, account_id: str) -> Account:
        account = self.db.get(Account, account_id) if account_id else None
        if account is None:
            raise NotFoundError('User not found')
        return account

    # ==================== PASSWORDS ====================

    def _validate_new_password(self, password: str, identity: Iterable[Optional[str]], message: str):
        validation = self.policy.validate(password, identity)
        if not validation.is_valid:
            raise ValidationError(message, **validation.to_dict())
        if validation.breach.check_failed and self.policy.check_breaches:
            logger.warning("Password accepted without breach verification")

    def _set_password(self, account: Account, password: str):
        now = self.clock()
        account.password_hash = self.crypto.hash_password(password)
        account.password_changed_at = now
        account.password_expires_at = now + self.config.PASSWORD_EXPIRY
        account.must_change_password = False
        if account.auth_method in ('google', 'github'):
            account.auth_method = 'both'

    # ==================== REGISTRATION ====================

    def register(self, name: str, email: str, password: str, client: ClientInfo,
                 role: Optional[str] = None, phone: Optional[str] = None) -> RegistrationResult:
        """
        Create an unverified manual account and email it a verification code.

        A failed delivery does not undo the account; the caller reports it
        and the user can ask for a new code.
        """
        email = Validator.normalize_email(email)
        name = (name or '').strip()

        try:
            role_enum = Role.parse(role or Role.CLIENT.value)
        except ValueError:
            raise ValidationError('Invalid role')
        if role_enum.value not in self.config.SELF_REGISTRATION_ROLES:
            raise ValidationError('Invalid role')

        self._validate_new_password(password, [name, email], 'Password does not meet security requirements')

        if self.find_by_email(email) is not None:
            raise ConflictError('User already exists')

        account = Account(
            email=email,
            name=name,
            role=role_enum.value,
            auth_method='manual',
            phone_encrypted=self.codec.encode(phone),
            is_email_verified=False,
            created_at=self.clock(),
        )
        self._set_password(account, password)
        code = self.code_verification.issue(account)
        self.db.add(account)
        self.db.commit()

        self.audit.log(account.id, AuditAction.USER_REGISTRATION, client,
                       details={'email': email, 'role': account.role})

        delivered = self._deliver(account, self.code_verification, code)
        if not delivered:
            logger.warning(f"Verification code for new account {account.id} was not delivered")
        return RegistrationResult(account, delivered)

    def _deliver(self, account: Account, strategy, secret: str) -> bool:
        return self.email.send_email(account.email, strategy.template, strategy.email_payload(account, secret))

    # ==================== LOGIN ====================

    def login(self, email: str, password: str, client: ClientInfo,
              captcha_token: Optional[str] = None) -> LoginResult:
        """
        Run one login attempt through the guard chain.

        Returns a LoginResult whose status is success, mfa_required or
        verification_required. Every rejection is raised as an AuthError.
        """
        ip_address = client.ip_address
        blocked, blocked_until = self.ip_store.is_blocked(ip_address)
        if blocked:
            minutes = minutes_remaining(blocked_until, self.clock())
            logger.warning(f"Login attempt from blocked IP {ip_address}")
            raise IPBlockedError(
                'This IP address has been temporarily blocked due to multiple failed login attempts. '
                f'Please try again in {minutes} minutes.'
            )

        account = self.find_by_email(email)

        if account is not None:
            locked, locked_until = self.lockout.check(account)
            # check() may have cleared an expired lock
            self.db.commit()
            if locked:
                minutes = minutes_remaining(locked_until, self.clock())
                self.audit.log(account.id, AuditAction.LOGIN_FAILED, client,
                               status=AuditStatus.FAILURE, severity=Severity.HIGH,
                               details={'reason': 'account_locked'})
                raise AccountLockedError(
                    'Account is temporarily locked due to multiple failed login attempts. '
                    f'Please try again in {minutes} minutes.',
                    lockedUntil=locked_until.isoformat(),
                )

            if self.lockout.requires_captcha(account) and self.captcha.enabled:
                result = self.captcha.verify(captcha_token, ip_address)
                if not result.passed:
                    self.audit.log(account.id, AuditAction.SUSPICIOUS_ACTIVITY, client,
                                   status=AuditStatus.FAILURE, severity=Severity.MEDIUM,
                                   details={'reason': f'captcha_{result.reason}'})
                    raise CaptchaRequiredError(CAPTCHA_MESSAGES[result.reason])

        if account is None:
            self.crypto.equalize_timing(password)
            retry_after = self._record_failed_login(None, email, client)
            raise InvalidCredentialsError(retry_after=retry_after)

        if not self.crypto.verify_password(account.password_hash, password):
            retry_after = self._record_failed_login(account, email, client)
            raise InvalidCredentialsError(retry_after=retry_after)

        if account.is_banned:
            if ip_address:
                self.ip_store.increment(ip_address)
            self.audit.log(account.id, AuditAction.BANNED_ACCESS_ATTEMPT, client,
                           status=AuditStatus.FAILURE, severity=Severity.HIGH,
                           details={'reason': account.ban_reason})
            raise AccountBannedError(f"Account is banned: {account.ban_reason or 'No reason provided'}")

        if account.mfa_enabled:
            return self._mfa_required(account)

        if not account.is_email_verified:
            code = self.code_verification.issue(account)
            self.db.commit()
            delivered = self._deliver(account, self.code_verification, code)
            if not delivered:
                logger.warning(f"Login verification code for account {account.id} was not delivered")
            return LoginResult(LoginResult.VERIFICATION_REQUIRED, account, email_delivered=delivered)

        return self._complete_login(account, client, method='password')

    def _record_failed_login(self, account: Optional[Account], email: str, client: ClientInfo) -> Optional[int]:
        """Count the failure against the IP and, if known, the account. Returns retry-after seconds."""
        if client.ip_address:
            self.ip_store.increment(client.ip_address)

        if account is None:
            # The audit trail needs an actor; unknown emails only reach the log
            logger.info(f"Failed login for unknown email from {client.ip_address}")
            return None

        outcome = self.lockout.record_failure(account)
        self.db.commit()

        if outcome.locked:
            self.audit.log(account.id, AuditAction.ACCOUNT_LOCKED, client,
                           status=AuditStatus.WARNING, severity=Severity.HIGH,
                           details={'reason': 'Multiple failed login attempts',
                                    'attemptCount': outcome.failure_count})

        severity = Severity.HIGH if self.lockout.is_high_severity(outcome.failure_count) else Severity.MEDIUM
        self.audit.log(account.id, AuditAction.LOGIN_FAILED, client,
                       status=AuditStatus.FAILURE, severity=severity,
                       details={'email': Validator.normalize_email(email),
                                'attemptCount': outcome.failure_count})
        return outcome.retry_after

    def _complete_login(self, account: Account, client: ClientInfo, method: str) -> LoginResult:
        self.lockout.record_success(account)
        if client.ip_address:
            self.ip_store.reset(client.ip_address)

        issued = self.sessions.create_session(account, client.ip_address, client.user_agent)

        self.audit.log(account.id, AuditAction.LOGIN, client, details={'email': account.email, 'method': method})
        self.audit.log(account.id, AuditAction.SESSION_CREATED, client,
                       details={'sessionId': issued.session_id, 'newLocation': issued.is_new_location})

        expiry = self.policy.check_expiry(account.password_expires_at, self.clock())
        return LoginResult(LoginResult.SUCCESS, account, issued, password_expiry=expiry)

    def _mfa_required(self, account: Account) -> LoginResult:
        challenge = self.tokens.create_mfa_challenge(account.id)
        return LoginResult(LoginResult.MFA_REQUIRED, account, mfa_challenge=challenge)

    def complete_mfa_login(self, challenge: str, code: str, is_backup_code: bool,
                           client: ClientInfo) -> LoginResult:
        """
        Second step of an MFA login. ``challenge`` is the signed token the
        first step returned; the session is issued only on a valid factor.
        Failed codes count towards the account lockout.
        """
        account_id = self.tokens.decode_mfa_challenge(challenge)
        account = self.db.get(Account, account_id)
        if account is None or not account.mfa_enabled:
            raise ValidationError('MFA not enabled for this account')

        locked, locked_until = self.lockout.check(account)
        self.db.commit()
        if locked:
            minutes = minutes_remaining(locked_until, self.clock())
            raise AccountLockedError(
                f'Account is temporarily locked. Please try again in {minutes} minutes.',
                lockedUntil=locked_until.isoformat(),
            )
        if account.is_banned:
            raise AccountBannedError(f"Account is banned: {account.ban_reason or 'No reason provided'}")

        method = 'backup_code' if is_backup_code else 'totp'
        if not self.mfa.verify_login(account, code, is_backup_code):
            outcome = self.lockout.record_failure(account)
            self.db.commit()
            if outcome.locked:
                self.audit.log(account.id, AuditAction.ACCOUNT_LOCKED, client,
                               status=AuditStatus.WARNING, severity=Severity.HIGH,
                               details={'reason': 'Multiple failed MFA attempts',
                                        'attemptCount': outcome.failure_count})
            severity = Severity.HIGH if self.lockout.is_high_severity(outcome.failure_count) else Severity.MEDIUM
            self.audit.log(account.id, AuditAction.MFA_FAILED, client,
                           status=AuditStatus.FAILURE, severity=severity,
                           details={'method': method, 'attemptCount': outcome.failure_count})
            raise InvalidCredentialsError('Invalid verification code', retry_after=outcome.retry_after)

        self.audit.log(account.id, AuditAction.MFA_VERIFIED, client, details={'method': method})
        return self._complete_login(account, client, method='mfa')

    # ==================== EMAIL VERIFICATION ====================

    def verify_code(self, email: str, code: str, client: ClientInfo) -> LoginResult:
        """Confirm a verification code and log the account in."""
        account = self.find_by_email(email)
        self.code_verification.check(account, code)
        self.code_verification.complete(account)
        self.db.commit()

        self.audit.log(account.id, AuditAction.EMAIL_VERIFIED, client, details={'method': 'code'})

        if account.is_banned:
            raise AccountBannedError(f"Account is banned: {account.ban_reason or 'No reason provided'}")
        if account.mfa_enabled:
            return self._mfa_required(account)
        return self._complete_login(account, client, method='email_code')

    def verify_link(self, token: str, client: ClientInfo) -> Account:
        account = self.link_verification.find_account(self.db, token)
        self.link_verification.check(account, token)
        self.link_verification.complete(account)
        self.db.commit()

        self.audit.log(account.id, AuditAction.EMAIL_VERIFIED, client, details={'method': 'link'})
        return account

    def resend_code(self, email: str) -> None:
        account = self.find_by_email(email)
        if account is None or account.is_email_verified:
            raise NotFoundError('User not found or already verified')

        code = self.code_verification.issue(account)
        self.db.commit()
        if not self._deliver(account, self.code_verification, code):
            raise EmailDeliveryError('Failed to send OTP email')

    def resend_link(self, email: str) -> None:
        """Silent for unknown emails so the response cannot confirm an account exists."""
        account = self.find_by_email(email)
        if account is None:
            return
        if account.is_email_verified:
            raise ValidationError('Email is already verified. You can login now.')

        token = self.link_verification.issue(account)
        self.db.commit()
        if not self._deliver(account, self.link_verification, token):
            logger.warning(f"Verification link for account {account.id} was not delivered")

    # ==================== PASSWORD RESET / CHANGE ====================

    def forgot_password(self, email: str, client: ClientInfo) -> None:
        account = self.find_by_email(email)
        if account is None:
            return

        token = Validator.generate_hex_token(self.config.PASSWORD_RESET_TOKEN_BYTES)
        account.password_reset_hash = Validator.hash_token(token)
        account.password_reset_expires = self.clock() + self.config.PASSWORD_RESET_TOKEN_EXPIRES
        self.db.commit()

        reset_url = f"{self.config.CLIENT_URL.rstrip('/')}/auth/reset-password/{token}"
        if not self.email.send_email(account.email, 'passwordReset', {'resetUrl': reset_url}):
            # A reset link nobody received must not stay usable
            account.password_reset_hash = None
            account.password_reset_expires = None
            self.db.commit()
            raise EmailDeliveryError('Email could not be sent')

        self.audit.log(account.id, AuditAction.PASSWORD_RESET_REQUEST, client, severity=Severity.MEDIUM)

    def reset_password(self, token: str, new_password: str, client: ClientInfo) -> None:
        """Set a new password from a reset link. Revokes every session and clears any lock."""
        account = None
        if token:
            account = self.db.query(Account).filter(
                Account.password_reset_hash == Validator.hash_token(token)
            ).first()
        if account is None or account.password_reset_expires is None \
                or account.password_reset_expires <= self.clock():
            raise VerificationError('Invalid or expired token')

        self._validate_new_password(new_password, [account.name, account.email],
                                    'Password does not meet security requirements')

        was_locked = account.locked_until is not None
        self._set_password(account, new_password)
        account.password_reset_hash = None
        account.password_reset_expires = None
        self.lockout.record_success(account)
        revoked = self.sessions.revoke_all(account)

        if was_locked:
            self.audit.log(account.id, AuditAction.ACCOUNT_UNLOCKED, client, severity=Severity.MEDIUM,
                           details={'reason': 'password_reset'})
        self.audit.log(account.id, AuditAction.PASSWORD_RESET_COMPLETE, client, severity=Severity.MEDIUM,
                       details={'sessionsRevoked': revoked})

    def change_password(self, account: Account, current_password: str, new_password: str,
                        client: ClientInfo) -> None:
        if not self.crypto.verify_password(account.password_hash, current_password):
            self.audit.log(account.id, AuditAction.PASSWORD_CHANGE, client,
                           status=AuditStatus.FAILURE, severity=Severity.MEDIUM,
                           details={'reason': 'invalid_current_password'})
            raise InvalidCredentialsError('Current password is incorrect')

        self._validate_new_password(new_password, [account.name, account.email],
                                    'New password does not meet security requirements')
        if self.crypto.verify_password(account.password_hash, new_password):
            raise ValidationError('New password must be different from the current password')

        self._set_password(account, new_password)
        self.db.commit()

        self.audit.log(account.id, AuditAction.PASSWORD_CHANGE, client, severity=Severity.MEDIUM)

    # ==================== OAUTH ====================

    def login_with_oauth(self, identity: OAuthIdentity, client: ClientInfo,
                         role: Optional[str] = None) -> LoginResult:
        """
        Link the provider identity to an account (creating one if needed)
        and issue a session.

        MFA is not challenged here unless OAUTH_ENFORCE_MFA is set.
        """
        id_column = Account.google_id if identity.provider == 'google' else Account.github_id
        account = self.db.query(Account).filter(id_column == identity.provider_id).first()

        if account is None:
            account = self.find_by_email(identity.email)
            if account is not None:
                setattr(account, id_column.key, identity.provider_id)
                if account.auth_method == 'manual':
                    account.auth_method = 'both'
                account.is_email_verified = True
                self.db.commit()
                self.audit.log(account.id, AuditAction.PROFILE_UPDATED, client,
                               details={'event': 'oauth_linked', 'provider': identity.provider})
            else:
                account = self._create_oauth_account(identity, client, role)

        locked, locked_until = self.lockout.check(account)
        self.db.commit()
        if locked:
            minutes = minutes_remaining(locked_until, self.clock())
            raise AccountLockedError(
                f'Account is temporarily locked. Please try again in {minutes} minutes.',
                lockedUntil=locked_until.isoformat(),
            )

        if account.is_banned:
            self.audit.log(account.id, AuditAction.BANNED_ACCESS_ATTEMPT, client,
                           status=AuditStatus.FAILURE, severity=Severity.HIGH,
                           details={'provider': identity.provider})
            raise AccountBannedError(f"Account is banned: {account.ban_reason or 'No reason provided'}")

        if account.mfa_enabled:
            if self.config.OAUTH_ENFORCE_MFA:
                return self._mfa_required(account)
            logger.info(f"OAuth login for account {account.id} completed without an MFA challenge")

        return self._complete_login(account, client, method=identity.provider)

    def _create_oauth_account(self, identity: OAuthIdentity, client: ClientInfo,
                              role: Optional[str]) -> Account:
        try:
            role_value = Role.parse(role).value if role else Role.CLIENT.value
        except ValueError:
            role_value = Role.CLIENT.value
        if role_value not in self.config.SELF_REGISTRATION_ROLES:
            role_value = Role.CLIENT.value

        account = Account(
            email=Validator.normalize_email(identity.email),
            name=identity.name,
            role=role_value,
            auth_method=identity.provider,
            is_email_verified=True,
            created_at=self.clock(),
        )
        setattr(account, 'google_id' if identity.provider == 'google' else 'github_id', identity.provider_id)
        self.db.add(account)
        self.db.commit()

        self.audit.log(account.id, AuditAction.USER_REGISTRATION, client,
                       details={'email': account.email, 'method': identity.provider})
        return account

    # ==================== SESSIONS ====================

    def logout(self, account: Account, session: AccountSession, client: ClientInfo) -> None:
        self.sessions.revoke(account, session.session_id)
        self.audit.log(account.id, AuditAction.LOGOUT, client)

    def revoke_session(self, account: Account, session_id: str, client: ClientInfo) -> None:
        revoked = self.sessions.revoke(account, session_id)
        self.audit.log(account.id, AuditAction.SESSION_REVOKED, client,
                       details={'sessionId': session_id, 'revokedSessionIp': revoked.ip_address})

    def revoke_other_sessions(self, account: Account, current_session_id: str, client: ClientInfo) -> int:
        count = self.sessions.revoke_all_except(account, current_session_id)
        self.audit.log(account.id, AuditAction.SESSION_REVOKED, client,
                       details={'type': 'all_others', 'count': count})
        return count

    def revoke_all_sessions(self, account: Account, client: ClientInfo) -> int:
        count = self.sessions.revoke_all(account)
        self.audit.log(account.id, AuditAction.SESSION_REVOKED, client,
                       details={'type': 'all_devices', 'count': count})
        return count
