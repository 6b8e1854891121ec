"""
Multi-Factor Authentication (MFA) Module

Implements TOTP-based MFA (RFC 6238):
- Secret issuance with QR code for authenticator apps
- TOTP validation with clock-skew tolerance
- Single-use backup codes, Argon2-hashed at rest

The shared secret is only ever stored as AES-GCM ciphertext and decrypted
for the duration of a single verification.
"""

import base64
import io
import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import pyotp
import qrcode
from sqlalchemy.orm import Session as DBSession

from .audit import AuditTrail, ClientInfo
from .crypto import CryptoManager, FieldCodec
from .errors import ConflictError, InvalidCredentialsError, ValidationError, VerificationError
from .models import Account, AuditAction, Severity
from .utils import utcnow

logger = logging.getLogger(__name__)


class MFAService:
    def __init__(
        self,
        db: DBSession,
        config,
        crypto: CryptoManager,
        audit: AuditTrail,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.crypto = crypto
        self.codec = FieldCodec(crypto)
        self.audit = audit
        self.clock = clock
        self.issuer = config.TOTP_ISSUER
        self.interval = config.TOTP_INTERVAL
        self.digits = config.TOTP_DIGITS
        self.valid_window = config.TOTP_VALID_WINDOW
        self.backup_code_count = config.MFA_BACKUP_CODE_COUNT
        self.backup_code_bytes = config.MFA_BACKUP_CODE_BYTES

    # ==================== TOTP PRIMITIVES ====================

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, interval=self.interval, digits=self.digits, issuer=self.issuer)

    def verify_totp(self, secret: str, code: str) -> bool:
        code = (code or '').strip()
        if len(code) != self.digits or not code.isdigit():
            return False
        # pyotp reads naive datetimes as local time
        now = self.clock().replace(tzinfo=timezone.utc)
        return self._totp(secret).verify(code, for_time=now, valid_window=self.valid_window)

    def generate_qr_code(self, provisioning_uri: str) -> str:
        """PNG QR code as a data URL, ready for an <img> tag."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return 'data:image/png;base64,' + base64.b64encode(buffer.getvalue()).decode()

    def generate_backup_codes(self) -> List[str]:
        return [secrets.token_hex(self.backup_code_bytes).upper() for _ in range(self.backup_code_count)]

    def _decrypted_secret(self, account: Account) -> Optional[str]:
        try:
            return self.codec.decode(account.mfa_secret)
        except ValueError:
            logger.error(f"Stored MFA secret for account {account.id} could not be decrypted")
            return None

    # ==================== LIFECYCLE ====================

    def setup(self, account: Account) -> Dict[str, str]:
        """
        Issue a fresh secret. MFA stays disabled until ``confirm_setup``
        succeeds with a code from this secret.
        """
        if account.mfa_enabled:
            raise ConflictError('MFA is already enabled')

        secret = pyotp.random_base32()
        otpauth_url = self._totp(secret).provisioning_uri(name=account.email, issuer_name=self.issuer)

        account.mfa_secret = self.codec.encode(secret)
        self.db.commit()

        return {
            'secret': secret,
            'otpauthUrl': otpauth_url,
            'qrCode': self.generate_qr_code(otpauth_url),
        }

    def confirm_setup(self, account: Account, code: str, client: Optional[ClientInfo] = None) -> List[str]:
        """Enable MFA. Returns the plaintext backup codes, shown exactly once."""
        if account.mfa_enabled:
            raise ConflictError('MFA is already enabled')
        secret = self._decrypted_secret(account)
        if not secret:
            raise ValidationError('MFA setup not initialized')

        if not self.verify_totp(secret, code):
            raise VerificationError('Invalid verification token')

        backup_codes = self.generate_backup_codes()
        account.mfa_backup_codes = [self.crypto.hash_password(c) for c in backup_codes]
        account.mfa_enabled = True
        account.mfa_method = 'totp'
        self.db.commit()

        self.audit.log(account.id, AuditAction.MFA_ENABLED, client, severity=Severity.MEDIUM)
        return backup_codes

    def verify_login(self, account: Account, code: str, is_backup_code: bool = False) -> bool:
        """Check a second factor. A matching backup code is consumed."""
        if not account.mfa_enabled:
            return False

        if is_backup_code:
            index = self._match_backup_code(account, code)
            if index is None:
                return False
            remaining = list(account.mfa_backup_codes)
            del remaining[index]
            # Reassign so the JSON column is flagged dirty
            account.mfa_backup_codes = remaining
            self.db.commit()
            return True

        secret = self._decrypted_secret(account)
        return bool(secret) and self.verify_totp(secret, code)

    def _match_backup_code(self, account: Account, code: str) -> Optional[int]:
        candidate = (code or '').strip().upper()
        if not candidate:
            return None
        for index, code_hash in enumerate(account.mfa_backup_codes or []):
            if self.crypto.verify_password(code_hash, candidate):
                return index
        return None

    def disable(self, account: Account, password: str, client: Optional[ClientInfo] = None) -> None:
        if not self.crypto.verify_password(account.password_hash, password):
            raise InvalidCredentialsError('Invalid password')

        account.mfa_enabled = False
        account.mfa_secret = None
        account.mfa_backup_codes = []
        self.db.commit()

        self.audit.log(account.id, AuditAction.MFA_DISABLED, client, severity=Severity.HIGH)

    def regenerate_backup_codes(self, account: Account, password: str,
                                client: Optional[ClientInfo] = None) -> List[str]:
        if not account.mfa_enabled:
            raise ValidationError('MFA is not enabled')
        if not self.crypto.verify_password(account.password_hash, password):
            raise InvalidCredentialsError('Invalid password')

        backup_codes = self.generate_backup_codes()
        account.mfa_backup_codes = [self.crypto.hash_password(c) for c in backup_codes]
        self.db.commit()

        self.audit.log(account.id, AuditAction.SECURITY_ALERT, client, severity=Severity.MEDIUM,
                       details={'event': 'backup_codes_regenerated'})
        return backup_codes

    @staticmethod
    def status(account: Account) -> Dict:
        return {
            'mfaEnabled': account.mfa_enabled,
            'method': account.mfa_method if account.mfa_enabled else None,
            'backupCodesRemaining': len(account.mfa_backup_codes or []) if account.mfa_enabled else 0,
        }
