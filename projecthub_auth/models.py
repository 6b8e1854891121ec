import enum
import uuid

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()


class Role(enum.Enum):
    CLIENT = "client"
    WORKER = "worker"
    DEVELOPER = "developer"  # Deprecated alias for WORKER
    ADMIN = "admin"

    @property
    def effective(self) -> 'Role':
        return Role.WORKER if self is Role.DEVELOPER else self

    @classmethod
    def parse(cls, value) -> 'Role':
        if isinstance(value, Role):
            return value
        return cls((value or '').strip().lower())


class AuditAction(enum.Enum):
    LOGIN = "login"
    LOGOUT = "logout"
    LOGIN_FAILED = "login_failed"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    PROFILE_UPDATED = "profile_updated"
    EMAIL_VERIFIED = "email_verified"
    SECURITY_ALERT = "security_alert"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    BANNED_ACCESS_ATTEMPT = "banned_access_attempt"
    USER_REGISTRATION = "user_registration"


class AuditStatus(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class Severity(enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Account(Base):
    __tablename__ = 'accounts'

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(255), unique=True, nullable=False, index=True)  # Always lower-cased
    name = Column(String(100), default='')
    role = Column(String(20), default=Role.CLIENT.value, nullable=False)
    phone_encrypted = Column(Text, nullable=True)

    # Credential - NULL for OAuth-only accounts
    password_hash = Column(String(255), nullable=True)
    password_changed_at = Column(DateTime, nullable=True)
    password_expires_at = Column(DateTime, nullable=True)
    must_change_password = Column(Boolean, default=False, nullable=False)

    auth_method = Column(String(20), default='manual', nullable=False)
    google_id = Column(String(255), nullable=True, index=True)
    github_id = Column(String(255), nullable=True, index=True)

    # Email verification: one slot, filled by either a code or a link
    is_email_verified = Column(Boolean, default=False, nullable=False)
    email_verification_hash = Column(String(64), nullable=True)
    email_verification_expires = Column(DateTime, nullable=True)
    email_verification_kind = Column(String(10), nullable=True)

    password_reset_hash = Column(String(64), nullable=True, index=True)
    password_reset_expires = Column(DateTime, nullable=True)

    # MFA - secret is AES-GCM ciphertext, backup codes are Argon2 hashes
    mfa_enabled = Column(Boolean, default=False, nullable=False)
    mfa_secret = Column(Text, nullable=True)
    mfa_backup_codes = Column(JSON, default=list, nullable=False)
    mfa_method = Column(String(10), default='totp', nullable=False)

    # Brute Force Protection
    failed_login_count = Column(Integer, default=0, nullable=False)
    last_failed_login_at = Column(DateTime, nullable=True)
    locked_until = Column(DateTime, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    is_banned = Column(Boolean, default=False, nullable=False)
    ban_reason = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    active_sessions = relationship(
        "AccountSession",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="AccountSession.sequence",
    )
    login_locations = relationship(
        "LoginLocation",
        back_populates="account",
        cascade="all, delete-orphan",
        order_by="LoginLocation.id",
    )

    @property
    def role_enum(self) -> Role:
        return Role.parse(self.role)

    def is_locked(self, now) -> bool:
        return self.locked_until is not None and self.locked_until > now

    def to_public_dict(self) -> dict:
        return {
            '_id': self.id,
            'name': self.name,
            'email': self.email,
            'role': self.role,
            'isEmailVerified': self.is_email_verified,
            'mfaEnabled': self.mfa_enabled,
            'isBanned': self.is_banned,
        }


class AccountSession(Base):
    __tablename__ = 'account_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)
    session_id = Column(String(64), nullable=False, unique=True, index=True)
    # Insertion order, used for FIFO eviction
    sequence = Column(Integer, nullable=False, default=0)

    device_info = Column(String(500))
    ip_address = Column(String(45))
    location = Column(String(255), default='Unknown')
    created_at = Column(DateTime, default=utcnow)
    last_activity = Column(DateTime, default=utcnow)

    account = relationship("Account", back_populates="active_sessions")

    def to_dict(self) -> dict:
        return {
            'sessionId': self.session_id,
            'deviceInfo': self.device_info,
            'ipAddress': self.ip_address,
            'location': self.location,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'lastActivity': self.last_activity.isoformat() if self.last_activity else None,
        }


class LoginLocation(Base):
    __tablename__ = 'login_locations'

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)
    ip_address = Column(String(45))
    location = Column(String(255))
    city = Column(String(100), default='Unknown')
    country = Column(String(100), default='Unknown')
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    timestamp = Column(DateTime, default=utcnow)
    is_new_location = Column(Boolean, default=False)

    account = relationship("Account", back_populates="login_locations")

    def to_dict(self) -> dict:
        return {
            'ipAddress': self.ip_address,
            'location': self.location,
            'city': self.city,
            'country': self.country,
            'coordinates': {'latitude': self.latitude, 'longitude': self.longitude},
            'timestamp': self.timestamp.isoformat() if self.timestamp else None,
            'isNewLocation': self.is_new_location,
        }


class AuditLog(Base):
    """Append-only. Application code inserts rows and never updates or deletes them."""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey('accounts.id'), nullable=False, index=True)
    action = Column(String(40), nullable=False, index=True)
    ip_address = Column(String(45), index=True)
    user_agent = Column(String(500))
    city = Column(String(100))
    country = Column(String(100))
    latitude = Column(Float)
    longitude = Column(Float)
    status = Column(String(10), default=AuditStatus.SUCCESS.value, nullable=False)
    severity = Column(String(10), default=Severity.LOW.value, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)

    account = relationship("Account")

    def to_dict(self, include_user: bool = False) -> dict:
        data = {
            '_id': self.id,
            'userId': self.user_id,
            'action': self.action,
            'ipAddress': self.ip_address,
            'userAgent': self.user_agent,
            'location': {
                'city': self.city,
                'country': self.country,
                'coordinates': {'latitude': self.latitude, 'longitude': self.longitude},
            },
            'status': self.status,
            'severity': self.severity,
            'details': self.details,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
        if include_user and self.account is not None:
            data['user'] = {
                '_id': self.account.id,
                'name': self.account.name,
                'email': self.account.email,
                'role': self.account.role,
            }
        return data


class IPBlock(Base):
    """Backing table for the database IP block store (multi-instance deployments)."""
    __tablename__ = 'ip_blocks'

    ip_address = Column(String(45), primary_key=True)
    failure_count = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    blocked_until = Column(DateTime, nullable=True)
