"""
Wiring for the security core.

Process-wide collaborators (crypto, stores, external clients) are built once
from the config; database-bound services are created per request around a
fresh SQLAlchemy session.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session as DBSession

from .audit import AuditTrail
from .auth import AuthService
from .crypto import CryptoManager, FieldCodec
from .email_service import EmailService
from .geolocation import GeoLocator, build_geolocator
from .mfa import MFAService
from .oauth import OAuthClient
from .password_policy import PasswordPolicy
from .rate_limiter import (
    AccountLockout, CaptchaVerifier, IPBlockStore, RequestRateLimiter, build_ip_block_store,
)
from .session import SessionManager
from .tokens import TokenService
from .utils import utcnow
from .verification import CodeVerification, LinkVerification, build_strategies


@dataclass
class SecurityServices:
    config: object
    session_factory: Callable[[], DBSession]
    clock: Callable[[], datetime]
    crypto: CryptoManager
    policy: PasswordPolicy
    lockout: AccountLockout
    ip_store: IPBlockStore
    captcha: CaptchaVerifier
    request_limiter: RequestRateLimiter
    email: EmailService
    geolocator: GeoLocator
    audit: AuditTrail
    tokens: TokenService
    oauth: OAuthClient
    code_verification: CodeVerification
    link_verification: LinkVerification

    @classmethod
    def build(cls, config, session_factory, clock: Callable[[], datetime] = utcnow, **overrides):
        """Build every collaborator from ``config``; keyword overrides replace individual ones."""
        code_verification, link_verification = build_strategies(config, clock)
        parts = {
            'crypto': CryptoManager.from_config(config),
            'policy': PasswordPolicy(config),
            'lockout': AccountLockout(config, clock),
            'ip_store': build_ip_block_store(config, session_factory, clock),
            'captcha': CaptchaVerifier(config),
            'request_limiter': RequestRateLimiter.from_config(config, clock),
            'email': EmailService(config),
            'geolocator': build_geolocator(config),
            'audit': AuditTrail(session_factory, clock),
            'tokens': TokenService(config, clock),
            'oauth': OAuthClient(config),
            'code_verification': code_verification,
            'link_verification': link_verification,
        }
        unknown = set(overrides) - set(parts)
        if unknown:
            raise TypeError(f"Unknown service overrides: {', '.join(sorted(unknown))}")
        parts.update(overrides)
        return cls(config=config, session_factory=session_factory, clock=clock, **parts)

    @property
    def codec(self) -> FieldCodec:
        return FieldCodec(self.crypto)

    def sessions(self, db: DBSession) -> SessionManager:
        return SessionManager(db, self.config, self.tokens, self.email, self.geolocator, self.clock)

    def mfa(self, db: DBSession) -> MFAService:
        return MFAService(db, self.config, self.crypto, self.audit, self.clock)

    def auth(self, db: DBSession) -> AuthService:
        return AuthService(db, self)
