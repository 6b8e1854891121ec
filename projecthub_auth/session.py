"""
Session Management Module

Sessions live as child rows of the account, at most MAX_ACTIVE_SESSIONS per
account with the oldest evicted first. A bearer token names one session; the
token stays cryptographically valid for its whole lifetime, so revocation is
enforced here by checking that the session still exists.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session as DBSession

from .email_service import EmailService
from .errors import NotFoundError, SessionRevokedError, TokenInvalidError
from .geolocation import UNKNOWN, GeoLocation, GeoLocator, describe
from .models import Account, AccountSession, LoginLocation
from .tokens import TokenService
from .utils import Validator, utcnow

logger = logging.getLogger(__name__)


@dataclass
class IssuedSession:
    session_id: str
    token: str
    session: AccountSession
    location: Optional[GeoLocation]
    is_new_location: bool


class SessionManager:
    def __init__(
        self,
        db: DBSession,
        config,
        token_service: TokenService,
        email_service: EmailService,
        geolocator: GeoLocator,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.config = config
        self.tokens = token_service
        self.email = email_service
        self.geolocator = geolocator
        self.clock = clock
        self.max_sessions = config.MAX_ACTIVE_SESSIONS

    def create_session(self, account: Account, ip_address: str, user_agent: str) -> IssuedSession:
        """
        Append a session, evict the oldest beyond the limit, record the login
        location and sign a token for the new session. Commits.
        """
        now = self.clock()
        location = self.geolocator.lookup(ip_address)
        session_id = Validator.generate_hex_token(self.config.SESSION_ID_BYTES)

        sessions = account.active_sessions
        next_sequence = max((s.sequence for s in sessions), default=0) + 1
        session = AccountSession(
            session_id=session_id,
            sequence=next_sequence,
            device_info=(user_agent or '')[:500],
            ip_address=ip_address,
            location=describe(location),
            created_at=now,
            last_activity=now,
        )
        sessions.append(session)

        # FIFO eviction; delete-orphan removes the rows on flush
        while len(sessions) > self.max_sessions:
            evicted = sessions.pop(0)
            logger.info(f"Evicted oldest session for account {account.id} (seq {evicted.sequence})")

        is_new_location = self._record_location(account, ip_address, location, now)
        self.db.commit()

        if is_new_location:
            self._send_login_alert(account, ip_address, user_agent, location, now)

        token = self.tokens.create_token(account.id, session_id)
        return IssuedSession(session_id, token, session, location, is_new_location)

    def _record_location(self, account: Account, ip_address: str,
                         location: Optional[GeoLocation], now: datetime) -> bool:
        city = location.city if location else UNKNOWN
        known_cities = {entry.city for entry in account.login_locations}
        is_new = city not in known_cities

        account.login_locations.append(LoginLocation(
            ip_address=ip_address,
            location=describe(location),
            city=city,
            country=location.country if location else UNKNOWN,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            timestamp=now,
            is_new_location=is_new,
        ))
        return is_new

    def _send_login_alert(self, account: Account, ip_address: str, user_agent: str,
                          location: Optional[GeoLocation], now: datetime):
        # Best effort, never on the login's critical path
        try:
            self.email.send_async(account.email, 'loginAlert', {
                'location': describe(location),
                'time': now.strftime('%Y-%m-%d %H:%M:%S UTC'),
                'ip': ip_address,
                'device': user_agent,
            })
        except RuntimeError as e:
            logger.error(f"Could not schedule login alert for account {account.id}: {e}")

    # ==================== VALIDATION ====================

    def authenticate(self, token: str) -> Tuple[Account, AccountSession]:
        """
        Resolve a bearer token to its account and live session.

        Raises:
            TokenInvalidError: bad signature, expired, malformed, or unknown account
            SessionRevokedError: token is valid but its session no longer exists
        """
        payload = self.tokens.decode_token(token)

        account = self.db.get(Account, payload['sub'])
        if account is None:
            raise TokenInvalidError('User no longer exists')

        session = self.find_session(account, payload['sid'])
        if session is None:
            raise SessionRevokedError('Session has been revoked or expired')

        session.last_activity = self.clock()
        self.db.commit()
        return account, session

    @staticmethod
    def find_session(account: Account, session_id: str) -> Optional[AccountSession]:
        for session in account.active_sessions:
            if session.session_id == session_id:
                return session
        return None

    # ==================== REVOCATION ====================

    def revoke(self, account: Account, session_id: str) -> AccountSession:
        session = self.find_session(account, session_id)
        if session is None:
            raise NotFoundError('Session not found')
        account.active_sessions.remove(session)
        self.db.commit()
        return session

    def revoke_all_except(self, account: Account, current_session_id: str) -> int:
        others = [s for s in account.active_sessions if s.session_id != current_session_id]
        for session in others:
            account.active_sessions.remove(session)
        self.db.commit()
        return len(others)

    def revoke_all(self, account: Account) -> int:
        """Panic button / password reset."""
        count = len(account.active_sessions)
        account.active_sessions.clear()
        self.db.commit()
        return count

    # ==================== LISTING ====================

    @staticmethod
    def list_sessions(account: Account, current_session_id: Optional[str] = None) -> List[Dict]:
        sessions = []
        for session in account.active_sessions:
            data = session.to_dict()
            data['isCurrent'] = session.session_id == current_session_id
            sessions.append(data)
        return sessions

    @staticmethod
    def login_history(account: Account) -> List[Dict]:
        return [entry.to_dict() for entry in account.login_locations]

    # ==================== COOKIE ====================

    def cookie_settings(self) -> Dict:
        """Keyword arguments for ``Response.set_cookie``."""
        return {
            'httponly': self.config.COOKIE_HTTPONLY,
            'secure': self.config.COOKIE_SECURE,
            'samesite': self.config.COOKIE_SAMESITE,
            'path': self.config.COOKIE_PATH,
            'max_age': self.config.COOKIE_MAX_AGE,
        }
