import calendar
from datetime import datetime
from typing import Callable

import jwt

from .errors import TokenInvalidError
from .utils import utcnow

MFA_PURPOSE = 'mfa'


class TokenService:
    """
    Signs and decodes the bearer token: ``{sub, sid, iat, exp}``.

    The token proves identity only. Whether the session it names is still
    active is decided by the SessionManager at lookup time.

    Also signs the short-lived MFA challenge ``{sub, purpose, iat, exp}``
    that links the code step of a login to a password step that passed.
    """

    def __init__(self, config, clock: Callable[[], datetime] = utcnow):
        self.secret_key = config.JWT_SECRET_KEY
        self.algorithm = config.JWT_ALGORITHM
        self.lifetime = config.TOKEN_LIFETIME
        self.challenge_lifetime = config.MFA_CHALLENGE_LIFETIME
        self.clock = clock

    def create_token(self, account_id: str, session_id: str) -> str:
        now = self.clock()
        payload = {
            'sub': account_id,
            'sid': session_id,
            'iat': _timestamp(now),
            'exp': _timestamp(now + self.lifetime),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_token(self, token: str) -> dict:
        if not token:
            raise TokenInvalidError('Not authorized, no token')
        payload = self._decode(token, ['sub', 'sid', 'exp'], 'Not authorized, token failed')
        if 'purpose' in payload:
            raise TokenInvalidError('Not authorized, token failed')
        return payload

    # ==================== MFA CHALLENGE ====================

    def create_mfa_challenge(self, account_id: str) -> str:
        now = self.clock()
        payload = {
            'sub': account_id,
            'purpose': MFA_PURPOSE,
            'iat': _timestamp(now),
            'exp': _timestamp(now + self.challenge_lifetime),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode_mfa_challenge(self, challenge: str) -> str:
        """Returns the account id the challenge was issued to."""
        message = 'MFA session is invalid or has expired. Please log in again.'
        if not challenge:
            raise TokenInvalidError(message)
        payload = self._decode(challenge, ['sub', 'purpose', 'exp'], message)
        if payload['purpose'] != MFA_PURPOSE:
            raise TokenInvalidError(message)
        return payload['sub']

    def _decode(self, token: str, required, message: str) -> dict:
        try:
            # Expiry is checked against our own clock below
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={'verify_exp': False, 'verify_iat': False, 'require': required},
            )
        except jwt.InvalidTokenError:
            raise TokenInvalidError(message)

        if payload['exp'] <= _timestamp(self.clock()):
            raise TokenInvalidError(message)
        return payload


def _timestamp(value: datetime) -> int:
    """Naive UTC datetime to epoch seconds."""
    return calendar.timegm(value.utctimetuple())
