"""
Error taxonomy for the account security core.

Every error carries the HTTP status the controller layer should answer with
and an optional payload merged into the JSON body.
"""

from typing import Optional


class AuthError(Exception):
    status_code = 400

    def __init__(self, message: str, status_code: Optional[int] = None, **payload):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.payload = payload

    def to_dict(self) -> dict:
        body = {'message': self.message}
        body.update(self.payload)
        return body


class ValidationError(AuthError):
    status_code = 400


class InvalidCredentialsError(AuthError):
    """Bad password or unknown email. The message never tells which."""
    status_code = 401

    def __init__(self, message: str = 'Invalid email or password', retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TokenInvalidError(AuthError):
    status_code = 401


class SessionRevokedError(AuthError):
    status_code = 401


class AccountLockedError(AuthError):
    status_code = 423


class IPBlockedError(AuthError):
    status_code = 429


class AccountBannedError(AuthError):
    status_code = 403


class CaptchaRequiredError(AuthError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message, requiresCaptcha=True)


class VerificationError(AuthError):
    status_code = 400


class PermissionDeniedError(AuthError):
    status_code = 403


class NotFoundError(AuthError):
    status_code = 404


class ConflictError(AuthError):
    status_code = 400


class EmailDeliveryError(AuthError):
    status_code = 500


class RateLimitError(AuthError):
    status_code = 429
