"""
Flask request helpers: the authentication and role checks applied to routes,
plus access to the per-request services.
"""

from functools import wraps

from flask import current_app, g, request

from .audit import ClientInfo
from .errors import AccountBannedError, PermissionDeniedError, TokenInvalidError
from .models import Account, Role

EXTENSION_KEY = 'projecthub_auth'


def current_services():
    return current_app.extensions[EXTENSION_KEY]


def current_client() -> ClientInfo:
    """IP, user agent and resolved location of the current request."""
    ip_address = request.remote_addr
    return ClientInfo(
        ip_address=ip_address,
        user_agent=request.headers.get('User-Agent', 'Unknown'),
        location=current_services().geolocator.lookup(ip_address),
    )


def extract_token():
    header = request.headers.get('Authorization', '')
    if header.startswith('Bearer '):
        return header[len('Bearer '):].strip() or None
    return request.cookies.get(current_services().config.COOKIE_NAME)


def login_required(f):
    """Resolve the bearer token to ``g.account`` and ``g.session``."""
    @wraps(f)
    def decorated(*args, **kwargs):
        token = extract_token()
        if not token:
            raise TokenInvalidError('Not authorized, no token')

        account, session = current_services().sessions(g.db).authenticate(token)
        if account.is_banned:
            raise AccountBannedError(f"Account is banned: {account.ban_reason or 'No reason provided'}")

        g.account = account
        g.session = session
        return f(*args, **kwargs)
    return decorated


def has_role(account: Account, *roles) -> bool:
    """Role check with ``developer`` treated as ``worker``."""
    try:
        role = account.role_enum.effective
    except ValueError:
        return False
    return role in {Role.parse(r).effective for r in roles}


def role_required(*roles):
    """Authenticate, then allow only the given roles."""
    def decorator(f):
        @wraps(f)
        @login_required
        def decorated(*args, **kwargs):
            if not has_role(g.account, *roles):
                raise PermissionDeniedError(
                    f"User role '{g.account.role}' is not authorized to access this route"
                )
            return f(*args, **kwargs)
        return decorated
    return decorator
