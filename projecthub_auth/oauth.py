"""
OAuth code exchange for Google and GitHub.

Turns an authorization code into a verified provider identity. Account
linking and session issuance happen in AuthService.login_with_oauth.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode

import requests

from .errors import AuthError, ValidationError

logger = logging.getLogger(__name__)

PROVIDERS = ('google', 'github')


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_id: str
    email: str
    name: str = ''


@dataclass(frozen=True)
class ProviderSettings:
    client_id: str
    client_secret: str
    redirect_uri: str
    authorize_url: str
    token_url: str
    scope: str


class OAuthError(AuthError):
    status_code = 401


class OAuthClient:
    def __init__(self, config, session: Optional[requests.Session] = None):
        self.timeout = config.OAUTH_TIMEOUT
        self.session = session or requests.Session()
        self.providers: Dict[str, ProviderSettings] = {
            'google': ProviderSettings(
                client_id=config.GOOGLE_CLIENT_ID,
                client_secret=config.GOOGLE_CLIENT_SECRET,
                redirect_uri=config.GOOGLE_REDIRECT_URI,
                authorize_url='https://accounts.google.com/o/oauth2/v2/auth',
                token_url='https://oauth2.googleapis.com/token',
                scope='openid profile email',
            ),
            'github': ProviderSettings(
                client_id=config.GITHUB_CLIENT_ID,
                client_secret=config.GITHUB_CLIENT_SECRET,
                redirect_uri=config.GITHUB_REDIRECT_URI,
                authorize_url='https://github.com/login/oauth/authorize',
                token_url='https://github.com/login/oauth/access_token',
                scope='read:user user:email',
            ),
        }

    def _settings(self, provider: str) -> ProviderSettings:
        settings = self.providers.get(provider)
        if settings is None:
            raise ValidationError(f"Unsupported OAuth provider: {provider}")
        if not settings.client_id or not settings.client_secret:
            raise AuthError('OAuth is not configured', status_code=503)
        return settings

    def authorization_url(self, provider: str, state: Optional[str] = None) -> str:
        settings = self._settings(provider)
        params = {
            'client_id': settings.client_id,
            'redirect_uri': settings.redirect_uri,
            'scope': settings.scope,
            'response_type': 'code',
        }
        if state:
            params['state'] = state
        return f"{settings.authorize_url}?{urlencode(params)}"

    def exchange(self, provider: str, code: str) -> OAuthIdentity:
        """
        Exchange an authorization code for the provider's identity.

        Raises:
            ValidationError: unknown provider or missing code
            OAuthError: the provider rejected the code or returned no email
        """
        if not code:
            raise ValidationError('No authorization code provided')
        settings = self._settings(provider)

        try:
            access_token = self._access_token(settings, code)
            if provider == 'google':
                return self._google_identity(access_token)
            return self._github_identity(access_token)
        except requests.RequestException as e:
            logger.warning(f"OAuth exchange with {provider} failed: {e}")
            raise OAuthError(f"{provider.capitalize()} authentication failed")

    def _access_token(self, settings: ProviderSettings, code: str) -> str:
        response = self.session.post(
            settings.token_url,
            data={
                'client_id': settings.client_id,
                'client_secret': settings.client_secret,
                'code': code,
                'redirect_uri': settings.redirect_uri,
                'grant_type': 'authorization_code',
            },
            headers={'Accept': 'application/json'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        token = response.json().get('access_token')
        if not token:
            raise OAuthError('Authorization code was rejected')
        return token

    def _get(self, url: str, access_token: str):
        response = self.session.get(
            url,
            headers={'Authorization': f"Bearer {access_token}", 'Accept': 'application/json'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json()

    def _google_identity(self, access_token: str) -> OAuthIdentity:
        profile = self._get('https://www.googleapis.com/oauth2/v3/userinfo', access_token)
        if not profile.get('email') or not profile.get('email_verified', False):
            raise OAuthError('Google account has no verified email')
        return OAuthIdentity(
            provider='google',
            provider_id=str(profile['sub']),
            email=profile['email'],
            name=profile.get('name') or '',
        )

    def _github_identity(self, access_token: str) -> OAuthIdentity:
        profile = self._get('https://api.github.com/user', access_token)
        email = profile.get('email')
        if not email:
            emails = self._get('https://api.github.com/user/emails', access_token)
            primary = next((e for e in emails if e.get('primary') and e.get('verified')), None)
            email = primary['email'] if primary else None
        if not email:
            raise OAuthError('GitHub account has no verified email')
        return OAuthIdentity(
            provider='github',
            provider_id=str(profile['id']),
            email=email,
            name=profile.get('name') or profile.get('login') or '',
        )
