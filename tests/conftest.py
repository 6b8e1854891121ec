"""Shared pytest fixtures for the ProjectHub auth tests."""
from datetime import datetime, timedelta, timezone

import pyotp
import pytest

from projecthub_auth import create_app
from projecthub_auth.audit import ClientInfo
from projecthub_auth.config import TestingConfig
from projecthub_auth.decorators import EXTENSION_KEY
from projecthub_auth.geolocation import GeoLocation, GeoLocator
from projecthub_auth.models import Account

STRONG_PASSWORD = 'Str0ng!Passw0rd#2024'
OTHER_STRONG_PASSWORD = 'Quiet-Harbor-Lantern-8163'


class FrozenClock:
    """Controllable replacement for utcnow()."""

    def __init__(self, start=datetime(2024, 6, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeEmailService:
    """Records every message instead of talking to SMTP."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send_email(self, to_email, template_name, data):
        if self.fail:
            return False
        self.sent.append({'to': to_email, 'template': template_name, 'data': data})
        return True

    def send_async(self, to_email, template_name, data):
        self.sent.append({'to': to_email, 'template': template_name, 'data': data, 'async': True})

    def last(self, template_name=None):
        for message in reversed(self.sent):
            if template_name is None or message['template'] == template_name:
                return message
        return None


class FakeGeoLocator(GeoLocator):
    def __init__(self, table=None):
        self.table = dict(table or {})

    def lookup(self, ip_address):
        return self.table.get(ip_address)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def email():
    return FakeEmailService()


@pytest.fixture
def geo():
    return FakeGeoLocator({
        '10.0.0.1': GeoLocation('Tel Aviv', 'IL', 32.08, 34.78),
        '10.0.0.2': GeoLocation('Haifa', 'IL', 32.79, 34.99),
        '10.0.0.3': GeoLocation('Berlin', 'DE', 52.52, 13.40),
    })


@pytest.fixture
def config():
    return TestingConfig()


@pytest.fixture
def app(config, clock, email, geo):
    app = create_app(config, clock=clock, email=email, geolocator=geo)
    yield app
    app.extensions['sqlalchemy_engine'].dispose()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def db(services):
    session = services.session_factory()
    yield session
    session.close()


@pytest.fixture
def client_info():
    return ClientInfo(ip_address='10.0.0.1', user_agent='pytest-agent')


@pytest.fixture
def make_account(db, services, clock):
    """Create a verified manual account directly in the store."""
    def _make(email='user@example.com', password=STRONG_PASSWORD, role='client',
              name='Test User', verified=True, **fields):
        account = Account(
            email=email,
            name=name,
            role=role,
            auth_method='manual',
            password_hash=services.crypto.hash_password(password),
            password_changed_at=clock(),
            password_expires_at=clock() + timedelta(days=90),
            is_email_verified=verified,
            created_at=clock(),
            **fields
        )
        db.add(account)
        db.commit()
        return account
    return _make


@pytest.fixture
def totp_code(clock):
    """Current TOTP code for a secret, as an authenticator app would show it."""
    def _code(secret, offset_seconds=0):
        moment = clock().replace(tzinfo=timezone.utc) + timedelta(seconds=offset_seconds)
        return pyotp.TOTP(secret).at(moment)
    return _code


def login(client, email, password=STRONG_PASSWORD, ip='10.0.0.1', **extra):
    body = {'email': email, 'password': password}
    body.update(extra)
    return client.post('/api/auth/login', json=body, environ_base={'REMOTE_ADDR': ip},
                       headers={'User-Agent': 'pytest-agent'})


def bearer(token):
    return {'Authorization': f'Bearer {token}'}
