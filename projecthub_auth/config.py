"""
Configuration Module for the ProjectHub Account Security Core

This module manages all security configuration parameters.
CRITICAL: Load all secrets from environment variables in production.
"""

import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


class SecurityConfig:
    """
    Central configuration class for authentication and session management.
    All security-critical parameters are defined here with secure defaults.
    """

    ENV = 'production'
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # ==================== CRYPTOGRAPHIC SETTINGS ====================

    SECRET_KEY = os.getenv('APP_SECRET_KEY', 'CHANGE_IN_PRODUCTION_USE_ENV_VAR')
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'CHANGE_IN_PRODUCTION_USE_ENV_VAR')
    JWT_ALGORITHM = 'HS256'

    # urlsafe base64 of 32 random bytes (AES-256-GCM)
    ENCRYPTION_KEY = os.getenv('ENCRYPTION_KEY', '')

    # Argon2id parameters - memory-hard KDF resistant to GPU attacks
    ARGON2_TIME_COST = 3
    ARGON2_MEMORY_COST = 65536  # 64 MB
    ARGON2_PARALLELISM = 4
    ARGON2_HASH_LENGTH = 32
    ARGON2_SALT_LENGTH = 16

    # ==================== PASSWORD POLICY ====================

    PASSWORD_MIN_LENGTH = 12
    PASSWORD_MIN_STRENGTH_SCORE = 2  # zxcvbn "moderate"
    PASSWORD_EXPIRY = timedelta(days=90)
    PASSWORD_EXPIRY_WARNING_DAYS = 14

    # k-anonymity range query, only the first 5 hex chars of the SHA-1 leave the host
    CHECK_COMPROMISED_PASSWORDS = True
    BREACH_API_URL = 'https://api.pwnedpasswords.com/range/'
    BREACH_API_TIMEOUT = 5  # seconds

    # ==================== SESSION MANAGEMENT ====================

    MAX_ACTIVE_SESSIONS = 5
    SESSION_ID_BYTES = 16
    TOKEN_LIFETIME = timedelta(days=30)

    # ==================== COOKIE SECURITY ====================

    COOKIE_NAME = 'token'
    COOKIE_SECURE = True
    COOKIE_HTTPONLY = True
    COOKIE_SAMESITE = 'Strict'
    COOKIE_PATH = '/'
    COOKIE_MAX_AGE = int(TOKEN_LIFETIME.total_seconds())

    # ==================== BRUTE FORCE PROTECTION ====================

    # Account-level lockout. Older documentation quotes 30 minutes; 5 is what is enforced.
    MAX_LOGIN_ATTEMPTS = 5
    ACCOUNT_LOCKOUT_DURATION = timedelta(minutes=5)

    # IP-based blocking for credential stuffing across many accounts
    MAX_IP_LOGIN_ATTEMPTS = 5
    IP_BLOCK_DURATION = timedelta(minutes=10)
    IP_BLOCK_BACKEND = os.getenv('IP_BLOCK_BACKEND', 'memory')  # memory | database
    # In-memory counters below the block threshold are forgotten after this long
    IP_FAILURE_RETENTION = timedelta(hours=24)
    RATE_LIMIT_SWEEP_INTERVAL = timedelta(minutes=15)

    # Progressive delay: min(2 ** failures, cap) seconds
    FAILED_LOGIN_DELAY_BASE = 2
    FAILED_LOGIN_DELAY_CAP = 16

    # Per-IP request throttles: (max requests, window)
    MFA_VERIFY_RATE_LIMIT = (10, timedelta(minutes=15))
    PASSWORD_RESET_RATE_LIMIT = (3, timedelta(hours=1))
    OTP_VERIFY_RATE_LIMIT = (10, timedelta(minutes=15))

    # ==================== CAPTCHA SETTINGS ====================

    CAPTCHA_AFTER_FAILED_ATTEMPTS = 3
    CAPTCHA_MIN_SCORE = 0.5
    CAPTCHA_VERIFY_URL = 'https://www.google.com/recaptcha/api/siteverify'
    CAPTCHA_TIMEOUT = 5  # seconds
    RECAPTCHA_SECRET_KEY = os.getenv('RECAPTCHA_SECRET_KEY', '')

    # ==================== MFA SETTINGS ====================

    TOTP_INTERVAL = 30
    TOTP_DIGITS = 6
    TOTP_VALID_WINDOW = 2  # +/- 60 seconds of clock skew
    TOTP_ISSUER = 'ProjectHub'

    MFA_BACKUP_CODE_COUNT = 10
    MFA_BACKUP_CODE_BYTES = 4  # 8 hex characters

    # Signed challenge handed out by the password step, required by the code step
    MFA_CHALLENGE_LIFETIME = timedelta(minutes=5)

    # OAuth logins currently skip the second factor
    OAUTH_ENFORCE_MFA = False

    # ==================== ACCOUNT VERIFICATION ====================

    EMAIL_OTP_DIGITS = 6
    EMAIL_OTP_EXPIRES = timedelta(minutes=10)
    EMAIL_VERIFICATION_TOKEN_EXPIRES = timedelta(hours=24)
    EMAIL_VERIFICATION_TOKEN_BYTES = 32

    PASSWORD_RESET_TOKEN_EXPIRES = timedelta(hours=1)
    PASSWORD_RESET_TOKEN_BYTES = 32

    CLIENT_URL = os.getenv('CLIENT_URL', 'http://localhost:5173')

    # ==================== DATABASE SETTINGS ====================

    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///projecthub_auth.db')

    # ==================== EMAIL SETTINGS ====================

    SMTP_HOST = os.getenv('SMTP_HOST', '')
    SMTP_PORT = int(os.getenv('SMTP_PORT', '587'))
    SMTP_USERNAME = os.getenv('SMTP_USERNAME', '')
    SMTP_PASSWORD = os.getenv('SMTP_PASSWORD', '')
    SMTP_USE_TLS = True
    EMAIL_FROM = os.getenv('EMAIL_FROM', 'noreply@projecthub.local')

    # ==================== GEOLOCATION ====================

    GEOIP_DATABASE_PATH = os.getenv('GEOIP_DATABASE_PATH', '')

    # ==================== OAUTH ====================

    GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID', '')
    GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET', '')
    GOOGLE_REDIRECT_URI = os.getenv('GOOGLE_REDIRECT_URI', 'http://localhost:5000/api/auth/oauth/google/callback')
    GITHUB_CLIENT_ID = os.getenv('GITHUB_CLIENT_ID', '')
    GITHUB_CLIENT_SECRET = os.getenv('GITHUB_CLIENT_SECRET', '')
    GITHUB_REDIRECT_URI = os.getenv('GITHUB_REDIRECT_URI', 'http://localhost:5000/api/auth/oauth/github/callback')
    OAUTH_TIMEOUT = 10

    # ==================== AUDIT LOGGING ====================

    AUDIT_PAGE_SIZE = 50
    AUDIT_EXPORT_LIMIT = 10000

    # ==================== RBAC SETTINGS ====================

    SELF_REGISTRATION_ROLES = ('client', 'worker', 'developer')


class DevelopmentConfig(SecurityConfig):
    """Development configuration - less strict for local work"""
    ENV = 'development'
    DEBUG = True
    COOKIE_SECURE = False  # Allow HTTP in development


class ProductionConfig(SecurityConfig):
    """Production configuration - maximum security"""
    COOKIE_SECURE = True


class TestingConfig(SecurityConfig):
    """Test configuration - in-memory database and cheap hashing"""
    ENV = 'testing'
    TESTING = True
    COOKIE_SECURE = False
    DATABASE_URL = 'sqlite://'
    JWT_SECRET_KEY = 'test-jwt-secret-key-for-pytest-only-32b'
    ENCRYPTION_KEY = 'MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY='
    ARGON2_TIME_COST = 1
    ARGON2_MEMORY_COST = 1024
    ARGON2_PARALLELISM = 1
    CHECK_COMPROMISED_PASSWORDS = False
    RECAPTCHA_SECRET_KEY = ''


def get_config() -> SecurityConfig:
    """
    Returns appropriate configuration based on environment.
    Default to production for safety.
    """
    env = os.getenv('FLASK_ENV', 'production')
    if env == 'development':
        return DevelopmentConfig()
    if env == 'testing':
        return TestingConfig()
    return ProductionConfig()
