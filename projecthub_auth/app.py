import logging
from datetime import datetime
from typing import Callable, Optional

from flask import Flask, g, jsonify
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from werkzeug.exceptions import HTTPException

from .config import SecurityConfig, get_config
from .decorators import EXTENSION_KEY
from .errors import AuthError, InvalidCredentialsError
from .models import Base
from .routes import audit_bp, auth_bp, mfa_bp, sessions_bp
from .services import SecurityServices
from .utils import utcnow

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    if database_url.startswith('sqlite'):
        connect_args = {'check_same_thread': False}
        if database_url in ('sqlite://', 'sqlite:///:memory:'):
            # One shared connection, or every session would see its own empty database
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url, pool_pre_ping=True)


def configure_logging(config: SecurityConfig):
    logging.basicConfig(
        level=getattr(logging, str(config.LOG_LEVEL).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )


def create_app(config: Optional[SecurityConfig] = None,
               clock: Callable[[], datetime] = utcnow,
               **service_overrides) -> Flask:
    """
    Application factory.

    ``service_overrides`` replace individual collaborators (email service,
    geolocator, IP block store, ...) and exist mainly for tests.
    """
    if config is None:
        config = get_config()
    elif isinstance(config, type):
        config = config()

    configure_logging(config)

    app = Flask(__name__)
    app.config['SECRET_KEY'] = config.SECRET_KEY
    app.config['TESTING'] = config.TESTING
    app.config['DEBUG'] = config.DEBUG

    engine = build_engine(config.DATABASE_URL)
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)

    services = SecurityServices.build(config, SessionLocal, clock=clock, **service_overrides)
    app.extensions[EXTENSION_KEY] = services
    app.extensions['sqlalchemy_engine'] = engine

    # --- MIDDLEWARE ---

    @app.before_request
    def open_db_session():
        g.db = SessionLocal()

    @app.teardown_request
    def close_db_session(exc):
        db = g.pop('db', None)
        if db is None:
            return
        if exc is not None:
            db.rollback()
        db.close()

    @app.after_request
    def add_security_headers(response):
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['Content-Security-Policy'] = "default-src 'self'"
        response.headers['Referrer-Policy'] = 'no-referrer'
        if not config.DEBUG:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    # --- ERROR HANDLERS ---

    @app.errorhandler(AuthError)
    def handle_auth_error(error: AuthError):
        body = error.to_dict()
        retry_after = error.retry_after if isinstance(error, InvalidCredentialsError) else None
        if retry_after:
            body['retryAfter'] = retry_after
        response = jsonify(body)
        response.status_code = error.status_code
        if retry_after:
            response.headers['Retry-After'] = str(retry_after)
        return response

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        if error.code is None or error.code < 400:
            # Routing redirects (trailing slash) pass through untouched
            return error
        response = jsonify({'message': error.description})
        response.status_code = error.code
        return response

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        logger.exception(f"Unhandled error: {error!r}")
        db = g.get('db')
        if db is not None:
            db.rollback()
        response = jsonify({'message': 'Server error'})
        response.status_code = 500
        return response

    # --- ROUTES ---

    app.register_blueprint(auth_bp)
    app.register_blueprint(mfa_bp)
    app.register_blueprint(sessions_bp)
    app.register_blueprint(audit_bp)

    @app.route('/api/health', methods=['GET'])
    def health():
        return jsonify({'status': 'ok'})

    logger.info(f"ProjectHub auth service initialised (env={config.ENV})")
    return app
