"""
HTTP routes.

Handlers validate input, call the services and shape the JSON response.
Errors are raised as AuthError subclasses and rendered by the app's error
handlers.
"""

from datetime import timezone

from dateutil import parser as date_parser
from flask import Blueprint, Response, g, jsonify, make_response, request

from .audit import AuditFilter
from .auth import LoginResult
from .decorators import current_client, current_services, login_required, role_required
from .errors import RateLimitError, ValidationError
from .utils import Validator

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')
mfa_bp = Blueprint('mfa', __name__, url_prefix='/api/mfa')
sessions_bp = Blueprint('sessions', __name__, url_prefix='/api/sessions')
audit_bp = Blueprint('audit', __name__, url_prefix='/api/audit')

GENERIC_VERIFICATION_MESSAGE = 'If an account matches that email, a verification link has been sent.'
GENERIC_RESET_MESSAGE = 'If an account matches that email, a password reset link has been sent.'


# ==================== HELPERS ====================

def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _require(data: dict, *fields, message: str = None):
    """Every field must be present, non-empty and a string."""
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(message or f"Missing required fields: {', '.join(missing)}")
    for field in fields:
        _check_string(field, data[field])


def _optional(data: dict, field: str):
    value = data.get(field)
    if value is None:
        return None
    _check_string(field, value)
    return value


def _check_string(field: str, value):
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field)


def _throttle(limit_type: str, message: str):
    if not current_services().request_limiter.hit(limit_type, request.remote_addr or 'unknown'):
        raise RateLimitError(message)


def _set_token_cookie(response, token: str):
    services = current_services()
    response.set_cookie(services.config.COOKIE_NAME, token, **services.sessions(g.db).cookie_settings())
    return response


def _clear_token_cookie(response):
    config = current_services().config
    response.delete_cookie(config.COOKIE_NAME, path=config.COOKIE_PATH)
    return response


def _login_response(result: LoginResult, **extra):
    body = result.to_dict()
    if result.status == LoginResult.VERIFICATION_REQUIRED:
        return jsonify(body), 401
    if result.status == LoginResult.MFA_REQUIRED:
        return jsonify(body), 200
    body.update(extra)
    return _set_token_cookie(make_response(jsonify(body), 200), result.token)


def _parse_date(value, field):
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except ValueError:
        raise ValidationError(f"Invalid {field}: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}")


# ==================== AUTH ====================

@auth_bp.route('/register', methods=['POST'])
def register():
    data = _json_body()
    _require(data, 'email', 'password', message='Email and password are required')
    if not Validator.is_valid_email(Validator.normalize_email(data['email'])):
        raise ValidationError('Please provide a valid email address')

    result = current_services().auth(g.db).register(
        _optional(data, 'name'), data['email'], data['password'], current_client(),
        role=_optional(data, 'role'), phone=_optional(data, 'phone'),
    )
    if result.email_delivered:
        message = 'Registration successful. Please check your email for the verification code.'
    else:
        message = ('Registration successful, but the verification email could not be sent. '
                   'Please request a new code.')
    return jsonify({
        'message': message,
        'requiresVerification': True,
        'userId': result.account.id,
        'email': result.account.email,
        'emailDelivered': result.email_delivered,
    }), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    data = _json_body()
    _require(data, 'email', 'password', message='Email and password are required')
    result = current_services().auth(g.db).login(
        data['email'], data['password'], current_client(), captcha_token=_optional(data, 'captchaToken'),
    )
    return _login_response(result)


@auth_bp.route('/verify-otp', methods=['POST'])
def verify_otp():
    data = _json_body()
    _require(data, 'email', 'otp', message='Email and OTP are required')
    _throttle('otp_verify', 'Too many verification attempts. Please try again later.')
    result = current_services().auth(g.db).verify_code(data['email'], data['otp'], current_client())
    return _login_response(result)


@auth_bp.route('/resend-otp', methods=['POST'])
def resend_otp():
    data = _json_body()
    _require(data, 'email', message='Email is required')
    current_services().auth(g.db).resend_code(data['email'])
    return jsonify({'message': 'OTP sent successfully. Please check your email.'})


@auth_bp.route('/resend-verification', methods=['POST'])
def resend_verification():
    data = _json_body()
    _require(data, 'email', message='Email is required')
    current_services().auth(g.db).resend_link(data['email'])
    return jsonify({'message': GENERIC_VERIFICATION_MESSAGE})


@auth_bp.route('/verify-email/<token>', methods=['GET'])
def verify_email(token):
    current_services().auth(g.db).verify_link(token, current_client())
    return jsonify({'message': 'Email verified successfully. You can now login.'})


@auth_bp.route('/forgot-password', methods=['POST'])
def forgot_password():
    data = _json_body()
    _require(data, 'email', message='Email is required')
    _throttle('password_reset', 'Too many password reset requests. Please try again after an hour.')
    current_services().auth(g.db).forgot_password(data['email'], current_client())
    return jsonify({'message': GENERIC_RESET_MESSAGE})


@auth_bp.route('/reset-password/<token>', methods=['PUT'])
def reset_password(token):
    data = _json_body()
    _require(data, 'password', message='Password is required')
    current_services().auth(g.db).reset_password(token, data['password'], current_client())
    return jsonify({'message': 'Password reset successful. You can now login.'})


@auth_bp.route('/change-password', methods=['PUT'])
@login_required
def change_password():
    data = _json_body()
    _require(data, 'currentPassword', 'newPassword',
             message='Current password and new password are required')
    current_services().auth(g.db).change_password(
        g.account, data['currentPassword'], data['newPassword'], current_client(),
    )
    return jsonify({'message': 'Password changed successfully'})


@auth_bp.route('/me', methods=['GET'])
@login_required
def me():
    services = current_services()
    body = g.account.to_public_dict()
    body['authMethod'] = g.account.auth_method
    body['mustChangePassword'] = g.account.must_change_password
    body['passwordExpiry'] = services.policy.check_expiry(
        g.account.password_expires_at, services.clock()
    ).to_dict()
    return jsonify(body)


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    current_services().auth(g.db).logout(g.account, g.session, current_client())
    return _clear_token_cookie(make_response(jsonify({'message': 'Logged out successfully'})))


@auth_bp.route('/oauth/<provider>/url', methods=['GET'])
def oauth_url(provider):
    url = current_services().oauth.authorization_url(provider, state=request.args.get('role'))
    return jsonify({'url': url})


@auth_bp.route('/oauth/<provider>/callback', methods=['GET'])
def oauth_callback(provider):
    services = current_services()
    identity = services.oauth.exchange(provider, request.args.get('code'))
    result = services.auth(g.db).login_with_oauth(identity, current_client(), role=request.args.get('state'))
    return _login_response(result, provider=provider)


# ==================== MFA ====================

@mfa_bp.route('/verify-login', methods=['POST'])
def mfa_verify_login():
    data = _json_body()
    _require(data, 'mfaToken', 'token', message='MFA token and verification code are required')
    _throttle('mfa_verify', 'Too many MFA verification attempts. Please try again after 15 minutes.')
    result = current_services().auth(g.db).complete_mfa_login(
        data['mfaToken'], data['token'], bool(data.get('isBackupCode')), current_client(),
    )
    return _login_response(result, message='MFA verified successfully', success=True)


@mfa_bp.route('/status', methods=['GET'])
@login_required
def mfa_status():
    return jsonify(current_services().mfa(g.db).status(g.account))


@mfa_bp.route('/setup', methods=['POST'])
@login_required
def mfa_setup():
    return jsonify(current_services().mfa(g.db).setup(g.account))


@mfa_bp.route('/verify-setup', methods=['POST'])
@login_required
def mfa_verify_setup():
    data = _json_body()
    _require(data, 'token', message='Verification token is required')
    codes = current_services().mfa(g.db).confirm_setup(g.account, data['token'], current_client())
    return jsonify({'message': 'MFA enabled successfully', 'backupCodes': codes})


@mfa_bp.route('/disable', methods=['POST'])
@login_required
def mfa_disable():
    data = _json_body()
    current_services().mfa(g.db).disable(g.account, _optional(data, 'password'), current_client())
    return jsonify({'message': 'MFA disabled successfully'})


@mfa_bp.route('/regenerate-codes', methods=['POST'])
@login_required
def mfa_regenerate_codes():
    data = _json_body()
    codes = current_services().mfa(g.db).regenerate_backup_codes(
        g.account, _optional(data, 'password'), current_client(),
    )
    return jsonify({'message': 'Backup codes regenerated successfully', 'backupCodes': codes})


# ==================== SESSIONS ====================

@sessions_bp.route('', methods=['GET'])
@sessions_bp.route('/', methods=['GET'])
@login_required
def list_sessions():
    sessions = current_services().sessions(g.db)
    return jsonify(sessions.list_sessions(g.account, g.session.session_id))


@sessions_bp.route('/history', methods=['GET'])
@login_required
def login_history():
    return jsonify(current_services().sessions(g.db).login_history(g.account))


@sessions_bp.route('/logout-others', methods=['DELETE'])
@login_required
def logout_others():
    count = current_services().auth(g.db).revoke_other_sessions(
        g.account, g.session.session_id, current_client(),
    )
    return jsonify({'message': 'All other sessions revoked', 'revoked': count})


@sessions_bp.route('/logout-all', methods=['DELETE'])
@login_required
def logout_all():
    current_services().auth(g.db).revoke_all_sessions(g.account, current_client())
    response = make_response(jsonify({'message': 'Logged out from all devices successfully'}))
    return _clear_token_cookie(response)


@sessions_bp.route('/<session_id>', methods=['DELETE'])
@login_required
def revoke_session(session_id):
    current_services().auth(g.db).revoke_session(g.account, session_id, current_client())
    return jsonify({'message': 'Session revoked successfully'})


# ==================== AUDIT (ADMIN) ====================

def _audit_filter() -> AuditFilter:
    args = request.args
    return AuditFilter(
        user_id=args.get('userId') or None,
        action=args.get('action') or None,
        status=args.get('status') or None,
        severity=args.get('severity') or None,
        start=_parse_date(args.get('startDate'), 'startDate'),
        end=_parse_date(args.get('endDate'), 'endDate'),
        search=args.get('search') or None,
    )


@audit_bp.route('', methods=['GET'])
@audit_bp.route('/', methods=['GET'])
@role_required('admin')
def audit_logs():
    services = current_services()
    return jsonify(services.audit.query(
        _audit_filter(),
        page=_int_arg('page', 1),
        limit=_int_arg('limit', services.config.AUDIT_PAGE_SIZE),
    ))


@audit_bp.route('/stats', methods=['GET'])
@role_required('admin')
def audit_stats():
    return jsonify(current_services().audit.stats(
        _parse_date(request.args.get('startDate'), 'startDate'),
        _parse_date(request.args.get('endDate'), 'endDate'),
    ))


@audit_bp.route('/export', methods=['GET'])
@role_required('admin')
def audit_export():
    services = current_services()
    csv_text = services.audit.export_csv(_audit_filter(), limit=services.config.AUDIT_EXPORT_LIMIT)
    filename = f"audit-logs-{services.clock().strftime('%Y-%m-%d')}.csv"
    return Response(
        csv_text,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )


@audit_bp.route('/user/<user_id>', methods=['GET'])
@role_required('admin')
def audit_user_logs(user_id):
    return jsonify(current_services().audit.for_user(
        user_id, page=_int_arg('page', 1), limit=_int_arg('limit', 20),
    ))


@audit_bp.route('/<int:entry_id>', methods=['GET'])
@role_required('admin')
def audit_entry(entry_id):
    return jsonify(current_services().audit.get(entry_id))
