"""
Email Service for Authentication Notifications

``send_email`` returns False instead of raising so each caller decides
whether a failed delivery matters (it does for reset links, it does not for
login alerts).
"""

import logging
import smtplib
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _otp_verification(data: dict) -> Tuple[str, str]:
    name = escape(data.get('name') or 'there')
    return "Your ProjectHub verification code", f"""
    <h2>Verify your email</h2>
    <p>Hi {name},</p>
    <p>Your verification code is:</p>
    <p style="font-size: 28px; letter-spacing: 6px;"><strong>{escape(data['code'])}</strong></p>
    <p>This code expires in 10 minutes.</p>
    """


def _email_verification(data: dict) -> Tuple[str, str]:
    url = escape(data['verifyUrl'], quote=True)
    return "Verify Your Email", f"""
    <h2>Welcome to ProjectHub!</h2>
    <p>Please verify your email address by clicking the link below:</p>
    <p><a href="{url}">Verify Email</a></p>
    <p>This link expires in 24 hours.</p>
    """


def _password_reset(data: dict) -> Tuple[str, str]:
    url = escape(data['resetUrl'], quote=True)
    return "Reset Your Password", f"""
    <h2>Password Reset Request</h2>
    <p>Click the link below to reset your password:</p>
    <p><a href="{url}">Reset Password</a></p>
    <p>This link expires in 1 hour.</p>
    <p>If you didn't request this, please ignore this email.</p>
    """


def _login_alert(data: dict) -> Tuple[str, str]:
    return "New sign-in to your ProjectHub account", f"""
    <h2>New login detected</h2>
    <p>We noticed a sign-in from a new location.</p>
    <ul>
      <li>Location: {escape(str(data.get('location', 'Unknown')))}</li>
      <li>Time: {escape(str(data.get('time', '')))}</li>
      <li>IP address: {escape(str(data.get('ip', '')))}</li>
      <li>Device: {escape(str(data.get('device', '')))}</li>
    </ul>
    <p>If this wasn't you, change your password and log out of all devices.</p>
    """


TEMPLATES: Dict[str, Callable[[dict], Tuple[str, str]]] = {
    'otpVerification': _otp_verification,
    'emailVerification': _email_verification,
    'passwordReset': _password_reset,
    'loginAlert': _login_alert,
}


class EmailService:
    def __init__(self, config, executor: Optional[ThreadPoolExecutor] = None):
        self.host = config.SMTP_HOST
        self.port = config.SMTP_PORT
        self.username = config.SMTP_USERNAME
        self.password = config.SMTP_PASSWORD
        self.use_tls = config.SMTP_USE_TLS
        self.sender = config.EMAIL_FROM
        # Without SMTP, development pretends delivery succeeded
        self.log_only = config.DEBUG
        self.executor = executor or ThreadPoolExecutor(max_workers=2, thread_name_prefix='email')

    def render(self, template_name: str, data: dict) -> Tuple[str, str]:
        try:
            template = TEMPLATES[template_name]
        except KeyError:
            raise ValueError(f"Unknown email template: {template_name}")
        return template(data)

    def send_email(self, to_email: str, template_name: str, data: dict) -> bool:
        subject, body_html = self.render(template_name, data)

        if not self.host:
            logger.info(f"Email service not configured - '{template_name}' to {to_email} not sent")
            return self.log_only

        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = self.sender
        msg['To'] = to_email
        msg.attach(MIMEText(body_html, 'html'))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=10) as server:
                if self.use_tls:
                    server.starttls()
                if self.username and self.password:
                    server.login(self.username, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Email '{template_name}' to {to_email} failed: {e}")
            return False
        return True

    def send_async(self, to_email: str, template_name: str, data: dict) -> Future:
        """Fire-and-forget delivery off the request path."""
        future = self.executor.submit(self.send_email, to_email, template_name, data)
        future.add_done_callback(_log_async_failure)
        return future


def _log_async_failure(future: Future):
    exc = future.exception()
    if exc is not None:
        logger.error(f"Background email delivery raised: {exc!r}")
