from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from rentease.logging import get_logger, redact_email

logger = get_logger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
SUPPORT_ADDRESS = "support@rentease.com"

_STYLE = """
        body { font-family: 'Inter', -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif; line-height: 1.6; color: #374151; background: #f9fafb; }
        .container { max-width: 600px; margin: 0 auto; padding: 40px 20px; }
        .header { background: linear-gradient(135deg, #0ea5e9, #0d9488); color: white; padding: 32px 20px; text-align: center; border-radius: 16px 16px 0 0; }
        .content { background: white; padding: 32px; border: 1px solid #e5e7eb; }
        .otp-code { display: inline-block; background: #f0fdfa; color: #0d9488; font-size: 40px; font-weight: 700; letter-spacing: 8px; padding: 16px 32px; border-radius: 12px; }
        .button { display: inline-block; background: #0d9488; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }
        .footer { margin-top: 24px; font-size: 12px; color: #6b7280; text-align: center; }
"""


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: Optional[str] = None


def _page(title: str, body: str) -> str:
    year = datetime.now(timezone.utc).year
    return f"""
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>{_STYLE}</style>
</head>
<body>
    <div class="container">
        <div class="header"><h1>RentEase</h1><p>{title}</p></div>
        <div class="content">
{body}
        </div>
        <div class="footer">
            <p>&copy; {year} RentEase. All rights reserved.</p>
            <p>Need help? Contact us at <a href="mailto:{SUPPORT_ADDRESS}">{SUPPORT_ADDRESS}</a></p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """Email service for sending transactional emails.

    Supports:
    - Resend HTTP API (when an API key is configured)
    - SMTP with TLS/SSL
    - Fallback to logging when neither is configured (dev mode)

    Every send returns a ``DeliveryResult``; transport errors are logged and
    reported, never raised.
    """

    def __init__(
        self,
        *,
        resend_api_key: Optional[str] = None,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "RentEase",
        frontend_url: str = "http://localhost:5173",
        http_client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ) -> None:
        self.resend_api_key = resend_api_key
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self._http = http_client
        self.timeout = timeout

    @property
    def transport(self) -> str:
        if self.resend_api_key and self.from_email:
            return "resend"
        if self.smtp_host and self.from_email:
            return "smtp"
        return "log"

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return self.transport != "log"

    @property
    def sender(self) -> str:
        return f"{self.from_name} <{self.from_email}>"

    def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> DeliveryResult:
        if not to_email or not subject or not html_body:
            return DeliveryResult(False, "Missing required email fields")
        transport = self.transport
        if transport == "resend":
            return self._send_resend(to_email, subject, html_body, text_body)
        if transport == "smtp":
            return self._send_smtp(to_email, subject, html_body, text_body)
        # Dev mode: log the email instead of sending
        logger.info(
            "email_dev_mode",
            to=redact_email(to_email),
            subject=subject,
            body_preview=text_body[:200] if text_body else html_body[:200],
        )
        return DeliveryResult(True)

    def _send_resend(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> DeliveryResult:
        payload = {
            "from": self.sender,
            "to": [to_email],
            "subject": subject,
            "html": html_body,
        }
        if text_body:
            payload["text"] = text_body
        headers = {"Authorization": f"Bearer {self.resend_api_key}"}
        try:
            if self._http is not None:
                response = self._http.post(RESEND_API_URL, json=payload, headers=headers)
            else:
                response = httpx.post(
                    RESEND_API_URL, json=payload, headers=headers, timeout=self.timeout
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "email_resend_rejected",
                to=redact_email(to_email),
                status_code=e.response.status_code,
                error=e.response.text[:200],
            )
            return DeliveryResult(False, f"resend rejected message ({e.response.status_code})")
        except httpx.HTTPError as e:
            logger.error(
                "email_resend_failed",
                to=redact_email(to_email),
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, str(e) or type(e).__name__)
        logger.info("email_sent", to=redact_email(to_email), subject=subject, transport="resend")
        return DeliveryResult(True)

    def _send_smtp(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str]
    ) -> DeliveryResult:
        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = self.sender
            msg["To"] = to_email

            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()

            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=redact_email(to_email),
            )

            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=redact_email(to_email), subject=subject, transport="smtp")
            return DeliveryResult(True)

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return DeliveryResult(False, "smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=redact_email(to_email),
                error=str(e),
            )
            return DeliveryResult(False, "recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, str(e))
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, str(e))

    def send_email_verification(
        self, to_email: str, otp: str, *, resent: bool = False
    ) -> DeliveryResult:
        """Send the six-digit verification code."""
        subject = "RentEase Email Verification"
        if resent:
            subject += " (Resent)"

        html_body = _page(
            "Email Verification",
            f"""            <p>Hello,</p>
            <p>Thank you for choosing RentEase! Please use the following verification code to complete your email verification:</p>
            <p style="text-align: center; margin: 32px 0;"><span class="otp-code">{otp}</span></p>
            <p>This code will expire in <strong>10 minutes</strong>. For security reasons, please do not share this code with anyone.</p>
            <p><strong>Note:</strong> If you didn't request this email, you can safely ignore it. This verification was sent to {to_email}.</p>""",
        )

        text_body = f"""RentEase Email Verification

Your verification code is: {otp}

This code will expire in 10 minutes. Do not share it with anyone.

If you didn't request this email, you can safely ignore it.

---
RentEase
"""

        return self.send(to_email, subject, html_body, text_body)

    def send_registration_welcome(self, to_email: str) -> DeliveryResult:
        """Send the welcome message after a successful verification."""
        subject = "Welcome to RentEase!"
        login_url = f"{self.frontend_url}/auth/login"

        html_body = _page(
            "Welcome aboard",
            f"""            <p>Hello,</p>
            <p>Your email address {to_email} has been verified and your RentEase account is ready.</p>
            <p style="margin: 30px 0;"><a href="{login_url}" class="button">Go to RentEase</a></p>""",
        )

        text_body = f"""Welcome to RentEase!

Your email address has been verified and your account is ready:

{login_url}

---
RentEase
"""

        return self.send(to_email, subject, html_body, text_body)

    def send_password_reset(self, to_email: str, token: str) -> DeliveryResult:
        """Send password reset email with reset link."""
        reset_url = f"{self.frontend_url}/auth/reset-password/{token}"

        subject = "Reset your RentEase password"

        html_body = _page(
            "Password Reset",
            f"""            <p>We received a request to reset your password. Click the button below to choose a new password:</p>
            <p style="margin: 30px 0;"><a href="{reset_url}" class="button">Reset Password</a></p>
            <p>This link will expire in 10 minutes.</p>
            <p>If you didn't request this, you can safely ignore this email.</p>
            <p>If the button doesn't work, copy and paste this URL: {reset_url}</p>""",
        )

        text_body = f"""Reset your RentEase password

We received a request to reset your password. Visit the link below to choose a new password:

{reset_url}

This link will expire in 10 minutes.

If you didn't request this, you can safely ignore this email.

---
RentEase
"""

        return self.send(to_email, subject, html_body, text_body)
