from __future__ import annotations

import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional, Protocol, Tuple

from authguard.logging import get_logger, redact_email

logger = get_logger(__name__)


class NotificationSender(Protocol):
    def send(self, template_id: str, to: str, payload: Dict[str, Any]) -> bool: ...


# template_id -> (subject, text body); bodies are str.format templates
TEMPLATES: Dict[str, Tuple[str, str]] = {
    "password_reset": (
        "Reset your password",
        "We received a request to reset your password.\n\n"
        "Open this link within {expires_minutes} minutes to choose a new one:\n"
        "{reset_url}\n\n"
        "If you did not request this, you can ignore this message.",
    ),
    "email_verification": (
        "Verify your email address",
        "Confirm your email address by opening this link within "
        "{expires_hours} hours:\n{verification_url}",
    ),
    "password_changed": (
        "Your password was changed",
        "The password for your account was changed. If this was not you, "
        "reset your password immediately.",
    ),
}


def render(template_id: str, payload: Dict[str, Any]) -> Tuple[str, str]:
    try:
        subject, body = TEMPLATES[template_id]
    except KeyError:
        raise ValueError(f"unknown notification template: {template_id}") from None
    return subject, body.format(**payload)


class EmailNotificationSender:
    """Sends templated notifications over SMTP.

    Falls back to logging the message when SMTP is not configured (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "AuthGuard",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, template_id: str, to: str, payload: Dict[str, Any]) -> bool:
        subject, text_body = render(template_id, payload)
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_email(to),
                template_id=template_id,
                subject=subject,
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))

        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(to),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(to), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(to),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=redact_email(to),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_email(to), template_id=template_id)
        return True
