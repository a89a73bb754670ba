"""Delivery of one-time codes to the identity's mailbox."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from crm_auth.core.config import SmtpConfig
from crm_auth.core.logging import redact_email

LOGGER = logging.getLogger(__name__)


class OTPDelivery(Protocol):
    def send_code(self, *, to_email: str, name: str, code: str, purpose: str, ttl_minutes: int) -> bool:
        ...


class LoggingOTPDelivery:
    """Development sink: records that a code was sent, never the code itself."""

    def send_code(self, *, to_email: str, name: str, code: str, purpose: str, ttl_minutes: int) -> bool:
        LOGGER.info(
            "otp_delivery_dev_mode",
            extra={"purpose": purpose, "recipient": redact_email(to_email)},
        )
        return True


class SmtpOTPDelivery:
    """Send codes over SMTP with STARTTLS."""

    def __init__(self, config: SmtpConfig, *, from_name: str = "CRM System") -> None:
        self._config = config
        self._from_email = config.from_email or config.user
        self._from_name = from_name

    def send_code(self, *, to_email: str, name: str, code: str, purpose: str, ttl_minutes: int) -> bool:
        subject = "Your CRM verification code"
        text_body = (
            f"Hello {name or 'there'},\n\n"
            f"Your verification code is {code}.\n"
            f"It expires in {ttl_minutes} minutes.\n\n"
            "If you did not try to sign in, you can ignore this message."
        )
        html_body = (
            f"<p>Hello {name or 'there'},</p>"
            f"<p>Your verification code is <strong>{code}</strong>.</p>"
            f"<p>It expires in {ttl_minutes} minutes.</p>"
        )

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self._from_name} <{self._from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        try:
            with smtplib.SMTP(self._config.host, self._config.port, timeout=30) as server:
                server.starttls(context=ssl.create_default_context())
                if self._config.user and self._config.password:
                    server.login(self._config.user, self._config.password)
                server.sendmail(self._from_email, to_email, msg.as_string())
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            LOGGER.error(
                "otp_delivery_failed",
                extra={"purpose": purpose, "reason": type(exc).__name__, "recipient": redact_email(to_email)},
            )
            return False

        LOGGER.info("otp_delivered", extra={"purpose": purpose, "recipient": redact_email(to_email)})
        return True


def build_otp_delivery(config: SmtpConfig) -> OTPDelivery:
    """SMTP when a host and sender are configured, logging sink otherwise."""
    if config.host and (config.from_email or config.user):
        return SmtpOTPDelivery(config)
    LOGGER.warning("smtp_not_configured_using_log_delivery")
    return LoggingOTPDelivery()
