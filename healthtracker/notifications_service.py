from __future__ import annotations

import asyncio
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Callable, Optional, Protocol

import structlog

from healthtracker.config import SmtpSettings


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of handing a message to the mail server."""

    ok: bool
    recipient: str
    subject: str
    error: Optional[str] = None


class Notifier(Protocol):
    def send(self, recipient: str, subject: str, body: str) -> DeliveryResult: ...


SmtpFactory = Callable[[SmtpSettings], smtplib.SMTP]


def _default_smtp_factory(settings: SmtpSettings) -> smtplib.SMTP:
    if settings.use_ssl:
        return smtplib.SMTP_SSL(settings.host or "", settings.port, timeout=settings.timeout)
    return smtplib.SMTP(settings.host or "", settings.port, timeout=settings.timeout)


class EmailNotificationService:
    """Send HTML email over SMTP and report the outcome instead of raising."""

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        smtp_factory: Optional[SmtpFactory] = None,
    ) -> None:
        self._settings = settings
        self._smtp_factory = smtp_factory or _default_smtp_factory

    @property
    def configured(self) -> bool:
        return self._settings.configured

    def _build_message(self, recipient: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self._settings.from_address or ""
        msg["To"] = recipient
        msg.set_content("This message requires an HTML capable mail client.")
        msg.add_alternative(body, subtype="html")
        return msg

    def send(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        if not self.configured:
            logger.error("email_not_configured", recipient=recipient, subject=subject)
            return DeliveryResult(False, recipient, subject, error="Email service not configured")
        if not recipient:
            return DeliveryResult(False, recipient, subject, error="Recipient address is required")

        msg = self._build_message(recipient, subject, body)
        try:
            with self._smtp_factory(self._settings) as smtp:
                if self._settings.starttls and not self._settings.use_ssl:
                    smtp.starttls()
                smtp.login(self._settings.username or "", self._settings.password or "")
                smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(
                "email_delivery_failed",
                recipient=recipient,
                subject=subject,
                host=self._settings.host,
                error=str(exc),
            )
            return DeliveryResult(False, recipient, subject, error=str(exc) or type(exc).__name__)

        logger.info("email_sent", recipient=recipient, subject=subject)
        return DeliveryResult(True, recipient, subject)

    async def send_async(self, recipient: str, subject: str, body: str) -> DeliveryResult:
        return await asyncio.to_thread(self.send, recipient, subject, body)
