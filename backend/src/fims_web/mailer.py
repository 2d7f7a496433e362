from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from email.message import EmailMessage
from threading import Lock
from typing import Protocol

import aiosmtplib

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    content: bytes
    content_type: str = "application/pdf"
    # Set for inline parts referenced from the HTML body as cid:<content_id>.
    content_id: str | None = None


@dataclass(frozen=True)
class MailMessage:
    to: tuple[str, ...]
    subject: str
    html: str
    attachments: tuple[MailAttachment, ...] = field(default_factory=tuple)


class MailDeliveryError(Exception):
    """Raised when a message could not be handed to the mail transport."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class MailSender(Protocol):
    def send(self, message: MailMessage) -> None: ...


class StubMailSender:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self.outbox: list[MailMessage] = []

    def send(self, message: MailMessage) -> None:
        if not self._enabled:
            raise MailDeliveryError("mailer_disabled", "mail delivery is disabled")
        if any("fail" in recipient.lower() for recipient in message.to):
            raise MailDeliveryError("stub_delivery_failed", "stub sender forced failure for recipient")
        with self._lock:
            self.outbox.append(message)

    def clear(self) -> None:
        with self._lock:
            self.outbox.clear()


def _split_content_type(content_type: str) -> tuple[str, str]:
    maintype, _, subtype = content_type.partition("/")
    return maintype or "application", subtype or "octet-stream"


def build_email_message(message: MailMessage, *, sender: str) -> EmailMessage:
    email = EmailMessage()
    email["From"] = sender
    email["To"] = ", ".join(message.to)
    email["Subject"] = message.subject
    email.set_content("This message contains an HTML report. Please use an HTML capable mail client.")
    email.add_alternative(message.html, subtype="html")

    inline_parts = [attachment for attachment in message.attachments if attachment.content_id]
    if inline_parts:
        html_part = email.get_payload()[1]
        for attachment in inline_parts:
            maintype, subtype = _split_content_type(attachment.content_type)
            html_part.add_related(
                attachment.content,
                maintype=maintype,
                subtype=subtype,
                cid=f"<{attachment.content_id}>",
                filename=attachment.filename,
                disposition="inline",
            )

    for attachment in message.attachments:
        if attachment.content_id:
            continue
        maintype, subtype = _split_content_type(attachment.content_type)
        email.add_attachment(attachment.content, maintype=maintype, subtype=subtype, filename=attachment.filename)
    return email


class SmtpMailSender:
    """Delivers messages through an SMTP relay with aiosmtplib."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        username: str = "",
        password: str = "",
        use_tls: bool = False,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not host.strip():
            raise ValueError("host must not be empty")
        if not sender.strip():
            raise ValueError("sender must not be empty")
        self._host = host.strip()
        self._port = port
        self._sender = sender.strip()
        self._username = username.strip() or None
        self._password = password or None
        self._use_tls = use_tls
        self._timeout_seconds = timeout_seconds

    def send(self, message: MailMessage) -> None:
        email = build_email_message(message, sender=self._sender)
        try:
            asyncio.run(self._send(email))
        except aiosmtplib.SMTPException as exc:
            raise MailDeliveryError("smtp_error", f"SMTP error: {exc}") from exc
        except (asyncio.TimeoutError, TimeoutError) as exc:
            raise MailDeliveryError("timeout", f"SMTP delivery timed out after {self._timeout_seconds}s") from exc
        except OSError as exc:
            raise MailDeliveryError("connection_error", f"Connection error: {exc}") from exc

    async def _send(self, email: EmailMessage) -> None:
        await aiosmtplib.send(
            email,
            hostname=self._host,
            port=self._port,
            username=self._username,
            password=self._password,
            use_tls=self._use_tls,
            timeout=self._timeout_seconds,
        )


def create_mail_sender(settings: Settings) -> MailSender:
    if settings.mailer_sender_type == "smtp":
        return SmtpMailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            sender=settings.smtp_from,
            username=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_secure,
            timeout_seconds=settings.mailer_timeout_seconds,
        )
    return StubMailSender(enabled=settings.mailer_enabled)


def mask_email(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
