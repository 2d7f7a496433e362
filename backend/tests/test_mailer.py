from __future__ import annotations

from unittest.mock import AsyncMock, patch

import aiosmtplib
import pytest

from fims_web.config import Settings
from fims_web.mailer import (
    MailAttachment,
    MailDeliveryError,
    MailMessage,
    SmtpMailSender,
    StubMailSender,
    build_email_message,
    create_mail_sender,
    mask_email,
)


def _message(*, to: tuple[str, ...] = ("ops@fims.example",), with_inline: bool = False) -> MailMessage:
    attachments = [MailAttachment(filename="Statement_12345.pdf", content=b"%PDF-1.4 statement")]
    if with_inline:
        attachments.append(
            MailAttachment(
                filename="header.png",
                content=b"\x89PNG\r\n\x1a\n",
                content_type="image/png",
                content_id="fims-header",
            )
        )
    return MailMessage(
        to=to,
        subject="Automatic report - fuel entries (15.10.2026 to 15.10.2026) - Package 1/1",
        html='<img src="cid:fims-header" /><p>report</p>',
        attachments=tuple(attachments),
    )


def _make_sender(**overrides: object) -> SmtpMailSender:
    values: dict[str, object] = {
        "host": "smtp.fims.example",
        "port": 587,
        "sender": "reports@fims.example",
        "username": "reports",
        "password": "smtp-password",
        "use_tls": False,
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return SmtpMailSender(**values)


def test_stub_sender_records_and_forces_failures() -> None:
    sender = StubMailSender()
    sender.send(_message())
    assert len(sender.outbox) == 1

    with pytest.raises(MailDeliveryError) as exc_info:
        sender.send(_message(to=("fail@fims.example",)))
    assert exc_info.value.error_code == "stub_delivery_failed"

    sender.clear()
    assert sender.outbox == []


def test_disabled_stub_sender_refuses_delivery() -> None:
    with pytest.raises(MailDeliveryError) as exc_info:
        StubMailSender(enabled=False).send(_message())
    assert exc_info.value.error_code == "mailer_disabled"


def test_build_email_message_attaches_pdfs_and_inline_branding() -> None:
    email = build_email_message(_message(with_inline=True), sender="reports@fims.example")

    assert email["From"] == "reports@fims.example"
    assert email["To"] == "ops@fims.example"
    attachments = list(email.iter_attachments())
    assert [part.get_filename() for part in attachments] == ["Statement_12345.pdf"]
    assert attachments[0].get_content_type() == "application/pdf"
    inline = [part for part in email.walk() if part.get("Content-ID") == "<fims-header>"]
    assert len(inline) == 1
    assert inline[0].get_content_type() == "image/png"


def test_smtp_sender_delivers_through_aiosmtplib() -> None:
    with patch("fims_web.mailer.aiosmtplib.send", new_callable=AsyncMock) as mock_send:
        _make_sender().send(_message(to=("ops@fims.example", "chief@fims.example")))

    mock_send.assert_awaited_once()
    email = mock_send.await_args.args[0]
    assert email["To"] == "ops@fims.example, chief@fims.example"
    kwargs = mock_send.await_args.kwargs
    assert kwargs["hostname"] == "smtp.fims.example"
    assert kwargs["port"] == 587
    assert kwargs["username"] == "reports"
    assert kwargs["timeout"] == 5.0


def test_smtp_sender_maps_smtp_errors() -> None:
    failure = AsyncMock(side_effect=aiosmtplib.SMTPException("mailbox unavailable"))
    with patch("fims_web.mailer.aiosmtplib.send", failure):
        with pytest.raises(MailDeliveryError) as exc_info:
            _make_sender().send(_message())
    assert exc_info.value.error_code == "smtp_error"
    assert "mailbox unavailable" in exc_info.value.message


def test_smtp_sender_maps_connection_errors() -> None:
    failure = AsyncMock(side_effect=ConnectionRefusedError("connection refused"))
    with patch("fims_web.mailer.aiosmtplib.send", failure):
        with pytest.raises(MailDeliveryError) as exc_info:
            _make_sender().send(_message())
    assert exc_info.value.error_code == "connection_error"


def test_smtp_sender_maps_timeouts() -> None:
    failure = AsyncMock(side_effect=TimeoutError())
    with patch("fims_web.mailer.aiosmtplib.send", failure):
        with pytest.raises(MailDeliveryError) as exc_info:
            _make_sender().send(_message())
    assert exc_info.value.error_code == "timeout"


def test_smtp_sender_requires_host_and_sender() -> None:
    with pytest.raises(ValueError):
        _make_sender(host=" ")
    with pytest.raises(ValueError):
        _make_sender(sender="")


def test_create_mail_sender_selects_transport() -> None:
    assert isinstance(create_mail_sender(Settings()), StubMailSender)
    smtp = create_mail_sender(
        Settings(mailer_sender_type="smtp", smtp_host="smtp.fims.example", smtp_from="reports@fims.example")
    )
    assert isinstance(smtp, SmtpMailSender)


def test_mask_email_hides_local_part() -> None:
    assert mask_email("ops@fims.example") == "o***@fims.example"
    assert mask_email("a@fims.example") == "*@fims.example"
    assert mask_email("") == "***"
