from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from io import BytesIO
from pathlib import Path

import pytest
from pypdf import PdfReader

from fims_web.audit import InMemoryAuditLogRepository
from fims_web.auto_send import (
    STATUS_FAILED,
    STATUS_SENT,
    AutoSendService,
    BatchItemNotFoundError,
    BatchNotFoundError,
    InMemoryAutoSendRepository,
    NoEntriesError,
    NoRecipientsError,
    chunked,
)
from fims_web.civil_dates import normalize_entry_date, region_zone
from fims_web.documents import ReportlabDocumentRenderer
from fims_web.entries import FuelEntry, FuelEntryDetail, FuelEntryDraft, InMemoryEntryRepository, Warehouse
from fims_web.mailer import MailDeliveryError, MailMessage
from fims_web.uploads import LocalCertificateStorage

SARAJEVO = region_zone("Europe/Sarajevo")
REPORT_DAY = date(2026, 10, 15)


class _RecordingSender:
    def __init__(self, *, fail_on_calls: set[int] | None = None) -> None:
        self.fail_on_calls = fail_on_calls or set()
        self.calls = 0
        self.messages: list[MailMessage] = []

    def send(self, message: MailMessage) -> None:
        self.calls += 1
        if self.calls in self.fail_on_calls:
            raise MailDeliveryError("smtp_error", "SMTP error: 451 try again later")
        self.messages.append(message)


class _FakeRenderer:
    def render(self, detail: FuelEntryDetail, *, include_certificate: bool) -> bytes:
        return f"%PDF-statement-{detail.entry.registration_number}".encode()


def _seed_entry(repo: InMemoryEntryRepository, *, when: datetime, quantity: int = 1000) -> FuelEntry:
    return repo.insert_entry(
        FuelEntryDraft(
            entry_date=normalize_entry_date(when, SARAJEVO),
            warehouse_id="wh-1",
            product_name="Eurodiesel BS",
            quantity=quantity,
            operator_id="op-7",
        )
    )


def _seed_day(repo: InMemoryEntryRepository, count: int, day: date = REPORT_DAY) -> list[FuelEntry]:
    return [
        _seed_entry(repo, when=datetime(day.year, day.month, day.day, 8, index))
        for index in range(count)
    ]


def _service(
    *,
    sender: _RecordingSender | None = None,
    renderer: object | None = None,
    batch_size: int = 5,
    max_entries: int = 100,
    branding_image_path: str = "",
) -> tuple[AutoSendService, InMemoryAutoSendRepository, InMemoryEntryRepository, InMemoryAuditLogRepository]:
    entries = InMemoryEntryRepository()
    entries.save_warehouse(Warehouse(warehouse_id="wh-1", name="Main depot", code="SA-01"))
    repository = InMemoryAutoSendRepository()
    audit = InMemoryAuditLogRepository()
    service = AutoSendService(
        repository=repository,
        entries=entries,
        renderer=renderer or _FakeRenderer(),
        sender=sender or _RecordingSender(),
        audit=audit,
        zone=SARAJEVO,
        batch_size=batch_size,
        max_entries=max_entries,
        branding_image_path=branding_image_path,
    )
    return service, repository, entries, audit


def test_chunked_splits_in_order() -> None:
    assert list(chunked([1, 2, 3, 4, 5, 6, 7], 3)) == [[1, 2, 3], [4, 5, 6], [7]]
    with pytest.raises(ValueError):
        list(chunked([1], 0))


def test_plan_batch_splits_entries_into_sequenced_items() -> None:
    service, repository, entries, _ = _service()
    repository.add_recipient(email="ops@fims.example", name="Ops")
    seeded = _seed_day(entries, 12)

    plan = service.plan_batch(date_from=REPORT_DAY, initiated_by="op-7")

    assert plan.batches == 3
    assert plan.entries == 12
    assert plan.recipients == 1
    assert plan.date_from == REPORT_DAY
    assert plan.date_to == REPORT_DAY
    items = repository.list_items(plan.batch_id)
    assert [item.sequence for item in items] == [1, 2, 3]
    assert [item.entries_count for item in items] == [5, 5, 2]
    planned_ids = [entry_id for item in items for entry_id in item.entry_ids]
    assert planned_ids == [entry.entry_id for entry in seeded]
    assert all(item.status == "PENDING" for item in items)

    batch = repository.get_batch(plan.batch_id)
    assert batch.total_entries == 12
    assert batch.total_batches == 3
    assert batch.created_by == "op-7"
    assert batch.date_from == datetime(2026, 10, 14, 22, 0, tzinfo=timezone.utc)
    assert batch.date_to == datetime(2026, 10, 15, 22, 0, tzinfo=timezone.utc)


def test_plan_batch_caps_entries_at_configured_maximum() -> None:
    service, repository, entries, _ = _service(max_entries=7)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 12)

    plan = service.plan_batch(date_from=REPORT_DAY)

    assert plan.entries == 7
    assert [item.entries_count for item in repository.list_items(plan.batch_id)] == [5, 2]


def test_plan_batch_respects_region_day_boundaries() -> None:
    service, repository, entries, _ = _service()
    repository.add_recipient(email="ops@fims.example", name=None)
    late = _seed_entry(entries, when=datetime(2026, 10, 15, 23, 59, 59))
    _seed_entry(entries, when=datetime(2026, 10, 16, 0, 0))
    _seed_entry(entries, when=datetime(2026, 10, 14, 23, 59, 59))

    plan = service.plan_batch(date_from=REPORT_DAY)

    items = repository.list_items(plan.batch_id)
    assert [entry_id for item in items for entry_id in item.entry_ids] == [late.entry_id]


def test_plan_batch_without_recipients_creates_nothing() -> None:
    service, repository, entries, _ = _service()
    _seed_day(entries, 3)

    with pytest.raises(NoRecipientsError) as exc_info:
        service.plan_batch(date_from=REPORT_DAY)

    assert exc_info.value.code == "no_recipients"
    assert repository.list_batches(offset=0, limit=10, recipient=None) == ([], 0)


def test_plan_batch_without_entries_creates_nothing() -> None:
    service, repository, entries, _ = _service()
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 3, day=date(2026, 10, 10))

    with pytest.raises(NoEntriesError) as exc_info:
        service.plan_batch(date_from=REPORT_DAY)

    assert exc_info.value.code == "no_entries"
    assert repository.list_batches(offset=0, limit=10, recipient=None) == ([], 0)


def test_plan_batch_limits_recipients_to_selection() -> None:
    service, repository, entries, _ = _service()
    chosen = repository.add_recipient(email="chief@fims.example", name=None)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 2)

    plan = service.plan_batch(date_from=REPORT_DAY, recipient_ids=[chosen.recipient_id])

    assert plan.recipients == 1
    assert repository.list_items(plan.batch_id)[0].recipient_emails == ("chief@fims.example",)


def test_dispatch_continues_after_item_failure_and_reports_progress() -> None:
    sender = _RecordingSender(fail_on_calls={2})
    service, repository, entries, audit = _service(sender=sender)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 12)
    plan = service.plan_batch(date_from=REPORT_DAY, initiated_by="op-7")

    result = service.dispatch_batch(plan.batch_id, initiated_by="op-7")

    assert (result.sent, result.failed, result.attempted) == (2, 1, 3)
    statuses = [item.status for item in repository.list_items(plan.batch_id)]
    assert statuses == [STATUS_SENT, STATUS_FAILED, STATUS_SENT]
    failed_item = repository.list_items(plan.batch_id)[1]
    assert "451" in failed_item.error_message
    assert failed_item.sent_at is None

    progress = service.get_progress(plan.batch_id)
    assert (progress.total, progress.sent, progress.failed, progress.pending) == (3, 2, 1, 0)
    assert progress.complete is True

    record = audit.list_entries(action="AUTO_SEND")[0]
    assert record.entity_id == plan.batch_id
    assert record.changes["sent_batches"] == 2
    assert record.changes["failed_batches"] == 1
    assert record.changes["entries_count"] == 12


def test_redispatch_only_retries_unsent_items() -> None:
    sender = _RecordingSender(fail_on_calls={2})
    service, repository, entries, _ = _service(sender=sender)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 12)
    plan = service.plan_batch(date_from=REPORT_DAY)
    service.dispatch_batch(plan.batch_id)

    result = service.dispatch_batch(plan.batch_id)

    assert sender.calls == 4
    assert (result.sent, result.failed, result.skipped, result.attempted) == (3, 0, 2, 1)
    assert "Package 2/3" in sender.messages[-1].subject


def test_concurrent_dispatches_of_one_batch_send_each_item_once() -> None:
    sender = _RecordingSender()
    service, repository, entries, _ = _service(sender=sender)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 12)
    plan = service.plan_batch(date_from=REPORT_DAY)

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: service.dispatch_batch(plan.batch_id), range(4)))

    assert sender.calls == 3
    assert sorted(result.attempted for result in results) == [0, 0, 0, 3]
    assert all(result.sent == 3 for result in results)
    assert service._batch_locks == {}


def test_dispatch_message_contents() -> None:
    sender = _RecordingSender()
    service, repository, entries, _ = _service(sender=sender)
    repository.add_recipient(email="ops@fims.example", name=None)
    seeded = _seed_day(entries, 2)
    plan = service.plan_batch(date_from=REPORT_DAY)

    service.dispatch_batch(plan.batch_id)

    message = sender.messages[0]
    assert message.to == ("ops@fims.example",)
    assert message.subject == "Automatic report - fuel entries (15.10.2026 to 15.10.2026) - Package 1/1"
    assert [attachment.filename for attachment in message.attachments] == [
        f"Statement_{entry.registration_number}.pdf" for entry in seeded
    ]
    assert "SA-01" in message.html
    assert "2,000" in message.html


def test_recipients_are_snapshotted_at_planning_time() -> None:
    sender = _RecordingSender()
    service, repository, entries, _ = _service(sender=sender)
    first = repository.add_recipient(email="ops@fims.example", name=None)
    repository.add_recipient(email="chief@fims.example", name=None)
    _seed_day(entries, 1)
    plan = service.plan_batch(date_from=REPORT_DAY)

    repository.deactivate_recipient(first.recipient_id)
    repository.add_recipient(email="late@fims.example", name=None)
    service.dispatch_batch(plan.batch_id)

    assert sender.messages[0].to == ("chief@fims.example", "ops@fims.example")


def test_dispatch_embeds_branding_image(tmp_path: Path) -> None:
    image = tmp_path / "header.png"
    image.write_bytes(b"\x89PNG\r\n\x1a\nbranding")
    sender = _RecordingSender()
    service, repository, entries, _ = _service(sender=sender, branding_image_path=str(image))
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 1)
    plan = service.plan_batch(date_from=REPORT_DAY)

    service.dispatch_batch(plan.batch_id)

    inline = [attachment for attachment in sender.messages[0].attachments if attachment.content_id]
    assert len(inline) == 1
    assert inline[0].content_type == "image/png"
    assert "cid:fims-header" in sender.messages[0].html


def test_missing_branding_image_only_warns(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    sender = _RecordingSender()
    service, repository, entries, _ = _service(sender=sender, branding_image_path=str(tmp_path / "missing.png"))
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 1)
    plan = service.plan_batch(date_from=REPORT_DAY)

    with caplog.at_level(logging.WARNING, logger="fims_web.auto_send"):
        result = service.dispatch_batch(plan.batch_id)

    assert result.sent == 1
    assert all(attachment.content_id is None for attachment in sender.messages[0].attachments)
    assert any("branding image unavailable" in record.getMessage() for record in caplog.records)


def test_unknown_batch_raises() -> None:
    service, _, _, _ = _service()
    with pytest.raises(BatchNotFoundError):
        service.dispatch_batch("asb_missing")
    with pytest.raises(BatchNotFoundError):
        service.get_progress("asb_missing")


def test_history_lists_registration_numbers_and_filters_by_recipient() -> None:
    service, repository, entries, _ = _service()
    repository.add_recipient(email="ops@fims.example", name=None)
    seeded = _seed_day(entries, 6)
    first = service.plan_batch(date_from=REPORT_DAY)
    chief = repository.add_recipient(email="chief@fims.example", name=None)
    second = service.plan_batch(date_from=REPORT_DAY, recipient_ids=[chief.recipient_id])
    service.dispatch_batch(first.batch_id)

    history = service.list_item_history(page=1, limit=10)
    assert history.pagination.total == 4
    first_items = [item for item in history.items if item.batch_id == first.batch_id]
    assert first_items[0].entry_numbers == [entry.registration_number for entry in seeded[:5]]
    assert first_items[0].batch is not None
    assert first_items[0].batch.total_entries == 6

    chief_history = service.list_item_history(recipient="  CHIEF@fims.example ")
    assert {item.batch_id for item in chief_history.items} == {second.batch_id}

    batches = service.list_batch_history(page=1, limit=1)
    assert batches.pagination.total == 2
    assert batches.pagination.total_pages == 2
    assert len(batches.batches) == 1
    assert len(batches.batches[0].items) == 2

    by_batch = service.list_item_history(batch_id=first.batch_id)
    assert {item.status for item in by_batch.items} == {STATUS_SENT}


def test_render_item_archive_merges_statements(tmp_path: Path) -> None:
    renderer = ReportlabDocumentRenderer(
        storage=LocalCertificateStorage(tmp_path),
        public_base_url="https://fims.example",
        zone=SARAJEVO,
    )
    service, repository, entries, _ = _service(renderer=renderer)
    repository.add_recipient(email="ops@fims.example", name=None)
    _seed_day(entries, 3)
    plan = service.plan_batch(date_from=REPORT_DAY)
    item = repository.list_items(plan.batch_id)[0]

    file_name, content = service.render_item_archive(item.item_id)

    assert file_name == "AutoSend_Package_1.pdf"
    assert content.startswith(b"%PDF")
    assert len(PdfReader(BytesIO(content)).pages) >= 3
    with pytest.raises(BatchItemNotFoundError):
        service.render_item_archive("asi_missing")


def test_run_scheduled_respects_pause_and_selection() -> None:
    service, repository, entries, _ = _service()
    selected = repository.add_recipient(email="ops@fims.example", name=None)
    repository.add_recipient(email="chief@fims.example", name=None)
    _seed_day(entries, 4)
    now = datetime(2026, 10, 16, 5, 0, tzinfo=timezone.utc)

    repository.update_settings(is_enabled=False, selected_recipient_ids=None, updated_by="op-7")
    paused = service.run_scheduled(now=now)
    assert paused.skipped is True
    assert paused.reason == "auto-send paused"
    assert repository.list_batches(offset=0, limit=10, recipient=None)[1] == 0

    repository.update_settings(
        is_enabled=True, selected_recipient_ids=[selected.recipient_id], updated_by="op-7"
    )
    outcome = service.run_scheduled(now=now)
    assert outcome.skipped is False
    assert outcome.plan.entries == 4
    assert outcome.plan.recipients == 1
    assert outcome.plan.date_from == REPORT_DAY
    assert repository.get_batch(outcome.plan.batch_id).created_by == "scheduler"
    assert service.pending_batch_ids() == [outcome.plan.batch_id]
