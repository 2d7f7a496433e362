from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from fims_web.audit import InMemoryAuditLogRepository
from fims_web.civil_dates import region_zone
from fims_web.entries import (
    REGISTRATION_NUMBER_START,
    CertificateUploadError,
    EntryNotFoundError,
    EntryValidationError,
    FuelEntryService,
    InMemoryEntryRepository,
    TradeParty,
    Warehouse,
)
from fims_web.models import FuelEntryCreateRequest
from fims_web.uploads import CertificateUpload, CertificateValidationError, LocalCertificateStorage

SARAJEVO = region_zone("Europe/Sarajevo")


class _FailingStorage(LocalCertificateStorage):
    def save(self, upload: CertificateUpload, registration_number: int) -> str:
        raise OSError("disk full")


class _UndeletableRepository(InMemoryEntryRepository):
    def hard_delete_entry(self, entry_id: str) -> None:
        raise RuntimeError("database unavailable")


def _payload(**overrides: object) -> FuelEntryCreateRequest:
    values: dict[str, object] = {
        "entry_date": date(2026, 10, 15),
        "warehouse_id": "wh-1",
        "product_name": "Eurodiesel BS",
        "quantity": 12000,
        "country_of_origin": "Croatia",
    }
    values.update(overrides)
    return FuelEntryCreateRequest(**values)


def _certificate(size: int = 64) -> CertificateUpload:
    return CertificateUpload(
        file_name="analysis.pdf",
        content_type="application/pdf",
        content=b"%PDF-1.4\n" + b"0" * max(0, size - 9),
    )


def _service(
    tmp_path: Path,
    *,
    repository: InMemoryEntryRepository | None = None,
    storage: LocalCertificateStorage | None = None,
    max_certificate_bytes: int = 1024,
) -> tuple[FuelEntryService, InMemoryEntryRepository, InMemoryAuditLogRepository]:
    repo = repository or InMemoryEntryRepository()
    repo.save_warehouse(Warehouse(warehouse_id="wh-1", name="Main depot", code="SA-01"))
    audit = InMemoryAuditLogRepository()
    service = FuelEntryService(
        repository=repo,
        storage=storage or LocalCertificateStorage(tmp_path / "certificates"),
        audit=audit,
        zone=SARAJEVO,
        max_certificate_bytes=max_certificate_bytes,
    )
    return service, repo, audit


def test_create_entry_assigns_registration_number_and_audits(tmp_path: Path) -> None:
    service, _, audit = _service(tmp_path)

    entry = service.create_entry(_payload(), operator_id="op-7")

    assert entry.registration_number == REGISTRATION_NUMBER_START
    assert entry.entry_date == datetime(2026, 10, 14, 22, 0, tzinfo=timezone.utc)
    assert entry.is_active is True
    assert entry.has_certificate is False
    records = audit.list_entries(entity_id=entry.entry_id)
    assert [record.action for record in records] == ["CREATE"]
    assert records[0].actor_id == "op-7"
    assert records[0].changes["warehouse_code"] == "SA-01"
    assert records[0].changes["has_certificate"] is False


def test_create_entry_stores_certificate(tmp_path: Path) -> None:
    storage = LocalCertificateStorage(tmp_path / "certificates")
    service, _, _ = _service(tmp_path, storage=storage)

    entry = service.create_entry(_payload(), operator_id="op-7", certificate=_certificate())

    assert entry.has_certificate is True
    assert entry.certificate_file_name == "analysis.pdf"
    assert entry.certificate_path.startswith("/uploads/certificates/cert_12345_")
    stored = storage.resolve(entry.certificate_path)
    assert stored is not None
    assert stored.read_bytes().startswith(b"%PDF")


def test_concurrent_creates_get_distinct_numbers(tmp_path: Path) -> None:
    service, repo, _ = _service(tmp_path)

    with ThreadPoolExecutor(max_workers=8) as pool:
        entries = list(pool.map(lambda index: service.create_entry(_payload(), operator_id=f"op-{index}"), range(40)))

    numbers = sorted(entry.registration_number for entry in entries)
    assert numbers == list(range(REGISTRATION_NUMBER_START, REGISTRATION_NUMBER_START + 40))
    assert repo.count_entries() == 40


def test_oversized_certificate_is_rejected_before_any_write(tmp_path: Path) -> None:
    service, repo, audit = _service(tmp_path, max_certificate_bytes=32)

    with pytest.raises(CertificateValidationError):
        service.create_entry(_payload(), operator_id="op-7", certificate=_certificate(size=64))

    assert repo.count_entries() == 0
    assert audit.list_entries() == []


def test_unsupported_certificate_type_is_rejected(tmp_path: Path) -> None:
    service, repo, _ = _service(tmp_path)
    upload = CertificateUpload(file_name="notes.txt", content_type="text/plain", content=b"hello")

    with pytest.raises(CertificateValidationError):
        service.create_entry(_payload(), operator_id="op-7", certificate=upload)
    assert repo.count_entries() == 0


def test_unknown_references_are_rejected(tmp_path: Path) -> None:
    service, repo, _ = _service(tmp_path)

    with pytest.raises(EntryValidationError):
        service.create_entry(_payload(warehouse_id="wh-missing"), operator_id="op-7")
    with pytest.raises(EntryValidationError):
        service.create_entry(_payload(supplier_id="sup-missing"), operator_id="op-7")

    repo.save_supplier(TradeParty(party_id="sup-1", name="Adriatic Oil"))
    entry = service.create_entry(_payload(supplier_id="sup-1"), operator_id="op-7")
    assert entry.supplier_id == "sup-1"


def test_certificate_failure_removes_entry_and_leaves_number_gap(tmp_path: Path) -> None:
    service, repo, audit = _service(tmp_path, storage=_FailingStorage(tmp_path / "certificates"))

    with pytest.raises(CertificateUploadError) as exc_info:
        service.create_entry(_payload(), operator_id="op-7", certificate=_certificate())

    assert exc_info.value.registration_number == REGISTRATION_NUMBER_START
    assert exc_info.value.message == "could not attach certificate; please retry"
    assert repo.count_entries() == 0
    rollbacks = audit.list_entries(action="CERTIFICATE_ROLLBACK")
    assert len(rollbacks) == 1
    assert rollbacks[0].changes["record_removed"] is True
    assert audit.list_entries(action="CREATE") == []

    # The consumed number is never reissued.
    service._storage = LocalCertificateStorage(tmp_path / "certificates")
    retry = service.create_entry(_payload(), operator_id="op-7", certificate=_certificate())
    assert retry.registration_number == REGISTRATION_NUMBER_START + 1


def test_failed_compensating_delete_is_logged_and_still_raises(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    service, repo, audit = _service(
        tmp_path,
        repository=_UndeletableRepository(),
        storage=_FailingStorage(tmp_path / "certificates"),
    )

    with caplog.at_level(logging.WARNING, logger="fims_web.entries"):
        with pytest.raises(CertificateUploadError):
            service.create_entry(_payload(), operator_id="op-7", certificate=_certificate())

    assert repo.count_entries() == 1
    assert any("manual cleanup required" in record.getMessage() for record in caplog.records)
    rollback = audit.list_entries(action="CERTIFICATE_ROLLBACK")[0]
    assert rollback.changes["record_removed"] is False


def test_deactivate_entry_keeps_record_and_audits(tmp_path: Path) -> None:
    service, repo, audit = _service(tmp_path)
    entry = service.create_entry(_payload(), operator_id="op-7")

    deactivated = service.deactivate_entry(entry.entry_id, actor_id="supervisor")

    assert deactivated.is_active is False
    assert repo.get_entry(entry.entry_id).is_active is False
    assert audit.list_entries(action="DEACTIVATE")[0].actor_id == "supervisor"
    with pytest.raises(EntryNotFoundError):
        service.deactivate_entry("fe_missing", actor_id="supervisor")


def test_list_active_between_uses_half_open_range(tmp_path: Path) -> None:
    service, repo, _ = _service(tmp_path)
    first = service.create_entry(_payload(entry_date=date(2026, 10, 14)), operator_id="op-7")
    second = service.create_entry(_payload(entry_date=date(2026, 10, 15)), operator_id="op-7")
    inactive = service.create_entry(_payload(entry_date=date(2026, 10, 14)), operator_id="op-7")
    service.deactivate_entry(inactive.entry_id, actor_id="op-7")

    start = datetime(2026, 10, 13, 22, 0, tzinfo=timezone.utc)
    end = datetime(2026, 10, 14, 22, 0, tzinfo=timezone.utc)
    rows = repo.list_active_between(start, end, limit=100)

    assert [row.entry_id for row in rows] == [first.entry_id]
    assert second.entry_id not in {row.entry_id for row in rows}
