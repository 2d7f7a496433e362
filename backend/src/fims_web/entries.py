from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from threading import Lock
from typing import Protocol
from zoneinfo import ZoneInfo

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .audit import AuditLogRepository
from .civil_dates import normalize_entry_date
from .config import CERTIFICATE_MAX_BYTES_DEFAULT
from .models import FuelEntryCreateRequest
from .uploads import CertificateStorage, CertificateUpload, validate_certificate

logger = logging.getLogger(__name__)

REGISTRATION_NUMBER_START = 12345
REGISTRATION_COUNTER_NAME = "fuel_entry_registration"
CERTIFICATE_RETRY_MESSAGE = "could not attach certificate; please retry"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _new_entry_id() -> str:
    return f"fe_{secrets.token_hex(12)}"


class EntryNotFoundError(KeyError):
    pass


class EntryValidationError(ValueError):
    pass


class CertificateUploadError(RuntimeError):
    def __init__(self, message: str = CERTIFICATE_RETRY_MESSAGE, *, registration_number: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.registration_number = registration_number


@dataclass(frozen=True)
class Warehouse:
    warehouse_id: str
    name: str
    code: str
    location: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Operator:
    operator_id: str
    name: str
    email: str | None = None


@dataclass(frozen=True)
class TradeParty:
    """A supplier or transporter referenced by fuel entries."""

    party_id: str
    name: str
    code: str | None = None


@dataclass(frozen=True)
class FuelEntryDraft:
    entry_date: datetime
    warehouse_id: str
    product_name: str
    quantity: int
    operator_id: str
    delivery_note_number: str | None = None
    delivery_note_date: date | None = None
    customs_declaration_number: str | None = None
    customs_declaration_date: date | None = None
    is_higher_quality: bool = False
    improved_characteristics: tuple[str, ...] = ()
    country_of_origin: str | None = None
    laboratory_name: str | None = None
    lab_accreditation_number: str | None = None
    test_report_number: str | None = None
    test_report_date: date | None = None
    order_opened_by: str | None = None
    pickup_location: str | None = None
    supplier_id: str | None = None
    transporter_id: str | None = None
    driver_name: str | None = None


@dataclass(frozen=True)
class FuelEntry:
    entry_id: str
    registration_number: int
    entry_date: datetime
    warehouse_id: str
    product_name: str
    quantity: int
    operator_id: str
    delivery_note_number: str | None = None
    delivery_note_date: date | None = None
    customs_declaration_number: str | None = None
    customs_declaration_date: date | None = None
    is_higher_quality: bool = False
    improved_characteristics: tuple[str, ...] = ()
    country_of_origin: str | None = None
    laboratory_name: str | None = None
    lab_accreditation_number: str | None = None
    test_report_number: str | None = None
    test_report_date: date | None = None
    order_opened_by: str | None = None
    pickup_location: str | None = None
    supplier_id: str | None = None
    transporter_id: str | None = None
    driver_name: str | None = None
    certificate_path: str | None = None
    certificate_file_name: str | None = None
    certificate_uploaded_at: datetime | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: datetime = field(default_factory=_now_utc)

    @property
    def has_certificate(self) -> bool:
        return bool(self.certificate_path)


@dataclass(frozen=True)
class FuelEntryDetail:
    """An entry joined with the reference data documents and emails print."""

    entry: FuelEntry
    warehouse: Warehouse | None
    operator: Operator | None = None
    supplier: TradeParty | None = None
    transporter: TradeParty | None = None


def _entry_from_draft(
    draft: FuelEntryDraft, *, entry_id: str, registration_number: int, now: datetime
) -> FuelEntry:
    return FuelEntry(
        entry_id=entry_id,
        registration_number=registration_number,
        created_at=now,
        updated_at=now,
        **draft.__dict__,
    )


class EntryRepository(Protocol):
    def reset(self) -> None: ...

    def save_warehouse(self, warehouse: Warehouse) -> Warehouse: ...
    def save_operator(self, operator: Operator) -> Operator: ...
    def save_supplier(self, supplier: TradeParty) -> TradeParty: ...
    def save_transporter(self, transporter: TradeParty) -> TradeParty: ...
    def get_warehouse(self, warehouse_id: str) -> Warehouse | None: ...
    def get_supplier(self, supplier_id: str) -> TradeParty | None: ...
    def get_transporter(self, transporter_id: str) -> TradeParty | None: ...

    def insert_entry(self, draft: FuelEntryDraft) -> FuelEntry: ...

    def attach_certificate(
        self, entry_id: str, *, path: str, file_name: str, uploaded_at: datetime
    ) -> FuelEntry: ...

    def hard_delete_entry(self, entry_id: str) -> None: ...

    def deactivate_entry(self, entry_id: str) -> FuelEntry: ...

    def get_entry(self, entry_id: str) -> FuelEntry | None: ...

    def get_entry_details(self, entry_ids: list[str]) -> list[FuelEntryDetail]: ...

    def list_active_between(self, start: datetime, end: datetime, *, limit: int) -> list[FuelEntry]: ...

    def registration_numbers(self, entry_ids: list[str]) -> dict[str, int]: ...

    def count_entries(self) -> int: ...


class InMemoryEntryRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._next_registration_number = REGISTRATION_NUMBER_START
        self._entries: dict[str, FuelEntry] = {}
        self._warehouses: dict[str, Warehouse] = {}
        self._operators: dict[str, Operator] = {}
        self._suppliers: dict[str, TradeParty] = {}
        self._transporters: dict[str, TradeParty] = {}

    def reset(self) -> None:
        with self._lock:
            self._next_registration_number = REGISTRATION_NUMBER_START
            self._entries.clear()
            self._warehouses.clear()
            self._operators.clear()
            self._suppliers.clear()
            self._transporters.clear()

    def save_warehouse(self, warehouse: Warehouse) -> Warehouse:
        with self._lock:
            self._warehouses[warehouse.warehouse_id] = warehouse
        return warehouse

    def save_operator(self, operator: Operator) -> Operator:
        with self._lock:
            self._operators[operator.operator_id] = operator
        return operator

    def save_supplier(self, supplier: TradeParty) -> TradeParty:
        with self._lock:
            self._suppliers[supplier.party_id] = supplier
        return supplier

    def save_transporter(self, transporter: TradeParty) -> TradeParty:
        with self._lock:
            self._transporters[transporter.party_id] = transporter
        return transporter

    def get_warehouse(self, warehouse_id: str) -> Warehouse | None:
        return self._warehouses.get(warehouse_id)

    def get_supplier(self, supplier_id: str) -> TradeParty | None:
        return self._suppliers.get(supplier_id)

    def get_transporter(self, transporter_id: str) -> TradeParty | None:
        return self._transporters.get(transporter_id)

    def insert_entry(self, draft: FuelEntryDraft) -> FuelEntry:
        with self._lock:
            registration_number = self._next_registration_number
            self._next_registration_number += 1
            entry = _entry_from_draft(
                draft,
                entry_id=_new_entry_id(),
                registration_number=registration_number,
                now=_now_utc(),
            )
            self._entries[entry.entry_id] = entry
        return entry

    def attach_certificate(
        self, entry_id: str, *, path: str, file_name: str, uploaded_at: datetime
    ) -> FuelEntry:
        with self._lock:
            row = self._entries.get(entry_id)
            if row is None:
                raise EntryNotFoundError(entry_id)
            updated = FuelEntry(
                **{
                    **row.__dict__,
                    "certificate_path": path,
                    "certificate_file_name": file_name,
                    "certificate_uploaded_at": uploaded_at,
                    "updated_at": _now_utc(),
                }
            )
            self._entries[entry_id] = updated
        return updated

    def hard_delete_entry(self, entry_id: str) -> None:
        with self._lock:
            if self._entries.pop(entry_id, None) is None:
                raise EntryNotFoundError(entry_id)

    def deactivate_entry(self, entry_id: str) -> FuelEntry:
        with self._lock:
            row = self._entries.get(entry_id)
            if row is None:
                raise EntryNotFoundError(entry_id)
            updated = FuelEntry(**{**row.__dict__, "is_active": False, "updated_at": _now_utc()})
            self._entries[entry_id] = updated
        return updated

    def get_entry(self, entry_id: str) -> FuelEntry | None:
        return self._entries.get(entry_id)

    def get_entry_details(self, entry_ids: list[str]) -> list[FuelEntryDetail]:
        details: list[FuelEntryDetail] = []
        for entry_id in entry_ids:
            entry = self._entries.get(entry_id)
            if entry is None:
                continue
            details.append(
                FuelEntryDetail(
                    entry=entry,
                    warehouse=self._warehouses.get(entry.warehouse_id),
                    operator=self._operators.get(entry.operator_id),
                    supplier=self._suppliers.get(entry.supplier_id) if entry.supplier_id else None,
                    transporter=self._transporters.get(entry.transporter_id) if entry.transporter_id else None,
                )
            )
        return details

    def list_active_between(self, start: datetime, end: datetime, *, limit: int) -> list[FuelEntry]:
        with self._lock:
            rows = [
                row
                for row in self._entries.values()
                if row.is_active and start <= row.entry_date < end
            ]
        rows.sort(key=lambda row: (row.entry_date, row.registration_number))
        return rows[:limit]

    def registration_numbers(self, entry_ids: list[str]) -> dict[str, int]:
        resolved: dict[str, int] = {}
        for entry_id in entry_ids:
            row = self._entries.get(entry_id)
            if row is not None:
                resolved[entry_id] = row.registration_number
        return resolved

    def count_entries(self) -> int:
        return len(self._entries)


class EntriesBase(DeclarativeBase):
    pass


class _WarehouseRow(EntriesBase):
    __tablename__ = "warehouses"

    warehouse_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class _OperatorRow(EntriesBase):
    __tablename__ = "operators"

    operator_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    email: Mapped[str | None] = mapped_column(String(256), nullable=True)


class _TradePartyRow(EntriesBase):
    __tablename__ = "trade_parties"

    party_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(16), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    code: Mapped[str | None] = mapped_column(String(64), nullable=True)


class _RegistrationCounterRow(EntriesBase):
    __tablename__ = "registration_counters"

    counter_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False)


class _FuelEntryRow(EntriesBase):
    __tablename__ = "fuel_entries"

    entry_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    registration_number: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    entry_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    warehouse_id: Mapped[str] = mapped_column(String(64), ForeignKey("warehouses.warehouse_id"), nullable=False)
    product_name: Mapped[str] = mapped_column(String(256), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    operator_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    delivery_note_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    delivery_note_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    customs_declaration_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customs_declaration_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_higher_quality: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    improved_characteristics_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    country_of_origin: Mapped[str | None] = mapped_column(String(128), nullable=True)
    laboratory_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    lab_accreditation_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    test_report_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    test_report_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    order_opened_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    pickup_location: Mapped[str | None] = mapped_column(String(256), nullable=True)
    supplier_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transporter_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    driver_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    certificate_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    certificate_file_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    certificate_uploaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _entry_from_row(row: _FuelEntryRow) -> FuelEntry:
    return FuelEntry(
        entry_id=row.entry_id,
        registration_number=int(row.registration_number),
        entry_date=_coerce_utc(row.entry_date),
        warehouse_id=row.warehouse_id,
        product_name=row.product_name,
        quantity=int(row.quantity),
        operator_id=row.operator_id,
        delivery_note_number=row.delivery_note_number,
        delivery_note_date=row.delivery_note_date,
        customs_declaration_number=row.customs_declaration_number,
        customs_declaration_date=row.customs_declaration_date,
        is_higher_quality=bool(row.is_higher_quality),
        improved_characteristics=tuple(json.loads(row.improved_characteristics_json or "[]")),
        country_of_origin=row.country_of_origin,
        laboratory_name=row.laboratory_name,
        lab_accreditation_number=row.lab_accreditation_number,
        test_report_number=row.test_report_number,
        test_report_date=row.test_report_date,
        order_opened_by=row.order_opened_by,
        pickup_location=row.pickup_location,
        supplier_id=row.supplier_id,
        transporter_id=row.transporter_id,
        driver_name=row.driver_name,
        certificate_path=row.certificate_path,
        certificate_file_name=row.certificate_file_name,
        certificate_uploaded_at=_coerce_utc(row.certificate_uploaded_at) if row.certificate_uploaded_at else None,
        is_active=bool(row.is_active),
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _party_from_row(row: _TradePartyRow | None) -> TradeParty | None:
    if row is None:
        return None
    return TradeParty(party_id=row.party_id, name=row.name, code=row.code)


class SqlAlchemyEntryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for ENTRY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            EntriesBase.metadata.create_all(self._engine)
        self._ensure_registration_counter()

    def _session(self):
        return self._session_factory()

    def _ensure_registration_counter(self) -> None:
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_RegistrationCounterRow, REGISTRATION_COUNTER_NAME) is None:
                        session.add(
                            _RegistrationCounterRow(
                                counter_name=REGISTRATION_COUNTER_NAME,
                                current_value=REGISTRATION_NUMBER_START - 1,
                            )
                        )
        except IntegrityError:
            # Another process created the counter row first.
            return

    def _allocate_registration_number(self, session) -> int:
        # Single-statement increment; the row lock is held until the insert commits.
        value = session.execute(
            update(_RegistrationCounterRow)
            .where(_RegistrationCounterRow.counter_name == REGISTRATION_COUNTER_NAME)
            .values(current_value=_RegistrationCounterRow.current_value + 1)
            .returning(_RegistrationCounterRow.current_value)
        ).scalar_one_or_none()
        if value is None:
            raise RuntimeError("registration counter row is missing; run database migrations")
        return int(value)

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_FuelEntryRow).delete()
                session.query(_TradePartyRow).delete()
                session.query(_OperatorRow).delete()
                session.query(_WarehouseRow).delete()
                session.execute(
                    update(_RegistrationCounterRow)
                    .where(_RegistrationCounterRow.counter_name == REGISTRATION_COUNTER_NAME)
                    .values(current_value=REGISTRATION_NUMBER_START - 1)
                )

    def save_warehouse(self, warehouse: Warehouse) -> Warehouse:
        with self._session() as session:
            with session.begin():
                session.merge(
                    _WarehouseRow(
                        warehouse_id=warehouse.warehouse_id,
                        name=warehouse.name,
                        code=warehouse.code,
                        location=warehouse.location,
                        is_active=warehouse.is_active,
                    )
                )
        return warehouse

    def save_operator(self, operator: Operator) -> Operator:
        with self._session() as session:
            with session.begin():
                session.merge(_OperatorRow(operator_id=operator.operator_id, name=operator.name, email=operator.email))
        return operator

    def _save_party(self, party: TradeParty, kind: str) -> TradeParty:
        with self._session() as session:
            with session.begin():
                session.merge(_TradePartyRow(party_id=party.party_id, kind=kind, name=party.name, code=party.code))
        return party

    def save_supplier(self, supplier: TradeParty) -> TradeParty:
        return self._save_party(supplier, "supplier")

    def save_transporter(self, transporter: TradeParty) -> TradeParty:
        return self._save_party(transporter, "transporter")

    def get_warehouse(self, warehouse_id: str) -> Warehouse | None:
        with self._session() as session:
            row = session.get(_WarehouseRow, warehouse_id)
            if row is None:
                return None
            return Warehouse(
                warehouse_id=row.warehouse_id,
                name=row.name,
                code=row.code,
                location=row.location,
                is_active=bool(row.is_active),
            )

    def get_supplier(self, supplier_id: str) -> TradeParty | None:
        with self._session() as session:
            return _party_from_row(session.get(_TradePartyRow, (supplier_id, "supplier")))

    def get_transporter(self, transporter_id: str) -> TradeParty | None:
        with self._session() as session:
            return _party_from_row(session.get(_TradePartyRow, (transporter_id, "transporter")))

    def insert_entry(self, draft: FuelEntryDraft) -> FuelEntry:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                registration_number = self._allocate_registration_number(session)
                entry = _entry_from_draft(
                    draft,
                    entry_id=_new_entry_id(),
                    registration_number=registration_number,
                    now=now,
                )
                session.add(
                    _FuelEntryRow(
                        entry_id=entry.entry_id,
                        registration_number=entry.registration_number,
                        entry_date=_coerce_utc(entry.entry_date),
                        warehouse_id=entry.warehouse_id,
                        product_name=entry.product_name,
                        quantity=entry.quantity,
                        operator_id=entry.operator_id,
                        delivery_note_number=entry.delivery_note_number,
                        delivery_note_date=entry.delivery_note_date,
                        customs_declaration_number=entry.customs_declaration_number,
                        customs_declaration_date=entry.customs_declaration_date,
                        is_higher_quality=entry.is_higher_quality,
                        improved_characteristics_json=json.dumps(list(entry.improved_characteristics)),
                        country_of_origin=entry.country_of_origin,
                        laboratory_name=entry.laboratory_name,
                        lab_accreditation_number=entry.lab_accreditation_number,
                        test_report_number=entry.test_report_number,
                        test_report_date=entry.test_report_date,
                        order_opened_by=entry.order_opened_by,
                        pickup_location=entry.pickup_location,
                        supplier_id=entry.supplier_id,
                        transporter_id=entry.transporter_id,
                        driver_name=entry.driver_name,
                        is_active=True,
                        created_at=now,
                        updated_at=now,
                    )
                )
        return entry

    def attach_certificate(
        self, entry_id: str, *, path: str, file_name: str, uploaded_at: datetime
    ) -> FuelEntry:
        with self._session() as session:
            with session.begin():
                row = session.get(_FuelEntryRow, entry_id)
                if row is None:
                    raise EntryNotFoundError(entry_id)
                row.certificate_path = path
                row.certificate_file_name = file_name
                row.certificate_uploaded_at = _coerce_utc(uploaded_at)
                row.updated_at = _now_utc()
                session.flush()
                return _entry_from_row(row)

    def hard_delete_entry(self, entry_id: str) -> None:
        with self._session() as session:
            with session.begin():
                result = session.execute(delete(_FuelEntryRow).where(_FuelEntryRow.entry_id == entry_id))
                if result.rowcount == 0:
                    raise EntryNotFoundError(entry_id)

    def deactivate_entry(self, entry_id: str) -> FuelEntry:
        with self._session() as session:
            with session.begin():
                row = session.get(_FuelEntryRow, entry_id)
                if row is None:
                    raise EntryNotFoundError(entry_id)
                row.is_active = False
                row.updated_at = _now_utc()
                session.flush()
                return _entry_from_row(row)

    def get_entry(self, entry_id: str) -> FuelEntry | None:
        with self._session() as session:
            row = session.get(_FuelEntryRow, entry_id)
            return _entry_from_row(row) if row is not None else None

    def get_entry_details(self, entry_ids: list[str]) -> list[FuelEntryDetail]:
        if not entry_ids:
            return []
        with self._session() as session:
            rows = session.execute(select(_FuelEntryRow).where(_FuelEntryRow.entry_id.in_(entry_ids))).scalars().all()
            by_id = {row.entry_id: row for row in rows}
            warehouse_ids = {row.warehouse_id for row in rows}
            warehouses = {
                row.warehouse_id: Warehouse(
                    warehouse_id=row.warehouse_id,
                    name=row.name,
                    code=row.code,
                    location=row.location,
                    is_active=bool(row.is_active),
                )
                for row in session.execute(
                    select(_WarehouseRow).where(_WarehouseRow.warehouse_id.in_(warehouse_ids))
                ).scalars()
            }
            operator_ids = {row.operator_id for row in rows}
            operators = {
                row.operator_id: Operator(operator_id=row.operator_id, name=row.name, email=row.email)
                for row in session.execute(
                    select(_OperatorRow).where(_OperatorRow.operator_id.in_(operator_ids))
                ).scalars()
            }
            party_ids = {row.supplier_id for row in rows if row.supplier_id} | {
                row.transporter_id for row in rows if row.transporter_id
            }
            parties: dict[tuple[str, str], TradeParty] = {}
            if party_ids:
                parties = {
                    (row.party_id, row.kind): _party_from_row(row)
                    for row in session.execute(
                        select(_TradePartyRow).where(_TradePartyRow.party_id.in_(party_ids))
                    ).scalars()
                }

            details: list[FuelEntryDetail] = []
            for entry_id in entry_ids:
                row = by_id.get(entry_id)
                if row is None:
                    continue
                details.append(
                    FuelEntryDetail(
                        entry=_entry_from_row(row),
                        warehouse=warehouses.get(row.warehouse_id),
                        operator=operators.get(row.operator_id),
                        supplier=parties.get((row.supplier_id, "supplier")) if row.supplier_id else None,
                        transporter=parties.get((row.transporter_id, "transporter")) if row.transporter_id else None,
                    )
                )
            return details

    def list_active_between(self, start: datetime, end: datetime, *, limit: int) -> list[FuelEntry]:
        with self._session() as session:
            rows = session.execute(
                select(_FuelEntryRow)
                .where(
                    _FuelEntryRow.is_active.is_(True),
                    _FuelEntryRow.entry_date >= _coerce_utc(start),
                    _FuelEntryRow.entry_date < _coerce_utc(end),
                )
                .order_by(_FuelEntryRow.entry_date.asc(), _FuelEntryRow.registration_number.asc())
                .limit(limit)
            ).scalars().all()
            return [_entry_from_row(row) for row in rows]

    def registration_numbers(self, entry_ids: list[str]) -> dict[str, int]:
        if not entry_ids:
            return {}
        with self._session() as session:
            rows = session.execute(
                select(_FuelEntryRow.entry_id, _FuelEntryRow.registration_number).where(
                    _FuelEntryRow.entry_id.in_(entry_ids)
                )
            ).all()
            return {entry_id: int(number) for entry_id, number in rows}

    def count_entries(self) -> int:
        with self._session() as session:
            return session.query(_FuelEntryRow).count()


def create_entry_repository(*, backend: str, database_url: str) -> EntryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyEntryRepository(database_url)
    return InMemoryEntryRepository()


class FuelEntryService:
    def __init__(
        self,
        *,
        repository: EntryRepository,
        storage: CertificateStorage,
        audit: AuditLogRepository,
        zone: ZoneInfo | timezone,
        max_certificate_bytes: int = CERTIFICATE_MAX_BYTES_DEFAULT,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._audit = audit
        self._zone = zone
        self._max_certificate_bytes = max_certificate_bytes

    def _validate(self, payload: FuelEntryCreateRequest, certificate: CertificateUpload | None) -> None:
        if certificate is not None:
            validate_certificate(certificate, max_bytes=self._max_certificate_bytes)
        if self._repository.get_warehouse(payload.warehouse_id) is None:
            raise EntryValidationError(f"unknown warehouse: {payload.warehouse_id}")
        if payload.supplier_id and self._repository.get_supplier(payload.supplier_id) is None:
            raise EntryValidationError(f"unknown supplier: {payload.supplier_id}")
        if payload.transporter_id and self._repository.get_transporter(payload.transporter_id) is None:
            raise EntryValidationError(f"unknown transporter: {payload.transporter_id}")

    def create_entry(
        self,
        payload: FuelEntryCreateRequest,
        *,
        operator_id: str,
        certificate: CertificateUpload | None = None,
    ) -> FuelEntry:
        """Create an entry and attach its certificate as one logical step.

        The registration number is allocated inside the insert. If the
        certificate cannot be stored after the insert, the entry is hard
        deleted so no record claims a file that does not exist; the number
        it consumed is never reissued.
        """
        self._validate(payload, certificate)

        draft = FuelEntryDraft(
            entry_date=normalize_entry_date(payload.entry_date, self._zone),
            warehouse_id=payload.warehouse_id,
            product_name=payload.product_name,
            quantity=payload.quantity,
            operator_id=operator_id,
            delivery_note_number=payload.delivery_note_number,
            delivery_note_date=payload.delivery_note_date,
            customs_declaration_number=payload.customs_declaration_number,
            customs_declaration_date=payload.customs_declaration_date,
            is_higher_quality=payload.is_higher_quality,
            improved_characteristics=tuple(payload.improved_characteristics),
            country_of_origin=payload.country_of_origin,
            laboratory_name=payload.laboratory_name,
            lab_accreditation_number=payload.lab_accreditation_number,
            test_report_number=payload.test_report_number,
            test_report_date=payload.test_report_date,
            order_opened_by=payload.order_opened_by,
            pickup_location=payload.pickup_location,
            supplier_id=payload.supplier_id,
            transporter_id=payload.transporter_id,
            driver_name=payload.driver_name,
        )
        entry = self._repository.insert_entry(draft)

        if certificate is not None:
            stored_path: str | None = None
            try:
                stored_path = self._storage.save(certificate, entry.registration_number)
                entry = self._repository.attach_certificate(
                    entry.entry_id,
                    path=stored_path,
                    file_name=certificate.file_name,
                    uploaded_at=_now_utc(),
                )
            except Exception as exc:
                self._roll_back_entry(entry, stored_path=stored_path, operator_id=operator_id, cause=exc)
                raise CertificateUploadError(registration_number=entry.registration_number) from exc

        warehouse = self._repository.get_warehouse(entry.warehouse_id)
        self._audit.append(
            actor_id=operator_id,
            action="CREATE",
            entity_type="FuelEntry",
            entity_id=entry.entry_id,
            changes={
                "registration_number": entry.registration_number,
                "product_name": entry.product_name,
                "quantity": entry.quantity,
                "warehouse_code": warehouse.code if warehouse else None,
                "has_certificate": entry.has_certificate,
            },
        )
        logger.info(
            "fuel entry created entry_id=%s registration_number=%s",
            entry.entry_id,
            entry.registration_number,
        )
        return entry

    def _roll_back_entry(
        self,
        entry: FuelEntry,
        *,
        stored_path: str | None,
        operator_id: str,
        cause: Exception,
    ) -> None:
        logger.warning(
            "certificate rollback: upload failed for entry_id=%s registration_number=%s: %s",
            entry.entry_id,
            entry.registration_number,
            cause,
        )
        if stored_path is not None:
            try:
                self._storage.delete(stored_path)
            except OSError:
                logger.exception("certificate rollback: could not remove stored file %s", stored_path)

        record_removed = True
        try:
            self._repository.hard_delete_entry(entry.entry_id)
        except Exception:
            record_removed = False
            logger.exception(
                "certificate rollback: compensating delete failed for entry_id=%s; manual cleanup required",
                entry.entry_id,
            )

        try:
            self._audit.append(
                actor_id=operator_id,
                action="CERTIFICATE_ROLLBACK",
                entity_type="FuelEntry",
                entity_id=entry.entry_id,
                changes={
                    "registration_number": entry.registration_number,
                    "record_removed": record_removed,
                    "error": str(cause),
                },
            )
        except Exception:
            logger.exception("certificate rollback: audit append failed for entry_id=%s", entry.entry_id)

    def deactivate_entry(self, entry_id: str, *, actor_id: str) -> FuelEntry:
        entry = self._repository.deactivate_entry(entry_id)
        self._audit.append(
            actor_id=actor_id,
            action="DEACTIVATE",
            entity_type="FuelEntry",
            entity_id=entry.entry_id,
            changes={"registration_number": entry.registration_number, "is_active": False},
        )
        return entry

    def get_entry(self, entry_id: str) -> FuelEntry:
        entry = self._repository.get_entry(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry
