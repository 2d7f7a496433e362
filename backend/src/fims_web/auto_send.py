from __future__ import annotations

import json
import logging
import math
import mimetypes
import secrets
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Protocol, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .audit import AuditLogRepository
from .civil_dates import format_range_labels, resolve_date_range
from .documents import DocumentRenderer, merge_pdfs
from .email_templates import BRANDING_CONTENT_ID, build_entries_digest_html, digest_subject, statement_file_name
from .entries import EntryRepository
from .mailer import MailAttachment, MailMessage, MailSender, mask_email
from .models import (
    AutoSendSettingsResponse,
    BatchHistoryEntry,
    BatchHistoryResponse,
    BatchItemProgress,
    BatchProgressResponse,
    BatchSummary,
    HistoryItem,
    ItemHistoryResponse,
    Pagination,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"
SCHEDULER_ACTOR = "scheduler"
SETTINGS_ID = "default"
HISTORY_LIMIT_MAX = 100

T = TypeVar("T")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


class PlanningError(ValueError):
    code = "planning_failed"


class NoRecipientsError(PlanningError):
    code = "no_recipients"

    def __init__(self) -> None:
        super().__init__("no active recipients")


class NoEntriesError(PlanningError):
    code = "no_entries"

    def __init__(self) -> None:
        super().__init__("no entries for the selected period")


class BatchNotFoundError(KeyError):
    pass


class BatchItemNotFoundError(KeyError):
    pass


class RecipientNotFoundError(KeyError):
    pass


class DuplicateRecipientError(ValueError):
    pass


class ArchiveUnavailableError(LookupError):
    pass


@dataclass(frozen=True)
class AutoEmailRecipient:
    recipient_id: str
    email: str
    name: str | None
    is_active: bool
    created_at: datetime


@dataclass(frozen=True)
class AutoSendSettings:
    is_enabled: bool = True
    selected_recipient_ids: tuple[str, ...] = ()
    updated_by: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class AutoSendBatch:
    batch_id: str
    date_from: datetime
    date_to: datetime
    total_entries: int
    batch_size: int
    total_batches: int
    recipients_count: int
    include_certificates: bool
    created_at: datetime
    created_by: str | None


@dataclass(frozen=True)
class AutoSendBatchItem:
    item_id: str
    batch_id: str
    sequence: int
    entry_ids: tuple[str, ...]
    recipient_emails: tuple[str, ...]
    entries_count: int
    include_certificates: bool
    status: str
    sent_at: datetime | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class BatchPlan:
    batch_id: str
    batches: int
    entries: int
    recipients: int
    date_from: date
    date_to: date


@dataclass(frozen=True)
class DispatchResult:
    batch_id: str
    sent: int
    failed: int
    skipped: int
    attempted: int


@dataclass(frozen=True)
class ScheduledRunOutcome:
    skipped: bool
    reason: str | None = None
    plan: BatchPlan | None = None


@dataclass
class _PageRequest:
    page: int
    limit: int
    offset: int = field(init=False)

    def __post_init__(self) -> None:
        self.page = max(1, self.page)
        self.limit = min(max(1, self.limit), HISTORY_LIMIT_MAX)
        self.offset = (self.page - 1) * self.limit

    def pagination(self, total: int) -> Pagination:
        return Pagination(
            total=total,
            page=self.page,
            limit=self.limit,
            total_pages=math.ceil(total / self.limit) if total else 0,
        )


class AutoSendRepository(Protocol):
    def reset(self) -> None: ...

    def add_recipient(self, *, email: str, name: str | None) -> AutoEmailRecipient: ...
    def list_recipients(self, *, include_inactive: bool = False) -> list[AutoEmailRecipient]: ...
    def deactivate_recipient(self, recipient_id: str) -> AutoEmailRecipient: ...
    def resolve_active_recipients(self, recipient_ids: list[str] | None) -> list[AutoEmailRecipient]: ...

    def get_settings(self) -> AutoSendSettings: ...

    def update_settings(
        self,
        *,
        is_enabled: bool | None,
        selected_recipient_ids: list[str] | None,
        updated_by: str | None,
    ) -> AutoSendSettings: ...

    def create_batch(self, batch: AutoSendBatch, items: list[AutoSendBatchItem]) -> None: ...
    def get_batch(self, batch_id: str) -> AutoSendBatch | None: ...
    def list_items(self, batch_id: str) -> list[AutoSendBatchItem]: ...
    def get_item(self, item_id: str) -> AutoSendBatchItem | None: ...

    def update_item_status(
        self,
        item_id: str,
        *,
        status: str,
        sent_at: datetime | None,
        error_message: str | None,
    ) -> AutoSendBatchItem: ...

    def list_batches(self, *, offset: int, limit: int, recipient: str | None) -> tuple[list[AutoSendBatch], int]: ...

    def list_item_history(
        self,
        *,
        offset: int,
        limit: int,
        recipient: str | None,
        batch_id: str | None,
    ) -> tuple[list[AutoSendBatchItem], int]: ...

    def list_batch_ids_with_pending_items(self) -> list[str]: ...


class InMemoryAutoSendRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._recipients: dict[str, AutoEmailRecipient] = {}
        self._settings = AutoSendSettings()
        self._batches: dict[str, AutoSendBatch] = {}
        self._items: dict[str, AutoSendBatchItem] = {}
        self._item_ids_by_batch: dict[str, list[str]] = {}

    def reset(self) -> None:
        with self._lock:
            self._recipients.clear()
            self._settings = AutoSendSettings()
            self._batches.clear()
            self._items.clear()
            self._item_ids_by_batch.clear()

    def add_recipient(self, *, email: str, name: str | None) -> AutoEmailRecipient:
        normalized = email.strip().lower()
        with self._lock:
            if any(row.email == normalized for row in self._recipients.values()):
                raise DuplicateRecipientError(f"recipient already exists: {normalized}")
            recipient = AutoEmailRecipient(
                recipient_id=f"rcp_{secrets.token_hex(8)}",
                email=normalized,
                name=name,
                is_active=True,
                created_at=_now_utc(),
            )
            self._recipients[recipient.recipient_id] = recipient
        return recipient

    def list_recipients(self, *, include_inactive: bool = False) -> list[AutoEmailRecipient]:
        rows = [row for row in self._recipients.values() if include_inactive or row.is_active]
        return sorted(rows, key=lambda row: row.email)

    def deactivate_recipient(self, recipient_id: str) -> AutoEmailRecipient:
        with self._lock:
            row = self._recipients.get(recipient_id)
            if row is None:
                raise RecipientNotFoundError(recipient_id)
            updated = AutoEmailRecipient(**{**row.__dict__, "is_active": False})
            self._recipients[recipient_id] = updated
        return updated

    def resolve_active_recipients(self, recipient_ids: list[str] | None) -> list[AutoEmailRecipient]:
        wanted = set(recipient_ids) if recipient_ids else None
        rows = [
            row
            for row in self._recipients.values()
            if row.is_active and (wanted is None or row.recipient_id in wanted)
        ]
        return sorted(rows, key=lambda row: row.email)

    def get_settings(self) -> AutoSendSettings:
        return self._settings

    def update_settings(
        self,
        *,
        is_enabled: bool | None,
        selected_recipient_ids: list[str] | None,
        updated_by: str | None,
    ) -> AutoSendSettings:
        with self._lock:
            current = self._settings
            self._settings = AutoSendSettings(
                is_enabled=current.is_enabled if is_enabled is None else is_enabled,
                selected_recipient_ids=(
                    current.selected_recipient_ids
                    if selected_recipient_ids is None
                    else tuple(selected_recipient_ids)
                ),
                updated_by=updated_by,
                updated_at=_now_utc(),
            )
            return self._settings

    def create_batch(self, batch: AutoSendBatch, items: list[AutoSendBatchItem]) -> None:
        with self._lock:
            self._batches[batch.batch_id] = batch
            self._item_ids_by_batch[batch.batch_id] = []
            for item in sorted(items, key=lambda row: row.sequence):
                self._items[item.item_id] = item
                self._item_ids_by_batch[batch.batch_id].append(item.item_id)

    def get_batch(self, batch_id: str) -> AutoSendBatch | None:
        return self._batches.get(batch_id)

    def list_items(self, batch_id: str) -> list[AutoSendBatchItem]:
        with self._lock:
            return [self._items[item_id] for item_id in self._item_ids_by_batch.get(batch_id, [])]

    def get_item(self, item_id: str) -> AutoSendBatchItem | None:
        return self._items.get(item_id)

    def update_item_status(
        self,
        item_id: str,
        *,
        status: str,
        sent_at: datetime | None,
        error_message: str | None,
    ) -> AutoSendBatchItem:
        with self._lock:
            row = self._items.get(item_id)
            if row is None:
                raise BatchItemNotFoundError(item_id)
            updated = AutoSendBatchItem(
                **{
                    **row.__dict__,
                    "status": status,
                    "sent_at": sent_at,
                    "error_message": error_message,
                    "updated_at": _now_utc(),
                }
            )
            self._items[item_id] = updated
        return updated

    def _batch_matches_recipient(self, batch_id: str, recipient: str) -> bool:
        return any(
            recipient in self._items[item_id].recipient_emails
            for item_id in self._item_ids_by_batch.get(batch_id, [])
        )

    def list_batches(self, *, offset: int, limit: int, recipient: str | None) -> tuple[list[AutoSendBatch], int]:
        with self._lock:
            rows = [
                row
                for row in self._batches.values()
                if recipient is None or self._batch_matches_recipient(row.batch_id, recipient)
            ]
        rows.sort(key=lambda row: row.created_at, reverse=True)
        return rows[offset : offset + limit], len(rows)

    def list_item_history(
        self,
        *,
        offset: int,
        limit: int,
        recipient: str | None,
        batch_id: str | None,
    ) -> tuple[list[AutoSendBatchItem], int]:
        with self._lock:
            rows = [
                row
                for row in self._items.values()
                if (recipient is None or recipient in row.recipient_emails)
                and (batch_id is None or row.batch_id == batch_id)
            ]
        rows.sort(key=lambda row: (row.created_at, -row.sequence), reverse=True)
        return rows[offset : offset + limit], len(rows)

    def list_batch_ids_with_pending_items(self) -> list[str]:
        with self._lock:
            pending = {row.batch_id for row in self._items.values() if row.status == STATUS_PENDING}
        return sorted(pending, key=lambda batch_id: self._batches[batch_id].created_at)


class AutoSendBase(DeclarativeBase):
    pass


class _RecipientRow(AutoSendBase):
    __tablename__ = "auto_email_recipients"

    recipient_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _SettingsRow(AutoSendBase):
    __tablename__ = "auto_send_settings"

    settings_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    selected_recipient_ids_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class _BatchRow(AutoSendBase):
    __tablename__ = "auto_send_batches"

    batch_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    date_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_entries: Mapped[int] = mapped_column(Integer, nullable=False)
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False)
    total_batches: Mapped[int] = mapped_column(Integer, nullable=False)
    recipients_count: Mapped[int] = mapped_column(Integer, nullable=False)
    include_certificates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)


class _BatchItemRow(AutoSendBase):
    __tablename__ = "auto_send_batch_items"
    __table_args__ = (UniqueConstraint("batch_id", "sequence", name="uq_auto_send_batch_items_sequence"),)

    item_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    batch_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("auto_send_batches.batch_id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_ids_json: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_emails_json: Mapped[str] = mapped_column(Text, nullable=False)
    entries_count: Mapped[int] = mapped_column(Integer, nullable=False)
    include_certificates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING, index=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _recipient_from_row(row: _RecipientRow) -> AutoEmailRecipient:
    return AutoEmailRecipient(
        recipient_id=row.recipient_id,
        email=row.email,
        name=row.name,
        is_active=bool(row.is_active),
        created_at=_coerce_utc(row.created_at),
    )


def _batch_from_row(row: _BatchRow) -> AutoSendBatch:
    return AutoSendBatch(
        batch_id=row.batch_id,
        date_from=_coerce_utc(row.date_from),
        date_to=_coerce_utc(row.date_to),
        total_entries=int(row.total_entries),
        batch_size=int(row.batch_size),
        total_batches=int(row.total_batches),
        recipients_count=int(row.recipients_count),
        include_certificates=bool(row.include_certificates),
        created_at=_coerce_utc(row.created_at),
        created_by=row.created_by,
    )


def _item_from_row(row: _BatchItemRow) -> AutoSendBatchItem:
    return AutoSendBatchItem(
        item_id=row.item_id,
        batch_id=row.batch_id,
        sequence=int(row.sequence),
        entry_ids=tuple(json.loads(row.entry_ids_json)),
        recipient_emails=tuple(json.loads(row.recipient_emails_json)),
        entries_count=int(row.entries_count),
        include_certificates=bool(row.include_certificates),
        status=row.status,
        sent_at=_coerce_utc(row.sent_at) if row.sent_at else None,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


def _recipient_filter(recipient: str):
    # Emails are stored as a JSON array; match the quoted value exactly.
    return _BatchItemRow.recipient_emails_json.contains(json.dumps(recipient), autoescape=True)


class SqlAlchemyAutoSendRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUTO_SEND_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AutoSendBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_BatchItemRow).delete()
                session.query(_BatchRow).delete()
                session.query(_SettingsRow).delete()
                session.query(_RecipientRow).delete()

    def add_recipient(self, *, email: str, name: str | None) -> AutoEmailRecipient:
        row = _RecipientRow(
            recipient_id=f"rcp_{secrets.token_hex(8)}",
            email=email.strip().lower(),
            name=name,
            is_active=True,
            created_at=_now_utc(),
        )
        try:
            with self._session() as session:
                with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise DuplicateRecipientError(f"recipient already exists: {row.email}") from exc
        return _recipient_from_row(row)

    def list_recipients(self, *, include_inactive: bool = False) -> list[AutoEmailRecipient]:
        query = select(_RecipientRow).order_by(_RecipientRow.email.asc())
        if not include_inactive:
            query = query.where(_RecipientRow.is_active.is_(True))
        with self._session() as session:
            return [_recipient_from_row(row) for row in session.execute(query).scalars()]

    def deactivate_recipient(self, recipient_id: str) -> AutoEmailRecipient:
        with self._session() as session:
            with session.begin():
                row = session.get(_RecipientRow, recipient_id)
                if row is None:
                    raise RecipientNotFoundError(recipient_id)
                row.is_active = False
                session.flush()
                return _recipient_from_row(row)

    def resolve_active_recipients(self, recipient_ids: list[str] | None) -> list[AutoEmailRecipient]:
        query = (
            select(_RecipientRow)
            .where(_RecipientRow.is_active.is_(True))
            .order_by(_RecipientRow.email.asc())
        )
        if recipient_ids:
            query = query.where(_RecipientRow.recipient_id.in_(recipient_ids))
        with self._session() as session:
            return [_recipient_from_row(row) for row in session.execute(query).scalars()]

    def get_settings(self) -> AutoSendSettings:
        with self._session() as session:
            row = session.get(_SettingsRow, SETTINGS_ID)
            if row is None:
                return AutoSendSettings()
            return AutoSendSettings(
                is_enabled=bool(row.is_enabled),
                selected_recipient_ids=tuple(json.loads(row.selected_recipient_ids_json or "[]")),
                updated_by=row.updated_by,
                updated_at=_coerce_utc(row.updated_at) if row.updated_at else None,
            )

    def update_settings(
        self,
        *,
        is_enabled: bool | None,
        selected_recipient_ids: list[str] | None,
        updated_by: str | None,
    ) -> AutoSendSettings:
        with self._session() as session:
            with session.begin():
                row = session.get(_SettingsRow, SETTINGS_ID)
                if row is None:
                    row = _SettingsRow(settings_id=SETTINGS_ID, is_enabled=True, selected_recipient_ids_json="[]")
                    session.add(row)
                if is_enabled is not None:
                    row.is_enabled = is_enabled
                if selected_recipient_ids is not None:
                    row.selected_recipient_ids_json = json.dumps(list(selected_recipient_ids))
                row.updated_by = updated_by
                row.updated_at = _now_utc()
        return self.get_settings()

    def create_batch(self, batch: AutoSendBatch, items: list[AutoSendBatchItem]) -> None:
        with self._session() as session:
            with session.begin():
                session.add(
                    _BatchRow(
                        batch_id=batch.batch_id,
                        date_from=batch.date_from,
                        date_to=batch.date_to,
                        total_entries=batch.total_entries,
                        batch_size=batch.batch_size,
                        total_batches=batch.total_batches,
                        recipients_count=batch.recipients_count,
                        include_certificates=batch.include_certificates,
                        created_at=batch.created_at,
                        created_by=batch.created_by,
                    )
                )
                session.flush()
                for item in items:
                    session.add(
                        _BatchItemRow(
                            item_id=item.item_id,
                            batch_id=batch.batch_id,
                            sequence=item.sequence,
                            entry_ids_json=json.dumps(list(item.entry_ids)),
                            recipient_emails_json=json.dumps(list(item.recipient_emails)),
                            entries_count=item.entries_count,
                            include_certificates=item.include_certificates,
                            status=item.status,
                            sent_at=item.sent_at,
                            error_message=item.error_message,
                            created_at=item.created_at,
                            updated_at=item.updated_at,
                        )
                    )

    def get_batch(self, batch_id: str) -> AutoSendBatch | None:
        with self._session() as session:
            row = session.get(_BatchRow, batch_id)
            return _batch_from_row(row) if row is not None else None

    def list_items(self, batch_id: str) -> list[AutoSendBatchItem]:
        with self._session() as session:
            rows = session.execute(
                select(_BatchItemRow)
                .where(_BatchItemRow.batch_id == batch_id)
                .order_by(_BatchItemRow.sequence.asc())
            ).scalars()
            return [_item_from_row(row) for row in rows]

    def get_item(self, item_id: str) -> AutoSendBatchItem | None:
        with self._session() as session:
            row = session.get(_BatchItemRow, item_id)
            return _item_from_row(row) if row is not None else None

    def update_item_status(
        self,
        item_id: str,
        *,
        status: str,
        sent_at: datetime | None,
        error_message: str | None,
    ) -> AutoSendBatchItem:
        with self._session() as session:
            with session.begin():
                row = session.get(_BatchItemRow, item_id)
                if row is None:
                    raise BatchItemNotFoundError(item_id)
                row.status = status
                row.sent_at = sent_at
                row.error_message = error_message
                row.updated_at = _now_utc()
                session.flush()
                return _item_from_row(row)

    def list_batches(self, *, offset: int, limit: int, recipient: str | None) -> tuple[list[AutoSendBatch], int]:
        query = select(_BatchRow)
        if recipient is not None:
            matching = select(_BatchItemRow.batch_id).where(_recipient_filter(recipient))
            query = query.where(_BatchRow.batch_id.in_(matching))
        with self._session() as session:
            total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            rows = session.execute(
                query.order_by(_BatchRow.created_at.desc()).offset(offset).limit(limit)
            ).scalars()
            return [_batch_from_row(row) for row in rows], int(total)

    def list_item_history(
        self,
        *,
        offset: int,
        limit: int,
        recipient: str | None,
        batch_id: str | None,
    ) -> tuple[list[AutoSendBatchItem], int]:
        query = select(_BatchItemRow)
        if recipient is not None:
            query = query.where(_recipient_filter(recipient))
        if batch_id is not None:
            query = query.where(_BatchItemRow.batch_id == batch_id)
        with self._session() as session:
            total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
            rows = session.execute(
                query.order_by(_BatchItemRow.created_at.desc(), _BatchItemRow.sequence.asc())
                .offset(offset)
                .limit(limit)
            ).scalars()
            return [_item_from_row(row) for row in rows], int(total)

    def list_batch_ids_with_pending_items(self) -> list[str]:
        with self._session() as session:
            rows = session.execute(
                select(_BatchRow.batch_id)
                .where(
                    _BatchRow.batch_id.in_(
                        select(_BatchItemRow.batch_id).where(_BatchItemRow.status == STATUS_PENDING)
                    )
                )
                .order_by(_BatchRow.created_at.asc())
            ).scalars()
            return list(rows)


def create_auto_send_repository(*, backend: str, database_url: str) -> AutoSendRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAutoSendRepository(database_url)
    return InMemoryAutoSendRepository()


def _batch_summary(batch: AutoSendBatch) -> BatchSummary:
    return BatchSummary(
        batch_id=batch.batch_id,
        date_from=batch.date_from,
        date_to=batch.date_to,
        total_entries=batch.total_entries,
        batch_size=batch.batch_size,
        total_batches=batch.total_batches,
        recipients_count=batch.recipients_count,
        include_certificates=batch.include_certificates,
        created_at=batch.created_at,
        created_by=batch.created_by,
    )


def _history_item(
    item: AutoSendBatchItem, numbers: dict[str, int], batch: AutoSendBatch | None = None
) -> HistoryItem:
    return HistoryItem(
        item_id=item.item_id,
        batch_id=item.batch_id,
        sequence=item.sequence,
        entries_count=item.entries_count,
        entry_numbers=[numbers[entry_id] for entry_id in item.entry_ids if entry_id in numbers],
        recipient_emails=list(item.recipient_emails),
        include_certificates=item.include_certificates,
        status=item.status,
        sent_at=item.sent_at,
        error_message=item.error_message,
        created_at=item.created_at,
        batch=_batch_summary(batch) if batch is not None else None,
    )


def settings_response(settings: AutoSendSettings) -> AutoSendSettingsResponse:
    return AutoSendSettingsResponse(
        is_enabled=settings.is_enabled,
        selected_recipient_ids=list(settings.selected_recipient_ids),
        updated_by=settings.updated_by,
        updated_at=settings.updated_at,
    )


class AutoSendService:
    """Plans date-range batches, dispatches them and reports progress."""

    def __init__(
        self,
        *,
        repository: AutoSendRepository,
        entries: EntryRepository,
        renderer: DocumentRenderer,
        sender: MailSender,
        audit: AuditLogRepository,
        zone: ZoneInfo | timezone,
        batch_size: int = 5,
        max_entries: int = 100,
        branding_image_path: str = "",
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._repository = repository
        self._entries = entries
        self._renderer = renderer
        self.sender = sender
        self._audit = audit
        self._zone = zone
        self._batch_size = batch_size
        self._max_entries = max_entries
        self._branding_image_path = branding_image_path
        self._locks_guard = Lock()
        self._batch_locks: dict[str, tuple[Lock, int]] = {}

    def plan_batch(
        self,
        *,
        date_from: date | None = None,
        date_to: date | None = None,
        recipient_ids: list[str] | None = None,
        include_certificates: bool = True,
        initiated_by: str | None = None,
        now: datetime | None = None,
    ) -> BatchPlan:
        date_range = resolve_date_range(date_from, date_to, self._zone, now=now)

        recipients = self._repository.resolve_active_recipients(recipient_ids or None)
        if not recipients:
            raise NoRecipientsError()

        entries = self._entries.list_active_between(
            date_range.range_start, date_range.range_end, limit=self._max_entries
        )
        if not entries:
            raise NoEntriesError()

        created_at = _now_utc()
        batch_id = f"asb_{secrets.token_hex(8)}"
        recipient_emails = tuple(recipient.email for recipient in recipients)
        chunks = list(chunked([entry.entry_id for entry in entries], self._batch_size))
        batch = AutoSendBatch(
            batch_id=batch_id,
            date_from=date_range.range_start,
            date_to=date_range.range_end,
            total_entries=len(entries),
            batch_size=self._batch_size,
            total_batches=len(chunks),
            recipients_count=len(recipients),
            include_certificates=include_certificates,
            created_at=created_at,
            created_by=initiated_by,
        )
        items = [
            AutoSendBatchItem(
                item_id=f"asi_{secrets.token_hex(8)}",
                batch_id=batch_id,
                sequence=index + 1,
                entry_ids=tuple(chunk),
                recipient_emails=recipient_emails,
                entries_count=len(chunk),
                include_certificates=include_certificates,
                status=STATUS_PENDING,
                sent_at=None,
                error_message=None,
                created_at=created_at,
                updated_at=created_at,
            )
            for index, chunk in enumerate(chunks)
        ]
        self._repository.create_batch(batch, items)
        logger.info(
            "auto-send batch planned batch_id=%s entries=%d items=%d recipients=%d",
            batch_id,
            len(entries),
            len(items),
            len(recipients),
        )
        return BatchPlan(
            batch_id=batch_id,
            batches=len(items),
            entries=len(entries),
            recipients=len(recipients),
            date_from=date_range.date_from,
            date_to=date_range.date_to,
        )

    @contextmanager
    def _batch_guard(self, batch_id: str) -> Iterator[None]:
        # Locks are counted per waiter and dropped once the last one leaves.
        with self._locks_guard:
            lock, waiters = self._batch_locks.get(batch_id, (None, 0))
            if lock is None:
                lock = Lock()
            self._batch_locks[batch_id] = (lock, waiters + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                _, waiters = self._batch_locks[batch_id]
                if waiters <= 1:
                    del self._batch_locks[batch_id]
                else:
                    self._batch_locks[batch_id] = (lock, waiters - 1)

    def dispatch_batch(self, batch_id: str, *, initiated_by: str | None = None) -> DispatchResult:
        batch = self._repository.get_batch(batch_id)
        if batch is None:
            raise BatchNotFoundError(batch_id)

        with self._batch_guard(batch_id):
            items = self._repository.list_items(batch_id)
            labels = format_range_labels(batch.date_from, batch.date_to, self._zone)
            branding = self._load_branding()
            attempted = 0
            skipped = 0
            for item in items:
                if item.status == STATUS_SENT:
                    skipped += 1
                    continue
                attempted += 1
                try:
                    self._send_item(batch, item, labels=labels, branding=branding)
                except Exception as exc:
                    error_message = str(exc) or exc.__class__.__name__
                    self._repository.update_item_status(
                        item.item_id, status=STATUS_FAILED, sent_at=None, error_message=error_message
                    )
                    logger.warning(
                        "auto-send item failed batch_id=%s sequence=%d: %s",
                        batch_id,
                        item.sequence,
                        error_message,
                    )
                    continue
                self._repository.update_item_status(
                    item.item_id, status=STATUS_SENT, sent_at=_now_utc(), error_message=None
                )

            final_items = self._repository.list_items(batch_id)
            sent = sum(1 for item in final_items if item.status == STATUS_SENT)
            failed = sum(1 for item in final_items if item.status == STATUS_FAILED)
            self._audit.append(
                actor_id=initiated_by or batch.created_by,
                action="AUTO_SEND",
                entity_type="AutoSendBatch",
                entity_id=batch_id,
                changes={
                    "batch_id": batch_id,
                    "entries_count": batch.total_entries,
                    "batch_size": batch.batch_size,
                    "total_batches": batch.total_batches,
                    "sent_batches": sent,
                    "failed_batches": failed,
                    "attempted": attempted,
                },
            )
        logger.info(
            "auto-send batch dispatched batch_id=%s sent=%d failed=%d skipped=%d",
            batch_id,
            sent,
            failed,
            skipped,
        )
        return DispatchResult(batch_id=batch_id, sent=sent, failed=failed, skipped=skipped, attempted=attempted)

    def _send_item(
        self,
        batch: AutoSendBatch,
        item: AutoSendBatchItem,
        *,
        labels: tuple[str, str],
        branding: MailAttachment | None,
    ) -> None:
        details = self._entries.get_entry_details(list(item.entry_ids))
        if not details:
            raise RuntimeError("none of the item's entries could be loaded")

        attachments = [
            MailAttachment(
                filename=statement_file_name(detail.entry.registration_number),
                content=self._renderer.render(detail, include_certificate=item.include_certificates),
            )
            for detail in details
        ]
        if branding is not None:
            attachments.append(branding)

        date_from_label, date_to_label = labels
        html = build_entries_digest_html(
            details,
            date_from_label=date_from_label,
            date_to_label=date_to_label,
            batch_number=item.sequence,
            total_batches=batch.total_batches,
            zone=self._zone,
            include_branding=branding is not None,
        )
        message = MailMessage(
            to=item.recipient_emails,
            subject=digest_subject(
                date_from_label=date_from_label,
                date_to_label=date_to_label,
                batch_number=item.sequence,
                total_batches=batch.total_batches,
            ),
            html=html,
            attachments=tuple(attachments),
        )
        self.sender.send(message)
        logger.info(
            "auto-send item sent batch_id=%s sequence=%d recipients=%s",
            batch.batch_id,
            item.sequence,
            ",".join(mask_email(address) for address in item.recipient_emails),
        )

    def _load_branding(self) -> MailAttachment | None:
        if not self._branding_image_path:
            return None
        path = Path(self._branding_image_path)
        try:
            content = path.read_bytes()
        except OSError as exc:
            logger.warning("branding image unavailable at %s: %s", path, exc)
            return None
        content_type = mimetypes.guess_type(path.name)[0] or "image/png"
        return MailAttachment(
            filename=path.name,
            content=content,
            content_type=content_type,
            content_id=BRANDING_CONTENT_ID,
        )

    def get_progress(self, batch_id: str) -> BatchProgressResponse:
        if self._repository.get_batch(batch_id) is None:
            raise BatchNotFoundError(batch_id)
        items = self._repository.list_items(batch_id)
        sent = sum(1 for item in items if item.status == STATUS_SENT)
        failed = sum(1 for item in items if item.status == STATUS_FAILED)
        return BatchProgressResponse(
            batch_id=batch_id,
            total=len(items),
            sent=sent,
            failed=failed,
            pending=len(items) - sent - failed,
            complete=sent + failed == len(items),
            items=[
                BatchItemProgress(
                    item_id=item.item_id,
                    sequence=item.sequence,
                    entries_count=item.entries_count,
                    recipient_emails=list(item.recipient_emails),
                    status=item.status,
                    sent_at=item.sent_at,
                    error_message=item.error_message,
                )
                for item in items
            ],
        )

    def list_batch_history(self, *, page: int = 1, limit: int = 10, recipient: str | None = None) -> BatchHistoryResponse:
        request = _PageRequest(page=page, limit=limit)
        normalized_recipient = recipient.strip().lower() if recipient and recipient.strip() else None
        batches, total = self._repository.list_batches(
            offset=request.offset, limit=request.limit, recipient=normalized_recipient
        )
        items_by_batch = {batch.batch_id: self._repository.list_items(batch.batch_id) for batch in batches}
        all_entry_ids = [
            entry_id for items in items_by_batch.values() for item in items for entry_id in item.entry_ids
        ]
        numbers = self._entries.registration_numbers(all_entry_ids)
        return BatchHistoryResponse(
            batches=[
                BatchHistoryEntry(
                    **_batch_summary(batch).model_dump(),
                    items=[_history_item(item, numbers) for item in items_by_batch[batch.batch_id]],
                )
                for batch in batches
            ],
            pagination=request.pagination(total),
        )

    def list_item_history(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        recipient: str | None = None,
        batch_id: str | None = None,
    ) -> ItemHistoryResponse:
        request = _PageRequest(page=page, limit=limit)
        normalized_recipient = recipient.strip().lower() if recipient and recipient.strip() else None
        items, total = self._repository.list_item_history(
            offset=request.offset,
            limit=request.limit,
            recipient=normalized_recipient,
            batch_id=batch_id or None,
        )
        numbers = self._entries.registration_numbers(
            [entry_id for item in items for entry_id in item.entry_ids]
        )
        batches: dict[str, AutoSendBatch | None] = {}
        for item in items:
            if item.batch_id not in batches:
                batches[item.batch_id] = self._repository.get_batch(item.batch_id)
        return ItemHistoryResponse(
            items=[_history_item(item, numbers, batches[item.batch_id]) for item in items],
            pagination=request.pagination(total),
        )

    def render_item_archive(self, item_id: str) -> tuple[str, bytes]:
        item = self._repository.get_item(item_id)
        if item is None:
            raise BatchItemNotFoundError(item_id)
        details = self._entries.get_entry_details(list(item.entry_ids))
        if not details:
            raise ArchiveUnavailableError(f"no entries available for item {item_id}")
        documents = [
            self._renderer.render(detail, include_certificate=item.include_certificates) for detail in details
        ]
        return f"AutoSend_Package_{item.sequence}.pdf", merge_pdfs(documents)

    def run_scheduled(self, *, now: datetime | None = None) -> ScheduledRunOutcome:
        settings = self._repository.get_settings()
        if not settings.is_enabled:
            return ScheduledRunOutcome(skipped=True, reason="auto-send paused")
        plan = self.plan_batch(
            recipient_ids=list(settings.selected_recipient_ids) or None,
            initiated_by=SCHEDULER_ACTOR,
            now=now,
        )
        return ScheduledRunOutcome(skipped=False, plan=plan)

    def pending_batch_ids(self) -> list[str]:
        return self._repository.list_batch_ids_with_pending_items()
