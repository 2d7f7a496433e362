from __future__ import annotations

import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuditLogEntry:
    audit_id: str
    actor_id: str | None
    action: str
    entity_type: str
    entity_id: str
    changes: dict[str, object] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_now_utc)


class AuditLogRepository(Protocol):
    def reset(self) -> None: ...

    def append(
        self,
        *,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        changes: dict[str, object],
    ) -> AuditLogEntry: ...

    def list_entries(self, *, entity_id: str | None = None, action: str | None = None) -> list[AuditLogEntry]: ...


class InMemoryAuditLogRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: list[AuditLogEntry] = []

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def append(
        self,
        *,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        changes: dict[str, object],
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            audit_id=f"aud_{secrets.token_hex(8)}",
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=dict(changes),
            created_at=_now_utc(),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def list_entries(self, *, entity_id: str | None = None, action: str | None = None) -> list[AuditLogEntry]:
        with self._lock:
            rows = list(self._entries)
        return [
            row
            for row in rows
            if (entity_id is None or row.entity_id == entity_id) and (action is None or row.action == action)
        ]


class AuditBase(DeclarativeBase):
    pass


class _AuditLogRow(AuditBase):
    __tablename__ = "audit_logs"

    audit_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    changes_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyAuditLogRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for AUDIT_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AuditBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AuditLogRow).delete()

    def append(
        self,
        *,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str,
        changes: dict[str, object],
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            audit_id=f"aud_{secrets.token_hex(8)}",
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=dict(changes),
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(
                    _AuditLogRow(
                        audit_id=entry.audit_id,
                        actor_id=entry.actor_id,
                        action=entry.action,
                        entity_type=entry.entity_type,
                        entity_id=entry.entity_id,
                        changes_json=json.dumps(entry.changes, sort_keys=True, default=str),
                        created_at=entry.created_at,
                    )
                )
        return entry

    def list_entries(self, *, entity_id: str | None = None, action: str | None = None) -> list[AuditLogEntry]:
        query = select(_AuditLogRow).order_by(_AuditLogRow.created_at.asc())
        if entity_id is not None:
            query = query.where(_AuditLogRow.entity_id == entity_id)
        if action is not None:
            query = query.where(_AuditLogRow.action == action)
        with self._session() as session:
            rows = session.execute(query).scalars().all()
            return [
                AuditLogEntry(
                    audit_id=row.audit_id,
                    actor_id=row.actor_id,
                    action=row.action,
                    entity_type=row.entity_type,
                    entity_id=row.entity_id,
                    changes=json.loads(row.changes_json or "{}"),
                    created_at=_coerce_utc(row.created_at),
                )
                for row in rows
            ]


def create_audit_log_repository(*, backend: str, database_url: str) -> AuditLogRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAuditLogRepository(database_url)
    return InMemoryAuditLogRepository()
