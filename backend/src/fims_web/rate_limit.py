from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Integer, String, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

# Expired windows older than this are pruned on write.
STALE_WINDOW_RETENTION = timedelta(hours=1)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_client_key(scope: str, client_ip: str) -> str:
    digest = hashlib.sha256(client_ip.strip().encode("utf-8")).hexdigest()
    return f"{scope}:{digest[:32]}"


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_in_seconds: int


def _decision(count: int, limit: int, reset_at: datetime, now: datetime) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=count <= limit,
        remaining=max(0, limit - count),
        reset_in_seconds=max(1, math.ceil((reset_at - now).total_seconds())),
    )


class RateLimitStore(Protocol):
    def hit(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> RateLimitDecision: ...

    def reset(self) -> None: ...


class InMemoryRateLimitStore:
    """Fixed-window counters keyed by hashed client identity."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._windows: dict[str, tuple[int, datetime]] = {}

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def hit(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> RateLimitDecision:
        current = _coerce_utc(now or _now_utc())
        with self._lock:
            self._prune(current)
            count, reset_at = self._windows.get(key, (0, current))
            if reset_at <= current:
                count = 0
                reset_at = current + timedelta(seconds=window_seconds)
            count += 1
            self._windows[key] = (count, reset_at)
        return _decision(count, limit, reset_at, current)

    def _prune(self, now: datetime) -> None:
        cutoff = now - STALE_WINDOW_RETENTION
        expired = [key for key, (_, reset_at) in self._windows.items() if reset_at < cutoff]
        for key in expired:
            del self._windows[key]


class RateLimitBase(DeclarativeBase):
    pass


class _RateLimitCounterRow(RateLimitBase):
    __tablename__ = "rate_limit_counters"

    counter_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    hit_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class SqlAlchemyRateLimitStore:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for RATE_LIMIT_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            RateLimitBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_RateLimitCounterRow).delete()

    def hit(self, key: str, *, limit: int, window_seconds: int, now: datetime | None = None) -> RateLimitDecision:
        current = _coerce_utc(now or _now_utc())
        with self._session() as session:
            with session.begin():
                session.execute(
                    delete(_RateLimitCounterRow).where(
                        _RateLimitCounterRow.reset_at < current - STALE_WINDOW_RETENTION
                    )
                )
                row = session.execute(
                    select(_RateLimitCounterRow)
                    .where(_RateLimitCounterRow.counter_key == key)
                    .with_for_update()
                ).scalar_one_or_none()
                if row is None:
                    row = _RateLimitCounterRow(
                        counter_key=key,
                        hit_count=0,
                        reset_at=current + timedelta(seconds=window_seconds),
                    )
                    session.add(row)
                elif _coerce_utc(row.reset_at) <= current:
                    row.hit_count = 0
                    row.reset_at = current + timedelta(seconds=window_seconds)
                row.hit_count += 1
                count = row.hit_count
                reset_at = _coerce_utc(row.reset_at)
        return _decision(count, limit, reset_at, current)


def create_rate_limit_store(*, backend: str, database_url: str) -> RateLimitStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyRateLimitStore(database_url)
    return InMemoryRateLimitStore()
