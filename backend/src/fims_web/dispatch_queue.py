from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)

DispatchHandler = Callable[..., object]


class DispatchQueue:
    """Runs batch dispatches in the background, one in flight per batch id.

    Distinct batches may run concurrently on the pool; a batch that is
    already queued or running is not queued a second time. With
    ``max_workers=0`` work runs inline on the caller's thread.
    """

    def __init__(self, handler: DispatchHandler, *, max_workers: int = 2) -> None:
        self._handler = handler
        self._max_workers = max_workers
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="auto-send") if max_workers > 0 else None
        )
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._idle = threading.Condition(self._lock)

    @property
    def inline(self) -> bool:
        return self._executor is None

    def is_in_flight(self, batch_id: str) -> bool:
        with self._lock:
            return batch_id in self._in_flight

    def submit(self, batch_id: str, *, initiated_by: str | None = None) -> bool:
        with self._lock:
            if batch_id in self._in_flight:
                logger.info("dispatch already in flight batch_id=%s", batch_id)
                return False
            self._in_flight.add(batch_id)

        if self._executor is None:
            self._run(batch_id, initiated_by)
            return True

        try:
            self._executor.submit(self._run, batch_id, initiated_by)
        except RuntimeError:
            self._release(batch_id)
            raise
        return True

    def _run(self, batch_id: str, initiated_by: str | None) -> None:
        try:
            self._handler(batch_id, initiated_by=initiated_by)
        except Exception:
            logger.exception("background dispatch failed batch_id=%s", batch_id)
        finally:
            self._release(batch_id)

    def _release(self, batch_id: str) -> None:
        with self._idle:
            self._in_flight.discard(batch_id)
            if not self._in_flight:
                self._idle.notify_all()

    def resume_pending(self, batch_ids: list[str]) -> int:
        """Re-queue batches left with pending items, e.g. after a restart."""
        resumed = 0
        for batch_id in batch_ids:
            if self.submit(batch_id):
                resumed += 1
        if resumed:
            logger.info("resumed %d auto-send batches with pending items", resumed)
        return resumed

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
