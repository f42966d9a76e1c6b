"""
Event / Metrics Sink
====================

Best-effort bridge between the core and telemetry storage.

Writes are handed to a small bounded worker pool and return a future that
always resolves to a :class:`SinkResult`; storage errors are logged and
counted but never reach the caller. Reads are synchronous and return an
empty list on failure. Storage trouble surfaces only through ``ping()``,
which the health aggregator uses as its connectivity probe.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from plantcare.domain.device import Reading
from plantcare.domain.exceptions import RepositoryError
from plantcare.domain.irrigation import IrrigationEvent
from plantcare.services.protocols import TelemetryStore
from plantcare.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SinkResult:
    ok: bool
    error: str | None = None


@dataclass
class SinkStats:
    writes_ok: int = 0
    writes_failed: int = 0
    reads_failed: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "writes_ok": self.writes_ok,
            "writes_failed": self.writes_failed,
            "reads_failed": self.reads_failed,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class SinkAdapter:
    """Fire-and-forget writer plus best-effort reader over a ``TelemetryStore``."""

    def __init__(
        self,
        store: TelemetryStore,
        *,
        max_workers: int = 2,
        clock: Clock = utc_now,
    ) -> None:
        """
        Args:
            store: Persistence backend.
            max_workers: Size of the write pool; 0 writes inline (tests).
            clock: Source of "now" for read windows and error timestamps.
        """
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self.stats = SinkStats()
        self._executor: ThreadPoolExecutor | None = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="SinkWriter") if max_workers > 0 else None
        )
        # Probes run on a dedicated thread, separate from the write pool.
        self._probe_executor: ThreadPoolExecutor | None = (
            ThreadPoolExecutor(max_workers=1, thread_name_prefix="SinkProbe") if max_workers > 0 else None
        )

    # ------------------------------------------------------------------ writes

    def write_reading(self, device_id: str, reading: Reading) -> "Future[SinkResult]":
        return self._submit("write_reading", lambda: self._store.write_reading(device_id, reading))

    def write_irrigation_event(self, event: IrrigationEvent) -> "Future[SinkResult]":
        return self._submit("write_irrigation_event", lambda: self._store.write_irrigation_event(event))

    def _submit(self, operation: str, fn: Callable[[], None]) -> "Future[SinkResult]":
        if self._executor is None:
            future: Future[SinkResult] = Future()
            future.set_result(self._run_write(operation, fn))
            return future
        try:
            return self._executor.submit(self._run_write, operation, fn)
        except RuntimeError as exc:
            # Executor already shut down.
            self._record_failure(operation, exc)
            future = Future()
            future.set_result(SinkResult(ok=False, error=str(exc)))
            return future

    def _run_write(self, operation: str, fn: Callable[[], None]) -> SinkResult:
        try:
            fn()
        except Exception as exc:
            self._record_failure(operation, exc)
            return SinkResult(ok=False, error=str(exc))
        with self._lock:
            self.stats.writes_ok += 1
        return SinkResult(ok=True)

    def _record_failure(self, operation: str, exc: BaseException, *, read: bool = False) -> None:
        with self._lock:
            if read:
                self.stats.reads_failed += 1
            else:
                self.stats.writes_failed += 1
            self.stats.last_error = f"{operation}: {exc}"
            self.stats.last_error_at = self._clock()
        logger.warning("Telemetry sink %s failed: %s", operation, exc)

    # ------------------------------------------------------------------- reads

    def query_recent(self, device_id: str, window: timedelta) -> list[Reading]:
        since = self._clock() - window
        try:
            return self._store.readings_since(device_id, since)
        except Exception as exc:
            self._record_failure("query_recent", exc, read=True)
            return []

    def query_irrigation_events(
        self,
        device_id: str | None,
        window: timedelta,
        limit: int = 100,
    ) -> list[IrrigationEvent]:
        since = self._clock() - window
        try:
            return self._store.irrigation_events_since(since, device_id=device_id, limit=limit)
        except Exception as exc:
            self._record_failure("query_irrigation_events", exc, read=True)
            return []

    # ------------------------------------------------------------ maintenance

    def ping(self, timeout: float = 2.0) -> float:
        """
        Measure a storage round trip.

        Returns:
            Latency in milliseconds.

        Raises:
            RepositoryError: the store failed or did not answer within ``timeout``.
        """
        started = time.perf_counter()
        if self._probe_executor is None:
            try:
                self._store.ping()
            except Exception as exc:
                raise RepositoryError(f"Storage ping failed: {exc}") from exc
            return (time.perf_counter() - started) * 1000.0

        future = self._probe_executor.submit(self._store.ping)
        try:
            future.result(timeout=timeout)
        except FutureTimeoutError:
            raise RepositoryError(f"Storage ping timed out after {timeout:g}s", detail={"timeout": timeout}) from None
        except Exception as exc:
            raise RepositoryError(f"Storage ping failed: {exc}") from exc
        return (time.perf_counter() - started) * 1000.0

    def prune(self, retention: timedelta) -> int:
        """Drop data older than ``retention``. Returns rows removed (0 on failure)."""
        cutoff = self._clock() - retention
        try:
            removed = self._store.prune(cutoff)
        except Exception as exc:
            self._record_failure("prune", exc)
            return 0
        logger.info("Retention prune removed %s rows older than %s", removed, cutoff.isoformat())
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            return self.stats.to_dict()

    def shutdown(self, wait: bool = True) -> None:
        for executor in (self._executor, self._probe_executor):
            if executor is not None:
                executor.shutdown(wait=wait)
