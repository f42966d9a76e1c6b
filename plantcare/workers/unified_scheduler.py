"""
Centralized scheduling service for all background tasks.

Every periodic task of the core (decision tick, registry sweep, health
snapshot, retention prune) and every one-shot scheduled watering is a job on
one process-owned scheduler. Jobs are independently cancellable through
``remove_job`` / ``pause_job``.

Design Principles:
- Single scheduler loop thread
- Bounded worker pool for job execution (``max_workers=0`` runs jobs inline)
- Injectable clock so tests can advance virtual time and call ``run_pending()``
- Namespace-based job organization
- Support for interval, daily and one-time schedules
"""

from __future__ import annotations

import heapq
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from enum import Enum
from functools import wraps
from typing import Any, Callable

from plantcare.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


class ScheduleType(Enum):
    """Types of schedules."""

    INTERVAL = "interval"  # Every N seconds
    DAILY = "daily"  # At specific local time each day
    ONCE = "once"  # One-time execution


@dataclass
class JobResult:
    """Result of a job execution."""

    job_id: str
    success: bool
    started_at: datetime
    completed_at: datetime
    result: Any = None
    error: str | None = None

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


@dataclass
class ScheduledJob:
    """A scheduled job configuration."""

    job_id: str
    task_name: str
    namespace: str  # e.g., "irrigation", "registry", "health", "storage"
    schedule_type: ScheduleType
    enabled: bool = True

    args: tuple = field(default_factory=tuple)
    kwargs: dict[str, Any] = field(default_factory=dict)

    interval_seconds: int | None = None  # For INTERVAL type
    time_of_day: str | None = None  # "HH:MM" for DAILY type
    run_at: datetime | None = None  # For ONCE type

    next_run: datetime | None = None
    last_run: datetime | None = None
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for API responses)."""
        return {
            "job_id": self.job_id,
            "task_name": self.task_name,
            "namespace": self.namespace,
            "schedule_type": self.schedule_type.value,
            "enabled": self.enabled,
            "interval_seconds": self.interval_seconds,
            "time_of_day": self.time_of_day,
            "next_run": self.next_run.isoformat() if self.next_run else None,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "run_count": self.run_count,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
        }


class UnifiedScheduler:
    """
    Centralized scheduler for all background tasks.

    - No unbounded thread creation: uses a bounded ThreadPoolExecutor.
    - Heap de-duplication: heap stores immutable entries and skips stale items.
    - Interval drift reduction: INTERVAL schedules advance from the *scheduled time*,
      not from "now" (fixed-rate scheduling).

    Implementation note on the heap:
    - Heap entries are tuples: (run_at_ts, seq, job_id)
    - seq is a monotonic counter to ensure stable ordering when timestamps match
    - Entries are never deleted in-place; stale ones are skipped:
        - job removed -> skip
        - job disabled -> skip
        - job.next_run changed -> skip
    """

    def __init__(
        self,
        check_interval_seconds: float = 1.0,
        max_history: int = 1000,
        max_workers: int = 4,
        *,
        clock: Clock = utc_now,
        tz: tzinfo | None = None,
    ):
        """
        Initialize the unified scheduler.

        Args:
            check_interval_seconds: How often to check for due jobs (default 1s)
            max_history: Maximum job execution history to keep
            max_workers: Maximum number of concurrent job executions (0 = inline)
            clock: Source of the current aware datetime
            tz: Timezone used to interpret DAILY ``time_of_day`` values
        """
        self._check_interval = float(check_interval_seconds)
        self._max_history = int(max_history)
        self._max_workers = max(0, int(max_workers))
        self._clock = clock
        self._tz = tz

        self._jobs: dict[str, ScheduledJob] = {}
        self._tasks: dict[str, Callable] = {}  # task_name -> function

        # Entries: (run_at_ts, seq, job_id)
        self._job_heap: list[tuple[float, int, str]] = []
        self._heap_seq = 0

        self._history: list[JobResult] = []

        self._running = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._job_lock = threading.RLock()
        self._executor: ThreadPoolExecutor | None = None

    # ==================== Task Registration ====================

    def task(self, name: str) -> Callable:
        """
        Decorator to register a task.

        Usage:
            @scheduler.task("registry.sweep")
            def sweep():
                pass
        """

        def decorator(func: Callable) -> Callable:
            self.register_task(name, func)

            @wraps(func)
            def wrapper(*args, **kwargs):
                return func(*args, **kwargs)

            wrapper.delay = lambda *a, **kw: self.run_now(name, args=a, kwargs=kw)
            return wrapper

        return decorator

    def register_task(self, name: str, func: Callable) -> None:
        """Register a task function programmatically."""
        self._tasks[name] = func
        logger.debug("Registered task: %s", name)

    def has_task(self, name: str) -> bool:
        return name in self._tasks

    def _ensure_executor(self) -> None:
        """Ensure an executor is available (supports stop() -> start() restarts)."""
        if self._executor is not None or self._max_workers == 0:
            return
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix="UnifiedSchedulerJob",
        )

    # ==================== Heap Helpers ====================

    def _push_heap(self, job: ScheduledJob) -> None:
        if not job.enabled or not job.next_run:
            return
        self._heap_seq += 1
        heapq.heappush(self._job_heap, (job.next_run.timestamp(), self._heap_seq, job.job_id))

    @staticmethod
    def _namespace_for(task_name: str, namespace: str | None) -> str:
        if namespace is not None:
            return namespace
        return task_name.split(".")[0] if "." in task_name else "default"

    # ==================== Job Scheduling ====================

    def schedule_interval(
        self,
        task_name: str,
        interval_seconds: int,
        *,
        job_id: str | None = None,
        namespace: str | None = None,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
        enabled: bool = True,
        start_immediately: bool = False,
    ) -> ScheduledJob:
        """Schedule a task to run at regular intervals."""
        now = self._clock()
        if job_id is None:
            job_id = f"{task_name}_{int(now.timestamp())}"

        next_run = now if start_immediately else (now + timedelta(seconds=int(interval_seconds)))

        job = ScheduledJob(
            job_id=job_id,
            task_name=task_name,
            namespace=self._namespace_for(task_name, namespace),
            schedule_type=ScheduleType.INTERVAL,
            enabled=enabled,
            args=args,
            kwargs=kwargs or {},
            interval_seconds=int(interval_seconds),
            next_run=next_run,
        )

        self._add_job(job)
        logger.info("Scheduled interval job: %s (every %ss)", job_id, interval_seconds)
        return job

    def schedule_daily(
        self,
        task_name: str,
        time_of_day: str,
        *,
        job_id: str | None = None,
        namespace: str | None = None,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
        enabled: bool = True,
    ) -> ScheduledJob:
        """Schedule a task to run daily at a specific local time ("HH:MM")."""
        if job_id is None:
            job_id = f"{task_name}_daily_{time_of_day.replace(':', '')}"

        job = ScheduledJob(
            job_id=job_id,
            task_name=task_name,
            namespace=self._namespace_for(task_name, namespace),
            schedule_type=ScheduleType.DAILY,
            enabled=enabled,
            args=args,
            kwargs=kwargs or {},
            time_of_day=time_of_day,
            next_run=self._calculate_next_daily(time_of_day),
        )

        self._add_job(job)
        logger.info("Scheduled daily job: %s (at %s)", job_id, time_of_day)
        return job

    def schedule_once(
        self,
        task_name: str,
        run_at: datetime,
        *,
        job_id: str | None = None,
        namespace: str | None = None,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
    ) -> ScheduledJob:
        """Schedule a task to run once at a specific time."""
        if job_id is None:
            job_id = f"{task_name}_once_{int(run_at.timestamp())}"

        job = ScheduledJob(
            job_id=job_id,
            task_name=task_name,
            namespace=self._namespace_for(task_name, namespace),
            schedule_type=ScheduleType.ONCE,
            enabled=True,
            args=args,
            kwargs=kwargs or {},
            run_at=run_at,
            next_run=run_at,
        )

        self._add_job(job)
        logger.info("Scheduled one-time job: %s (at %s)", job_id, run_at.isoformat())
        return job

    def run_now(
        self,
        task_name: str,
        *,
        args: tuple = (),
        kwargs: dict[str, Any] | None = None,
    ) -> JobResult | None:
        """Run a task immediately (synchronously)."""
        func = self._tasks.get(task_name)
        if func is None:
            logger.error("Task not found: %s", task_name)
            return None

        started_at = self._clock()
        job_id = f"{task_name}_immediate_{int(started_at.timestamp())}"
        try:
            result = func(*args, **(kwargs or {}))
        except Exception as e:
            logger.error("Immediate task %s failed: %s", task_name, e, exc_info=True)
            job_result = JobResult(
                job_id=job_id, success=False, started_at=started_at, completed_at=self._clock(), error=str(e)
            )
        else:
            job_result = JobResult(
                job_id=job_id, success=True, started_at=started_at, completed_at=self._clock(), result=result
            )
        self._record_history(job_result)
        return job_result

    # ==================== Job Management ====================

    def _add_job(self, job: ScheduledJob) -> None:
        with self._job_lock:
            self._jobs[job.job_id] = job
            self._push_heap(job)

    def remove_job(self, job_id: str) -> bool:
        """Remove (cancel) a job."""
        with self._job_lock:
            if job_id in self._jobs:
                del self._jobs[job_id]
                logger.info("Removed job: %s", job_id)
                return True
        return False

    def enable_job(self, job_id: str, enabled: bool = True) -> bool:
        """Enable or disable a job."""
        with self._job_lock:
            job = self._jobs.get(job_id)
            if not job:
                return False

            job.enabled = bool(enabled)

            if job.enabled:
                if job.next_run is None:
                    self._schedule_next_run(job, reference_time=self._clock())
                self._push_heap(job)

            logger.info("Job %s %s", job_id, "enabled" if job.enabled else "disabled")
            return True

    def pause_job(self, job_id: str) -> bool:
        return self.enable_job(job_id, enabled=False)

    def resume_job(self, job_id: str) -> bool:
        return self.enable_job(job_id, enabled=True)

    def get_job(self, job_id: str) -> ScheduledJob | None:
        with self._job_lock:
            return self._jobs.get(job_id)

    def get_jobs(self, namespace: str | None = None, enabled_only: bool = False) -> list[ScheduledJob]:
        with self._job_lock:
            jobs = list(self._jobs.values())

        if namespace:
            jobs = [j for j in jobs if j.namespace == namespace]
        if enabled_only:
            jobs = [j for j in jobs if j.enabled]
        return jobs

    def is_job_active(self, job_id: str) -> bool:
        """True when the scheduler is running and the job is enabled with a next run."""
        job = self.get_job(job_id)
        return bool(self._running and job and job.enabled and job.next_run)

    # ==================== Scheduler Control ====================

    def start(self) -> None:
        """Start the scheduler background thread."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._ensure_executor()
        self._stop_event.clear()
        self._running = True
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="UnifiedScheduler")
        self._thread.start()
        logger.info("UnifiedScheduler started")

    def stop(self, wait: bool = True, timeout: float = 5.0) -> None:
        """
        Stop the scheduler.

        Args:
            wait: Wait for scheduler thread to finish
            timeout: Maximum wait time in seconds
        """
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if wait and self._thread:
            self._thread.join(timeout=timeout)

        if self._executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

        logger.info("UnifiedScheduler stopped")

    def shutdown(self, wait: bool = True, timeout: float = 5.0) -> None:
        """Alias for stop(); matches other services' shutdown() convention."""
        self.stop(wait=wait, timeout=timeout)

    def is_running(self) -> bool:
        return self._running

    def _run_loop(self) -> None:
        logger.debug("Scheduler loop started")

        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as e:
                logger.error("Error in scheduler loop: %s", e, exc_info=True)
            self._stop_event.wait(self._check_interval)

        logger.debug("Scheduler loop ended")

    # ==================== Core Scheduling Logic ====================

    def run_pending(self) -> int:
        """Dispatch every job that is due according to the clock.

        Returns the number of jobs dispatched. With ``max_workers=0`` the jobs
        have finished when this returns.
        """
        now_ts = self._clock().timestamp()
        due: list[tuple[str, datetime]] = []

        with self._job_lock:
            while self._job_heap:
                run_at_ts, _seq, job_id = self._job_heap[0]
                if run_at_ts > now_ts:
                    break
                heapq.heappop(self._job_heap)

                job = self._jobs.get(job_id)
                if not job or not job.enabled or not job.next_run:
                    continue
                if abs(job.next_run.timestamp() - run_at_ts) > 1e-6:
                    continue

                scheduled_for = job.next_run
                # Advance before executing so a long run cannot cause a missed slot.
                self._schedule_next_run(job, reference_time=scheduled_for, scheduled_time=scheduled_for)
                self._push_heap(job)
                due.append((job_id, scheduled_for))

        for job_id, scheduled_for in due:
            if self._executor is None:
                self._execute_job(job_id, scheduled_for)
                continue
            try:
                self._executor.submit(self._execute_job, job_id, scheduled_for)
            except RuntimeError as e:
                logger.error("Failed to submit job %s to executor: %s", job_id, e)
        return len(due)

    def _execute_job(self, job_id: str, scheduled_for: datetime) -> None:
        with self._job_lock:
            job = self._jobs.get(job_id)

        # One-shot jobs are disabled once dispatched, so only skip removed jobs
        # or recurring jobs paused in the meantime.
        if not job or (not job.enabled and job.schedule_type is not ScheduleType.ONCE):
            return

        started_at = self._clock()
        try:
            func = self._tasks.get(job.task_name)
            if func is None:
                raise LookupError(f"Task function not found: {job.task_name}")

            result = func(*job.args, **job.kwargs)
        except Exception as e:
            with self._job_lock:
                job.last_run = started_at
                job.run_count += 1
                job.failure_count += 1
                job.last_error = str(e)
            self._record_history(
                JobResult(job_id=job.job_id, success=False, started_at=started_at, completed_at=self._clock(), error=str(e))
            )
            logger.error("Job %s failed: %s", job.job_id, e, exc_info=True)
            return

        with self._job_lock:
            job.last_run = started_at
            job.run_count += 1
            job.success_count += 1
            job.last_error = None
        job_result = JobResult(
            job_id=job.job_id, success=True, started_at=started_at, completed_at=self._clock(), result=result
        )
        self._record_history(job_result)
        logger.debug(
            "Job %s completed in %.2fs (scheduled_for=%s)",
            job.job_id,
            job_result.duration_seconds,
            scheduled_for.isoformat(),
        )

    def _schedule_next_run(
        self,
        job: ScheduledJob,
        *,
        reference_time: datetime,
        scheduled_time: datetime | None = None,
    ) -> None:
        """
        Calculate and set the next run time for a job.

        INTERVAL schedules advance from the scheduled time (fixed-rate), not
        from the completion time, and never pile up missed runs.
        """
        if job.schedule_type == ScheduleType.INTERVAL:
            interval = int(job.interval_seconds or 60)
            base = scheduled_time or reference_time
            next_run = base + timedelta(seconds=interval)

            now = self._clock()
            if next_run <= now:
                delta_seconds = (now - next_run).total_seconds()
                skips = int(delta_seconds // interval) + 1
                next_run = next_run + timedelta(seconds=skips * interval)

            job.next_run = next_run
            return

        if job.schedule_type == ScheduleType.DAILY:
            job.next_run = self._calculate_next_daily(job.time_of_day or "00:00")
            return

        if job.schedule_type == ScheduleType.ONCE:
            job.next_run = None
            job.enabled = False

    def _calculate_next_daily(self, time_of_day: str) -> datetime:
        """Calculate next occurrence of a daily local time."""
        now = self._clock()
        local_now = now.astimezone(self._tz) if self._tz else now
        hour, minute = map(int, time_of_day.split(":"))

        next_run = local_now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if next_run <= local_now:
            next_run += timedelta(days=1)
        return next_run

    def _record_history(self, result: JobResult) -> None:
        with self._job_lock:
            self._history.append(result)
            if len(self._history) > self._max_history:
                self._history = self._history[-self._max_history :]

    # ==================== Status & History ====================

    def get_status(self) -> dict[str, Any]:
        with self._job_lock:
            enabled_jobs = [j for j in self._jobs.values() if j.enabled]
            return {
                "running": self._running,
                "total_jobs": len(self._jobs),
                "enabled_jobs": len(enabled_jobs),
                "namespaces": sorted({job.namespace for job in self._jobs.values()}),
                "pending_jobs": sum(1 for j in enabled_jobs if j.next_run is not None),
                "history_size": len(self._history),
                "recent_failures": sum(1 for r in self._history[-20:] if not r.success),
                "max_workers": self._max_workers,
            }

    def health_check(self) -> dict[str, Any]:
        """
        Structured health report for the scheduler.

        Returns:
            Dict with ``health`` (healthy/degraded/unhealthy), ``reason`` and
            execution statistics.
        """
        with self._job_lock:
            now = self._clock()
            enabled_jobs = [j for j in self._jobs.values() if j.enabled]
            recent_history = self._history[-50:]
            recent_failures = [r for r in recent_history if not r.success]
            failure_rate = len(recent_failures) / len(recent_history) if recent_history else 0.0

            stale_jobs = []
            for job in enabled_jobs:
                if job.last_run and job.schedule_type == ScheduleType.INTERVAL:
                    expected_interval = timedelta(seconds=job.interval_seconds or 60)
                    if now - job.last_run > expected_interval * 3:
                        stale_jobs.append(job.job_id)

            if not self._running:
                health, reason = "unhealthy", "Scheduler is not running"
            elif failure_rate > 0.5:
                health, reason = "unhealthy", f"High failure rate: {failure_rate:.0%}"
            elif stale_jobs:
                health, reason = "degraded", f"{len(stale_jobs)} stale job(s) detected"
            elif failure_rate > 0.2:
                health, reason = "degraded", f"Elevated failure rate: {failure_rate:.0%}"
            else:
                health, reason = "healthy", "All systems operational"

            return {
                "health": health,
                "reason": reason,
                "timestamp": now.isoformat(),
                "scheduler_running": self._running,
                "statistics": {
                    "total_jobs": len(self._jobs),
                    "enabled_jobs": len(enabled_jobs),
                    "recent_executions": len(recent_history),
                    "recent_failures": len(recent_failures),
                    "failure_rate": round(failure_rate, 3),
                },
                "stale_jobs": stale_jobs,
            }

    def get_history(self, job_id: str | None = None, limit: int = 100) -> list[JobResult]:
        with self._job_lock:
            results = list(self._history)
        if job_id:
            results = [r for r in results if r.job_id == job_id]
        return sorted(results, key=lambda r: r.started_at, reverse=True)[: int(limit)]
