"""
Health Aggregator
=================

Polls the transport, storage, automation, device population and host
resources (memory and CPU load through psutil) and folds them into a
:class:`HealthSnapshot`.

Probes have no side effects on the components they inspect. Each probe is
isolated: if one raises, that component is reported unhealthy and the rest
of the snapshot is still produced. The only state kept between calls is a
ring buffer of snapshot summaries.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

import psutil

from plantcare.constants import DEFICIENT_FRACTION_THRESHOLD
from plantcare.domain.exceptions import RepositoryError
from plantcare.domain.health import Alert, ComponentHealth, HealthSnapshot, SnapshotSummary
from plantcare.enums.common import AlertSeverity, HealthLevel
from plantcare.enums.events import SystemEvent
from plantcare.schemas.events import HealthChangedPayload
from plantcare.services.decision_engine import IrrigationDecisionEngine
from plantcare.services.device_registry import DeviceRegistry
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.transport_gateway import TransportGateway
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import Clock, utc_now
from plantcare.workers.unified_scheduler import UnifiedScheduler

logger = logging.getLogger(__name__)

HEALTH_TASK = "system.health_snapshot"
HEALTH_JOB_ID = "system_health_snapshot"

# A resource above this fraction of its threshold degrades the system probe.
RESOURCE_WARNING_FRACTION = 0.8
_MB = 1024 * 1024


class HealthAggregator:
    """Builds point-in-time health snapshots and keeps a short history."""

    def __init__(
        self,
        *,
        gateway: TransportGateway,
        sink: SinkAdapter,
        engine: IrrigationDecisionEngine,
        registry: DeviceRegistry,
        event_bus: EventBus | None = None,
        scheduler: UnifiedScheduler | None = None,
        clock: Clock = utc_now,
        history_size: int = 100,
        probe_timeout_seconds: float = 2.0,
        latency_threshold_ms: float = 2000.0,
        memory_threshold_pct: float = 90.0,
        cpu_load_threshold_pct: float = 80.0,
        interval_seconds: int = 60,
    ) -> None:
        self._gateway = gateway
        self._sink = sink
        self._engine = engine
        self._registry = registry
        self._event_bus = event_bus
        self._scheduler = scheduler
        self._clock = clock
        self._probe_timeout = float(probe_timeout_seconds)
        self._latency_threshold_ms = float(latency_threshold_ms)
        self._memory_threshold_pct = float(memory_threshold_pct)
        self._cpu_load_threshold_pct = float(cpu_load_threshold_pct)
        self._interval_seconds = int(interval_seconds)

        self._history: deque[SnapshotSummary] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ probes

    def _probe_transport(self) -> ComponentHealth:
        detail = self._gateway.get_stats()
        if self._gateway.is_connected():
            return ComponentHealth(HealthLevel.HEALTHY, detail)
        if detail.get("gave_up"):
            detail["message"] = "broker unreachable, reconnect attempts exhausted"
        elif detail.get("reconnect_attempt"):
            detail["message"] = f"broker disconnected, reconnect attempt {detail['reconnect_attempt']}"
        else:
            detail["message"] = "broker disconnected"
        return ComponentHealth(HealthLevel.UNHEALTHY, detail)

    def _probe_storage(self) -> ComponentHealth:
        detail: dict[str, Any] = {"sink": self._sink.get_stats()}
        try:
            latency_ms = self._sink.ping(timeout=self._probe_timeout)
        except RepositoryError as exc:
            detail["message"] = str(exc)
            return ComponentHealth(HealthLevel.UNHEALTHY, detail)

        detail["latency_ms"] = round(latency_ms, 2)
        if latency_ms > self._latency_threshold_ms:
            detail["message"] = f"storage latency {latency_ms:.0f}ms above {self._latency_threshold_ms:.0f}ms"
            return ComponentHealth(HealthLevel.UNHEALTHY, detail)
        return ComponentHealth(HealthLevel.HEALTHY, detail)

    def _probe_automation(self) -> ComponentHealth:
        detail = self._engine.get_stats()
        if self._engine.is_running():
            return ComponentHealth(HealthLevel.HEALTHY, detail)
        detail["message"] = "decision timer not active"
        return ComponentHealth(HealthLevel.UNHEALTHY, detail)

    def _probe_devices(self) -> ComponentHealth:
        summary: dict[str, Any] = self._registry.summary()
        total = summary["total"]
        deficient_fraction = summary["moisture_deficient"] / total if total else 0.0
        summary["deficient_fraction"] = round(deficient_fraction, 3)

        problems = []
        if summary["offline"]:
            problems.append(f"{summary['offline']} of {total} device(s) offline")
        if deficient_fraction > DEFICIENT_FRACTION_THRESHOLD:
            problems.append(f"{summary['moisture_deficient']} of {total} device(s) below moisture minimum")
        if problems:
            summary["message"] = "; ".join(problems)
            return ComponentHealth(HealthLevel.DEGRADED, summary)
        return ComponentHealth(HealthLevel.HEALTHY, summary)

    def _probe_system(self) -> ComponentHealth:
        memory = psutil.virtual_memory()
        load_average = psutil.getloadavg()
        cores = psutil.cpu_count() or 1
        cpu_load_pct = load_average[0] / cores * 100.0
        process = psutil.Process()

        detail: dict[str, Any] = {
            "memory": {
                "usage_percent": round(memory.percent, 1),
                "used_mb": round(memory.used / _MB),
                "total_mb": round(memory.total / _MB),
                "process_rss_mb": round(process.memory_info().rss / _MB, 1),
            },
            "cpu": {
                "load_percent": round(cpu_load_pct, 1),
                "load_average": [round(value, 2) for value in load_average],
                "cores": cores,
            },
            "process_uptime_seconds": int(time.time() - process.create_time()),
        }

        levels = []
        warnings = []
        for label, value, threshold in (
            ("memory usage", memory.percent, self._memory_threshold_pct),
            ("CPU load", cpu_load_pct, self._cpu_load_threshold_pct),
        ):
            if value > threshold:
                levels.append(HealthLevel.UNHEALTHY)
                warnings.append(f"High {label}: {value:.1f}%")
            elif value > threshold * RESOURCE_WARNING_FRACTION:
                levels.append(HealthLevel.DEGRADED)
                warnings.append(f"Elevated {label}: {value:.1f}%")

        if not warnings:
            return ComponentHealth(HealthLevel.HEALTHY, detail)
        detail["message"] = "; ".join(warnings)
        status = HealthLevel.UNHEALTHY if HealthLevel.UNHEALTHY in levels else HealthLevel.DEGRADED
        return ComponentHealth(status, detail)

    # ---------------------------------------------------------------- snapshot

    def snapshot(self) -> HealthSnapshot:
        probes: dict[str, Callable[[], ComponentHealth]] = {
            "transport": self._probe_transport,
            "storage": self._probe_storage,
            "automation": self._probe_automation,
            "devices": self._probe_devices,
            "system": self._probe_system,
        }
        components: dict[str, ComponentHealth] = {}
        for name, probe in probes.items():
            try:
                components[name] = probe()
            except Exception as exc:
                logger.error("Health probe %s failed: %s", name, exc, exc_info=True)
                components[name] = ComponentHealth(HealthLevel.UNHEALTHY, {"message": f"probe failed: {exc}"})

        levels = {c.status for c in components.values()}
        if HealthLevel.UNHEALTHY in levels:
            overall = HealthLevel.UNHEALTHY
        elif HealthLevel.DEGRADED in levels:
            overall = HealthLevel.DEGRADED
        else:
            overall = HealthLevel.HEALTHY

        snapshot = HealthSnapshot(
            overall=overall,
            components=components,
            alerts=self._alerts(components),
            observed_at=self._clock(),
        )

        with self._lock:
            previous = self._history[-1].overall if self._history else None
            self._history.append(snapshot.summary())

        if previous is not None and previous is not overall:
            log = logger.warning if overall is not HealthLevel.HEALTHY else logger.info
            log("System health changed: %s -> %s", previous.value, overall.value)
            if self._event_bus is not None:
                self._event_bus.publish(
                    SystemEvent.HEALTH_CHANGED,
                    HealthChangedPayload(
                        previous=previous,
                        current=overall,
                        alerts=[a.to_dict() for a in snapshot.alerts],
                        timestamp=snapshot.observed_at.isoformat(),
                    ),
                )
        return snapshot

    @staticmethod
    def _alerts(components: dict[str, ComponentHealth]) -> list[Alert]:
        critical, warning = [], []
        for name, component in components.items():
            if component.status is HealthLevel.HEALTHY:
                continue
            message = component.detail.get("message") or f"{name} is {component.status.value}"
            if component.status is HealthLevel.UNHEALTHY:
                critical.append(Alert(name, AlertSeverity.CRITICAL, message))
            else:
                warning.append(Alert(name, AlertSeverity.WARNING, message))
        return critical + warning

    # ----------------------------------------------------------------- history

    def history(self, limit: int | None = None) -> list[SnapshotSummary]:
        """Most recent summaries, oldest first."""
        with self._lock:
            items = list(self._history)
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def trend(self) -> dict[str, Any]:
        """Count of each overall state across the buffered history."""
        items = self.history()
        counts = {level.value: 0 for level in HealthLevel}
        for item in items:
            counts[item.overall.value] += 1
        return {
            "samples": len(items),
            "counts": counts,
            "current": items[-1].overall.value if items else None,
            "since": items[0].observed_at.isoformat() if items else None,
        }

    def register_scheduled_tasks(self) -> None:
        if not self._scheduler:
            logger.warning("No scheduler available, skipping task registration")
            return

        @self._scheduler.task(HEALTH_TASK)
        def health_snapshot_task():
            return self.snapshot().overall.value

        self._scheduler.schedule_interval(
            task_name=HEALTH_TASK,
            interval_seconds=self._interval_seconds,
            job_id=HEALTH_JOB_ID,
            namespace="system",
        )
