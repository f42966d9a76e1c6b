"""
Shared test fixtures for the PlantCare core test suite.

Provides:
- A FakeClock pinned to 2025-01-01 12:00 UTC (outside the default quiet hours)
- An inline EventBus plus a recorder for published events
- A FakeBroker standing in for the MQTT wrapper
- A file-backed SQLite telemetry store per test
- psutil patched to report a quiet host, so health never depends on the test machine
- Components wired the way ServiceContainer wires them, all running inline

Usage:
    def test_example(registry, gateway, broker):
        broker.deliver("sensors/plant-1/data", {...})
        assert registry.get("plant-1").online
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any
from unittest.mock import patch

import paho.mqtt.client as mqtt
import pytest

from infrastructure.database.repositories.telemetry import TelemetryRepository
from infrastructure.database.sqlite_handler import SQLiteDatabaseHandler
from plantcare.config import AppConfig
from plantcare.domain.device import Reading
from plantcare.domain.irrigation import IrrigationPolicy, QuietHours
from plantcare.services.container import ServiceContainer
from plantcare.services.decision_engine import IrrigationDecisionEngine
from plantcare.services.device_registry import DeviceRegistry
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.health_aggregator import HealthAggregator
from plantcare.services.plant_care_service import PlantCareService
from plantcare.services.transport_gateway import TransportGateway
from plantcare.utils.event_bus import EventBus
from plantcare.workers.unified_scheduler import UnifiedScheduler

# ---------------------------------------------------------------------------
# Logging — keep test output clean
# ---------------------------------------------------------------------------
logging.getLogger("infrastructure").setLevel(logging.WARNING)
logging.getLogger("plantcare").setLevel(logging.WARNING)


# ============================ Test doubles =================================


class FakeClock:
    """Manually advanced clock; pass it wherever a component takes ``clock``."""

    def __init__(self, start: datetime | None = None) -> None:
        self._now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward, e.g. ``clock.advance(minutes=6)``."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value



class FakeBroker:
    """In-memory stand-in for ``MQTTClientWrapper``.

    ``deliver()`` dispatches a message to matching subscribers exactly like the
    wrapper's fan-out; ``published`` records every accepted publish.
    """

    def __init__(self, connected: bool = True) -> None:
        self.connected = connected
        self.subscriptions: list[tuple[str, Any, int]] = []
        self.published: list[dict[str, Any]] = []
        self.health_status = SimpleNamespace(reconnect_attempt=0, gave_up=False)

    def is_connected(self) -> bool:
        return self.connected

    def subscribe(self, topic: str, callback: Any, qos: int = 0) -> None:
        self.subscriptions.append((topic, callback, qos))

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> bool:
        if not self.connected:
            return False
        self.published.append({"topic": topic, "payload": json.loads(payload), "qos": qos, "retain": retain})
        return True

    def deliver(self, topic: str, payload: Any) -> None:
        if isinstance(payload, (dict, list)):
            body = json.dumps(payload).encode()
        elif isinstance(payload, str):
            body = payload.encode()
        else:
            body = payload
        msg = SimpleNamespace(topic=topic, payload=body)
        for sub, callback, _qos in self.subscriptions:
            if mqtt.topic_matches_sub(sub, topic):
                callback(None, None, msg)

    def commands(self, command: str | None = None) -> list[dict[str, Any]]:
        return [
            p for p in self.published
            if p["topic"].startswith("commands/") and (command is None or p["topic"].endswith(f"/{command}"))
        ]


class EventRecorder:
    """Collects every payload published on the bus, keyed by event name."""

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self.events: dict[str, list[Any]] = defaultdict(list)

    def watch(self, *event_names: Any) -> "EventRecorder":
        for event_name in event_names:
            name = getattr(event_name, "value", event_name)
            self._bus.subscribe(name, lambda payload, _name=name: self.events[_name].append(payload))
        return self

    def __getitem__(self, event_name: Any) -> list[Any]:
        return self.events[getattr(event_name, "value", event_name)]


class FailingStore:
    """TelemetryStore whose every call raises."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("disk I/O error")

    def write_reading(self, device_id, reading):
        raise self.error

    def readings_since(self, device_id, since, limit=1000):
        raise self.error

    def write_irrigation_event(self, event):
        raise self.error

    def irrigation_events_since(self, since, *, device_id=None, limit=100):
        raise self.error

    def prune(self, before):
        raise self.error

    def ping(self):
        raise self.error


# ============================ Core fixtures ================================


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def event_bus():
    bus = EventBus(worker_count=0)
    yield bus
    bus.shutdown()


@pytest.fixture()
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture()
def policy():
    return IrrigationPolicy(
        moisture_min=30.0,
        moisture_max=80.0,
        duration_ms=10_000,
        max_activations_per_day=3,
        quiet_hours=QuietHours(22, 6),
        cooldown_ms=300_000,
    )


@pytest.fixture()
def broker():
    return FakeBroker()


@pytest.fixture()
def failing_store():
    return FailingStore()


@pytest.fixture(autouse=True)
def host_stats():
    """psutil as seen by the health aggregator: 40% memory, load 0.5 on 4 cores."""
    with patch("plantcare.services.health_aggregator.psutil") as fake:
        fake.virtual_memory.return_value = SimpleNamespace(percent=40.0, used=3276 * 1024 * 1024, total=8192 * 1024 * 1024)
        fake.getloadavg.return_value = (0.5, 0.4, 0.3)
        fake.cpu_count.return_value = 4
        fake.Process.return_value.memory_info.return_value = SimpleNamespace(rss=64 * 1024 * 1024)
        fake.Process.return_value.create_time.return_value = time.time() - 120
        yield fake


# ========================== Database Fixtures ==============================


@pytest.fixture()
def db_handler(tmp_path):
    """File-backed SQLite database with the telemetry tables created.

    A file path (not ``:memory:``) so the sink's probe thread sees the same data.
    """
    handler = SQLiteDatabaseHandler(str(tmp_path / "plantcare.db"))
    handler.init()
    yield handler
    handler.close_db()


@pytest.fixture()
def telemetry_repo(db_handler):
    return TelemetryRepository(db_handler)


@pytest.fixture()
def sink(telemetry_repo, clock):
    adapter = SinkAdapter(telemetry_repo, max_workers=0, clock=clock)
    yield adapter
    adapter.shutdown()


# ========================== Component Fixtures =============================


@pytest.fixture()
def registry(policy, event_bus, clock):
    return DeviceRegistry(
        default_policy=policy,
        event_bus=event_bus,
        clock=clock,
        staleness_window=timedelta(minutes=5),
    )


@pytest.fixture()
def gateway(broker, registry, sink, event_bus, clock):
    gw = TransportGateway(broker, registry, sink, event_bus=event_bus, clock=clock)
    gw.start()
    return gw


@pytest.fixture()
def scheduler(clock):
    sched = UnifiedScheduler(max_workers=0, clock=clock)
    yield sched
    sched.shutdown()


@pytest.fixture()
def engine(registry, gateway, sink, event_bus, scheduler, clock):
    return IrrigationDecisionEngine(
        registry,
        gateway,
        sink,
        event_bus=event_bus,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture()
def health(gateway, sink, engine, registry, event_bus, scheduler, clock):
    return HealthAggregator(
        gateway=gateway,
        sink=sink,
        engine=engine,
        registry=registry,
        event_bus=event_bus,
        scheduler=scheduler,
        clock=clock,
    )


@pytest.fixture()
def plant_care_service(registry, engine, health, sink, gateway, clock):
    return PlantCareService(
        registry=registry,
        engine=engine,
        health=health,
        sink=sink,
        gateway=gateway,
        clock=clock,
    )


@pytest.fixture()
def app_config(tmp_path):
    return AppConfig(
        environment="testing",
        log_dir=str(tmp_path / "logs"),
        database_path=str(tmp_path / "plantcare.db"),
        sink_worker_count=0,
        eventbus_worker_count=0,
        scheduler_max_workers=0,
        enable_mqtt=False,
    )


@pytest.fixture()
def container(app_config, broker, clock):
    built = ServiceContainer.build(app_config, mqtt_client=broker, clock=clock)
    yield built
    built.shutdown()


# ============================== Helpers ====================================


@pytest.fixture()
def seed(registry, clock):
    """Put a device online with the given soil moisture."""

    def _seed(device_id: str, moisture: float | None) -> None:
        registry.upsert_reading(
            device_id,
            Reading(observed_at=clock(), moisture=moisture, temperature=21.0, humidity=50.0),
        )

    return _seed
