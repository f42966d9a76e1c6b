from datetime import timedelta
from types import SimpleNamespace

import pytest

from plantcare.enums.common import AlertSeverity, HealthLevel
from plantcare.enums.events import SystemEvent
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.health_aggregator import HEALTH_JOB_ID, HealthAggregator


@pytest.fixture()
def running_health(health, engine, scheduler):
    """Aggregator whose decision tick is registered on a running scheduler."""
    engine.register_scheduled_tasks()
    scheduler.start()
    yield health
    scheduler.stop()


def test_all_components_healthy(running_health, seed):
    seed("plant-1", 50.0)

    snapshot = running_health.snapshot()

    assert snapshot.overall is HealthLevel.HEALTHY
    assert set(snapshot.components) == {"transport", "storage", "automation", "devices", "system"}
    assert snapshot.alerts == []
    assert "latency_ms" in snapshot.components["storage"].detail


def test_broker_down_is_unhealthy_with_critical_transport_alert(running_health, broker):
    broker.connected = False

    snapshot = running_health.snapshot()

    assert snapshot.overall is HealthLevel.UNHEALTHY
    assert snapshot.components["transport"].status is HealthLevel.UNHEALTHY
    alert = snapshot.alerts[0]
    assert alert.component == "transport"
    assert alert.severity is AlertSeverity.CRITICAL
    assert alert.message == "broker disconnected"


def test_transport_message_reports_reconnect_progress(running_health, broker):
    broker.connected = False
    broker.health_status.reconnect_attempt = 3
    assert running_health.snapshot().components["transport"].detail["message"].endswith("attempt 3")

    broker.health_status.gave_up = True
    assert "exhausted" in running_health.snapshot().components["transport"].detail["message"]


def test_automation_unhealthy_when_tick_not_scheduled(health):
    snapshot = health.snapshot()

    assert snapshot.components["automation"].status is HealthLevel.UNHEALTHY
    assert snapshot.overall is HealthLevel.UNHEALTHY


def test_offline_devices_degrade_and_warnings_follow_criticals(running_health, registry, broker):
    registry.register("silent")

    snapshot = running_health.snapshot()
    assert snapshot.overall is HealthLevel.DEGRADED
    assert snapshot.alerts[0].severity is AlertSeverity.WARNING
    assert "offline" in snapshot.alerts[0].message

    broker.connected = False
    snapshot = running_health.snapshot()
    assert [a.severity for a in snapshot.alerts] == [AlertSeverity.CRITICAL, AlertSeverity.WARNING]


def test_majority_moisture_deficit_degrades(running_health, seed):
    seed("a", 10.0)
    seed("b", 12.0)
    seed("c", 60.0)

    devices = running_health.snapshot().components["devices"]

    assert devices.status is HealthLevel.DEGRADED
    assert devices.detail["deficient_fraction"] == pytest.approx(0.667)


def test_storage_failure_is_unhealthy(gateway, engine, registry, event_bus, scheduler, clock, failing_store):
    sink = SinkAdapter(failing_store, max_workers=0, clock=clock)
    health = HealthAggregator(
        gateway=gateway, sink=sink, engine=engine, registry=registry, event_bus=event_bus, clock=clock
    )

    storage = health.snapshot().components["storage"]

    assert storage.status is HealthLevel.UNHEALTHY
    assert "disk I/O error" in storage.detail["message"]


def test_latency_above_threshold_is_unhealthy(gateway, sink, engine, registry, clock):
    health = HealthAggregator(
        gateway=gateway, sink=sink, engine=engine, registry=registry, clock=clock, latency_threshold_ms=-1.0
    )

    assert health.snapshot().components["storage"].status is HealthLevel.UNHEALTHY


def _memory(percent):
    total = 8192 * 1024 * 1024
    return SimpleNamespace(percent=percent, used=int(total * percent / 100), total=total)


def test_system_resources_within_limits(running_health, seed):
    seed("plant-1", 50.0)

    system = running_health.snapshot().components["system"]

    assert system.status is HealthLevel.HEALTHY
    assert system.detail["memory"]["usage_percent"] == 40.0
    assert system.detail["memory"]["process_rss_mb"] == 64.0
    assert system.detail["cpu"]["load_percent"] == 12.5
    assert system.detail["cpu"]["cores"] == 4
    assert "message" not in system.detail


@pytest.mark.parametrize(
    ("memory_percent", "load_1m", "expected", "message"),
    [
        (75.0, 0.5, HealthLevel.DEGRADED, "Elevated memory usage: 75.0%"),
        (95.0, 0.5, HealthLevel.UNHEALTHY, "High memory usage: 95.0%"),
        (40.0, 2.8, HealthLevel.DEGRADED, "Elevated CPU load: 70.0%"),
        (40.0, 3.6, HealthLevel.UNHEALTHY, "High CPU load: 90.0%"),
    ],
)
def test_system_resource_thresholds(running_health, seed, host_stats, memory_percent, load_1m, expected, message):
    seed("plant-1", 50.0)
    host_stats.virtual_memory.return_value = _memory(memory_percent)
    host_stats.getloadavg.return_value = (load_1m, 1.0, 1.0)

    snapshot = running_health.snapshot()

    system = snapshot.components["system"]
    assert system.status is expected
    assert system.detail["message"] == message
    assert snapshot.overall is expected
    severity = AlertSeverity.CRITICAL if expected is HealthLevel.UNHEALTHY else AlertSeverity.WARNING
    assert [(a.component, a.severity) for a in snapshot.alerts] == [("system", severity)]


def test_system_thresholds_are_configurable(gateway, sink, engine, registry, clock, host_stats):
    host_stats.virtual_memory.return_value = _memory(60.0)
    health = HealthAggregator(
        gateway=gateway, sink=sink, engine=engine, registry=registry, clock=clock, memory_threshold_pct=50.0
    )

    system = health.snapshot().components["system"]

    assert system.status is HealthLevel.UNHEALTHY
    assert system.detail["message"] == "High memory usage: 60.0%"


def test_system_resource_error_is_isolated(running_health, seed, host_stats):
    seed("plant-1", 50.0)
    host_stats.getloadavg.side_effect = OSError("loadavg unavailable")

    snapshot = running_health.snapshot()

    assert snapshot.components["system"].status is HealthLevel.UNHEALTHY
    assert "loadavg unavailable" in snapshot.components["system"].detail["message"]
    assert snapshot.components["devices"].status is HealthLevel.HEALTHY


def test_probe_exception_is_isolated(running_health, registry, monkeypatch):
    def explode():
        raise RuntimeError("summary broke")

    monkeypatch.setattr(registry, "summary", explode)

    snapshot = running_health.snapshot()

    assert snapshot.components["devices"].status is HealthLevel.UNHEALTHY
    assert snapshot.components["transport"].status is HealthLevel.HEALTHY
    assert "summary broke" in snapshot.components["devices"].detail["message"]


def test_health_changed_emitted_only_on_transition(running_health, broker, recorder, clock):
    recorder.watch(SystemEvent.HEALTH_CHANGED)

    running_health.snapshot()
    running_health.snapshot()
    assert recorder[SystemEvent.HEALTH_CHANGED] == []

    broker.connected = False
    clock.advance(seconds=60)
    running_health.snapshot()

    change = recorder[SystemEvent.HEALTH_CHANGED][0]
    assert change["previous"] == "healthy"
    assert change["current"] == "unhealthy"
    assert change["alerts"][0]["component"] == "transport"


def test_history_and_trend(running_health, broker, clock):
    running_health.snapshot()
    clock.advance(seconds=60)
    broker.connected = False
    running_health.snapshot()
    clock.advance(seconds=60)
    running_health.snapshot()

    history = running_health.history()
    assert [h.overall for h in history] == [HealthLevel.HEALTHY, HealthLevel.UNHEALTHY, HealthLevel.UNHEALTHY]
    assert len(running_health.history(limit=2)) == 2
    assert running_health.history(limit=0) == []

    trend = running_health.trend()
    assert trend["samples"] == 3
    assert trend["counts"] == {"healthy": 1, "degraded": 0, "unhealthy": 2}
    assert trend["current"] == "unhealthy"
    assert trend["since"] == (clock() - timedelta(seconds=120)).isoformat()


def test_history_is_bounded(gateway, sink, engine, registry, clock):
    health = HealthAggregator(gateway=gateway, sink=sink, engine=engine, registry=registry, clock=clock, history_size=3)
    for _ in range(5):
        health.snapshot()

    assert len(health.history()) == 3


def test_register_scheduled_tasks(health, scheduler, clock):
    health.register_scheduled_tasks()
    clock.advance(seconds=60)
    scheduler.run_pending()

    assert scheduler.get_job(HEALTH_JOB_ID).run_count == 1
    assert len(health.history()) == 1
