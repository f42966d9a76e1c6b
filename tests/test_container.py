import dataclasses
import json

import pytest

from plantcare.domain.exceptions import ConfigurationError
from plantcare.enums.common import HealthLevel
from plantcare.services.container import ServiceContainer
from plantcare.services.decision_engine import TICK_JOB_ID
from plantcare.services.health_aggregator import HEALTH_JOB_ID


def _write(tmp_path, entries):
    path = tmp_path / "devices.json"
    path.write_text(json.dumps(entries), encoding="utf-8")
    return str(path)


def test_build_wires_shared_components(container, broker):
    assert container.gateway.mqtt_client is broker
    assert container.database is not None
    assert container.plant_care_service is not None
    assert container.registry.staleness_window.total_seconds() == 300


def test_load_devices_file_registers_and_skips_bad_entries(container, tmp_path):
    path = _write(
        tmp_path,
        [
            {"id": "plant-1", "name": "Basil", "location": "Kitchen"},
            {"id": "plant-2", "config": {"moistureMin": 40, "durationMs": 5000}},
            {"id": "plant-3", "config": {"moistureMin": 95}},
            {"name": "no id"},
        ],
    )

    assert container.load_devices_file(path) == 2

    registry = container.registry
    assert registry.ids() == ["plant-1", "plant-2"]
    assert registry.get("plant-1").display_name == "Basil"
    assert registry.get("plant-1").location_label == "Kitchen"
    plant_2 = registry.get("plant-2").config
    assert (plant_2.moisture_min, plant_2.duration_ms, plant_2.moisture_max) == (40.0, 5000, 80.0)
    assert not registry.get("plant-1").online


def test_missing_devices_file_is_not_fatal(container, tmp_path):
    assert container.load_devices_file(str(tmp_path / "absent.json")) == 0
    assert container.load_devices_file("") == 0


def test_unreadable_devices_file_raises(container, tmp_path):
    path = tmp_path / "devices.json"
    path.write_text("{broken", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        container.load_devices_file(str(path))

    with pytest.raises(ConfigurationError):
        container.load_devices_file(_write(tmp_path, {"id": "plant-1"}))


def test_start_registers_periodic_jobs(container, broker):
    container.start()
    container.start()

    scheduler = container.scheduler
    job_ids = {job.job_id for job in scheduler.get_jobs()}
    assert {"registry_sweep", "storage_retention_prune", TICK_JOB_ID, HEALTH_JOB_ID} <= job_ids
    assert scheduler.is_running()
    assert len(broker.subscriptions) == 3
    assert container.status()["scheduler"]["running"] is True


def test_sweep_job_marks_devices_offline(container, broker, clock):
    container.start()
    broker.deliver("devices/plant-1/heartbeat", {})

    clock.advance(minutes=6)
    container.scheduler.run_pending()

    assert not container.registry.get("plant-1").online


def test_shutdown_is_idempotent(app_config, broker, clock):
    container = ServiceContainer.build(app_config, mqtt_client=broker, clock=clock)
    container.start()

    container.shutdown()
    container.shutdown()

    assert not container.scheduler.is_running()


def test_shutdown_disconnects_real_wrapper(app_config, clock):
    container = ServiceContainer.build(app_config, clock=clock)
    container.shutdown()

    assert container.mqtt_client.health_status.is_connected is False


def test_resource_thresholds_reach_health_aggregator(app_config, broker, clock, host_stats):
    host_stats.virtual_memory.return_value.percent = 60.0
    config = dataclasses.replace(app_config, memory_threshold_pct=50.0)
    container = ServiceContainer.build(config, mqtt_client=broker, clock=clock)
    try:
        system = container.health.snapshot().components["system"]
    finally:
        container.shutdown()

    assert system.status is HealthLevel.UNHEALTHY
