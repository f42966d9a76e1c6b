from datetime import timedelta

import pytest

from plantcare.domain.exceptions import ConflictError, DeviceError, NotFoundError, ValidationError


def test_list_and_get_devices(plant_care_service, seed, registry):
    seed("plant-1", 18.0)
    registry.register("plant-2", display_name="Fern")

    devices = plant_care_service.list_devices()

    assert [d["id"] for d in devices] == ["plant-1", "plant-2"]
    assert devices[0]["needs_water"] is True
    assert plant_care_service.get_device("plant-2")["display_name"] == "Fern"
    with pytest.raises(NotFoundError):
        plant_care_service.get_device("ghost")


def test_update_policy_pushes_config_to_device(plant_care_service, seed, broker):
    seed("plant-1", 40.0)

    device = plant_care_service.update_policy("plant-1", {"moistureMin": 35, "cooldownMs": 60_000})

    assert device["config"]["moisture_min"] == 35.0
    pushed = broker.commands("config")
    assert pushed[0]["topic"] == "commands/plant-1/config"
    assert pushed[0]["payload"]["config"]["cooldown_ms"] == 60_000


def test_update_policy_kept_when_push_fails(plant_care_service, seed, broker, registry):
    seed("plant-1", 40.0)
    broker.connected = False

    plant_care_service.update_policy("plant-1", {"duration_ms": 8000})

    assert registry.get("plant-1").config.duration_ms == 8000


def test_manual_irrigation_success_returns_decision(plant_care_service, seed, broker):
    seed("plant-1", 60.0)

    result = plant_care_service.request_manual_irrigation("plant-1", duration_ms=3000)

    assert result["permitted"] is True
    assert result["duration_ms"] == 3000
    assert result["trigger_type"] == "manual"
    assert len(broker.commands("water")) == 1


def test_manual_irrigation_in_cooldown_is_conflict(plant_care_service, seed):
    seed("plant-1", 60.0)
    plant_care_service.request_manual_irrigation("plant-1")

    with pytest.raises(ConflictError) as exc_info:
        plant_care_service.request_manual_irrigation("plant-1")

    assert exc_info.value.detail["reason"] == "cooldown"
    assert exc_info.value.detail["device_id"] == "plant-1"
    assert exc_info.value.http_status == 409


def test_manual_irrigation_transport_down_is_device_error(plant_care_service, seed, broker):
    seed("plant-1", 60.0)
    broker.connected = False

    with pytest.raises(DeviceError) as exc_info:
        plant_care_service.request_manual_irrigation("plant-1")

    assert exc_info.value.detail["reason"] == "transport_unavailable"
    assert exc_info.value.http_status == 503


def test_schedule_irrigation_validates_time(plant_care_service, seed, clock):
    seed("plant-1", 60.0)

    with pytest.raises(ValidationError):
        plant_care_service.schedule_irrigation("plant-1", "not-a-date")
    with pytest.raises(ValidationError):
        plant_care_service.schedule_irrigation("plant-1", clock() - timedelta(minutes=1))

    run_at = (clock() + timedelta(hours=1)).isoformat().replace("+00:00", "Z")
    job = plant_care_service.schedule_irrigation("plant-1", run_at, 4000)
    assert job["device_id"] == "plant-1"
    assert job["run_at"] == (clock() + timedelta(hours=1)).isoformat()
    assert job["job_id"].startswith("irrigation_scheduled_plant-1_")


def test_recent_events_and_readings(plant_care_service, gateway, broker, engine, clock):
    broker.deliver("sensors/plant-1/data", {"temperature": 21.0, "humidity": 50.0, "moisture": 18.0})
    engine.run_tick()

    events = plant_care_service.recent_irrigation_events("plant-1")
    readings = plant_care_service.recent_readings("plant-1")

    assert [e["trigger_type"] for e in events] == ["automatic"]
    assert readings[0]["moisture"] == 18.0
    assert len(plant_care_service.recent_irrigation_events()) == 1
    with pytest.raises(NotFoundError):
        plant_care_service.recent_readings("ghost")
    with pytest.raises(NotFoundError):
        plant_care_service.recent_irrigation_events("ghost")


def test_health_and_automation_views(plant_care_service):
    snapshot = plant_care_service.get_health_snapshot()
    assert snapshot["overall"] == "unhealthy"
    assert snapshot["components"]["automation"]["status"] == "unhealthy"

    history = plant_care_service.health_history(10)
    assert history["trend"]["samples"] == 1
    assert history["history"][0]["overall"] == "unhealthy"

    status = plant_care_service.automation_status()
    assert status["running"] is False
    assert status["enabled"] is True
