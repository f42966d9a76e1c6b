from datetime import timedelta

import pytest

from plantcare import create_app

TELEMETRY = {"temperature": 22.0, "humidity": 48.0, "moisture": 18.0}


@pytest.fixture()
def app(container):
    container.start()
    flask_app = create_app(container=container)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def device(broker):
    broker.deliver("sensors/plant-1/data", TELEMETRY)
    return "plant-1"


def test_ping(client):
    response = client.get("/api/health/ping")
    assert response.status_code == 200
    assert response.get_json()["data"]["status"] == "ok"


def test_health_snapshot_envelope(client):
    body = client.get("/api/health").get_json()

    assert body["ok"] is True
    assert body["error"] is None
    assert body["data"]["overall"] == "healthy"
    assert list(body["data"]["components"]) == ["transport", "storage", "automation", "devices", "system"]


def test_health_history(client):
    client.get("/api/health")
    client.get("/api/health")

    data = client.get("/api/health/history?limit=1").get_json()["data"]

    assert len(data["history"]) == 1
    assert data["trend"]["samples"] == 2
    assert client.get("/api/health/history?limit=abc").status_code == 400


def test_list_and_get_device(client, device):
    devices = client.get("/api/devices").get_json()["data"]
    assert [d["id"] for d in devices] == ["plant-1"]
    assert devices[0]["connectivity"]["online"] is True

    detail = client.get("/api/devices/plant-1").get_json()["data"]
    assert detail["last_reading"]["moisture"] == 18.0


def test_unknown_device_is_404(client):
    response = client.get("/api/devices/ghost")
    body = response.get_json()

    assert response.status_code == 404
    assert body["ok"] is False
    assert body["error"]["device_id"] == "ghost"


def test_patch_device_details(client, device):
    response = client.patch("/api/devices/plant-1", json={"name": "Basil", "location": "Kitchen"})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert (data["display_name"], data["location_label"]) == ("Basil", "Kitchen")


def test_get_and_put_config(client, device, broker):
    assert client.get("/api/devices/plant-1/config").get_json()["data"]["moisture_min"] == 30.0

    response = client.put("/api/devices/plant-1/config", json={"moistureMin": 25, "durationMs": 8000})

    assert response.status_code == 200
    config = response.get_json()["data"]
    assert config["moisture_min"] == 25.0
    assert config["duration_ms"] == 8000
    assert broker.commands("config")


def test_put_config_rejects_invalid_merge(client, device):
    response = client.put("/api/devices/plant-1/config", json={"moisture_min": 90})

    assert response.status_code == 400
    errors = response.get_json()["details"]["errors"]
    assert any("moisture_min must be lower" in e for e in errors)
    assert client.get("/api/devices/plant-1/config").get_json()["data"]["moisture_min"] == 30.0


def test_put_config_rejects_wrong_types(client, device):
    response = client.put("/api/devices/plant-1/config", json={"moistureMin": "dry"})
    assert response.status_code == 400


def test_manual_water_then_cooldown_conflict(client, device, broker):
    first = client.post("/api/devices/plant-1/water", json={"durationMs": 4000})
    assert first.status_code == 202
    assert first.get_json()["data"]["duration_ms"] == 4000
    assert broker.commands("water")[0]["payload"]["duration"] == 4000

    second = client.post("/api/devices/plant-1/water", json={})
    assert second.status_code == 409
    assert second.get_json()["details"]["reason"] == "cooldown"


def test_manual_water_rejects_out_of_range_duration(client, device):
    response = client.post("/api/devices/plant-1/water", json={"durationMs": 60_000})
    assert response.status_code == 400


def test_manual_water_transport_down(client, device, broker):
    broker.connected = False

    response = client.post("/api/devices/plant-1/water")

    assert response.status_code == 503
    assert response.get_json()["details"]["reason"] == "transport_unavailable"


def test_schedule_irrigation(client, device, clock, container):
    run_at = (clock() + timedelta(hours=2)).isoformat()

    response = client.post("/api/devices/plant-1/schedule", json={"runAt": run_at, "durationMs": 5000})

    assert response.status_code == 201
    job_id = response.get_json()["data"]["job_id"]
    assert container.scheduler.get_job(job_id) is not None

    past = (clock() - timedelta(hours=2)).isoformat()
    assert client.post("/api/devices/plant-1/schedule", json={"runAt": past}).status_code == 400


def test_events_and_readings(client, device, container):
    container.engine.run_tick()

    events = client.get("/api/devices/plant-1/events?days=1").get_json()["data"]
    assert events["count"] == 1
    assert events["events"][0]["success"] is True

    readings = client.get("/api/devices/plant-1/readings?hours=1").get_json()["data"]
    assert readings["count"] == 1

    assert client.get("/api/devices/plant-1/events?days=365").status_code == 400
    assert client.get("/api/devices/ghost/readings").status_code == 404


def test_automation_status(client):
    data = client.get("/api/automation").get_json()["data"]
    assert data["running"] is True
    assert data["interval_seconds"] == 300


def test_unknown_api_route_uses_envelope(client):
    response = client.get("/api/nope")
    assert response.status_code == 404
    assert response.get_json()["ok"] is False
