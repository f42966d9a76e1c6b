from datetime import timedelta

from plantcare.enums.events import DeviceEvent

TELEMETRY = {"temperature": 23.5, "humidity": 55.0, "moisture": 18.0}


def test_gateway_subscribes_three_topic_classes_once(gateway, broker):
    gateway.start()

    assert [(topic, qos) for topic, _cb, qos in broker.subscriptions] == [
        ("sensors/+/data", 1),
        ("sensors/+/status", 1),
        ("devices/+/heartbeat", 0),
    ]


def test_valid_telemetry_updates_registry_storage_and_bus(gateway, broker, registry, sink, recorder, clock):
    recorder.watch(DeviceEvent.READING_RECEIVED)

    broker.deliver("sensors/plant-1/data", {**TELEMETRY, "light": 800})

    device = registry.get("plant-1")
    assert device.online
    assert device.moisture == 18.0
    assert device.last_reading.light == 800
    assert device.last_reading.observed_at == clock()

    stored = sink.query_recent("plant-1", timedelta(hours=1))
    assert [r.moisture for r in stored] == [18.0]

    event = recorder[DeviceEvent.READING_RECEIVED][0]
    assert event["device_id"] == "plant-1"
    assert event["moisture"] == 18.0
    assert gateway.get_stats()["readings_accepted"] == 1


def test_out_of_range_telemetry_leaves_state_unchanged(gateway, broker, registry, sink):
    broker.deliver("sensors/plant-1/data", TELEMETRY)

    broker.deliver("sensors/plant-1/data", {**TELEMETRY, "temperature": 150, "moisture": 90})

    assert registry.get("plant-1").moisture == 18.0
    assert len(sink.query_recent("plant-1", timedelta(hours=1))) == 1
    stats = gateway.get_stats()
    assert stats["validation_errors"] == 1
    assert "temperature" in stats["last_error"]


def test_invalid_telemetry_does_not_provision_unknown_device(gateway, broker, registry):
    broker.deliver("sensors/ghost/data", {"temperature": "23.5", "humidity": 55, "moisture": 18})

    assert "ghost" not in registry


def test_malformed_json_is_counted_and_dropped(gateway, broker, registry):
    broker.deliver("sensors/plant-1/data", b"{not json")
    broker.deliver("sensors/plant-1/data", b"\xff\xfe")
    broker.deliver("sensors/plant-1/data", "[1, 2, 3]")

    assert len(registry) == 0
    assert gateway.get_stats()["decode_errors"] == 3


def test_unroutable_topic_is_counted(gateway, registry):
    gateway._on_message(None, None, type("Msg", (), {"topic": "sensors/plant-1/data/extra", "payload": b"{}"})())
    gateway._on_message(None, None, type("Msg", (), {"topic": "devices/plant-1/data", "payload": b"{}"})())

    assert gateway.get_stats()["unroutable"] == 2
    assert len(registry) == 0


def test_status_message_updates_connectivity(gateway, broker, registry):
    broker.deliver("sensors/plant-1/status", {"status": "online", "battery": 64, "rssi": -70, "firmware": "1.2"})

    connectivity = registry.get("plant-1").connectivity
    assert connectivity.online
    assert connectivity.battery_level == 64
    assert connectivity.signal_quality == -70
    assert connectivity.attributes == {"firmware": "1.2"}


def test_offline_status_does_not_count_as_contact(gateway, broker, registry):
    broker.deliver("sensors/plant-1/status", {"status": "offline"})

    device = registry.get("plant-1")
    assert not device.online
    assert device.connectivity.reported_status == "offline"


def test_heartbeat_accepts_empty_payload(gateway, broker, registry, recorder):
    recorder.watch(DeviceEvent.HEARTBEAT)

    broker.deliver("devices/plant-1/heartbeat", b"")
    broker.deliver("devices/plant-2/heartbeat", {"batteryLevel": 90})

    assert registry.get("plant-1").online
    assert registry.get("plant-2").connectivity.battery_level == 90
    assert [e["device_id"] for e in recorder[DeviceEvent.HEARTBEAT]] == ["plant-1", "plant-2"]
    assert gateway.get_stats()["heartbeats"] == 2


def test_firmware_heartbeat_reports_wifi_rssi(gateway, broker, registry):
    broker.deliver(
        "devices/plant-1/heartbeat",
        {"device_id": "plant-1", "timestamp": 91234, "status": "online", "wifi_rssi": -67, "free_heap": 182000},
    )
    broker.deliver("sensors/plant-2/status", {"status": "online", "ip_address": "10.0.0.7", "wifi_rssi": -71})

    assert registry.get("plant-1").connectivity.signal_quality == -67
    assert registry.get("plant-2").connectivity.signal_quality == -71


def test_handler_error_never_escapes(gateway, broker, registry, monkeypatch):
    def explode(*_args, **_kwargs):
        raise RuntimeError("registry exploded")

    monkeypatch.setattr(registry, "upsert_reading", explode)

    broker.deliver("sensors/plant-1/data", TELEMETRY)

    assert gateway.get_stats()["handler_errors"] == 1


def test_publish_command_topic_body_and_qos(gateway, broker, clock):
    assert gateway.publish_command("plant-1", "water", duration_ms=10_000) is True

    sent = broker.commands("water")[0]
    assert sent["topic"] == "commands/plant-1/water"
    assert sent["qos"] == 1
    assert sent["payload"] == {"command": "water", "duration": 10_000, "timestamp": clock().isoformat()}
    assert gateway.get_stats()["publishes_ok"] == 1


def test_publish_config_sends_policy(gateway, broker, policy):
    gateway.publish_config("plant-1", policy)

    sent = broker.commands("config")[0]
    assert sent["payload"]["config"] == policy.to_dict()
    assert "duration" not in sent["payload"]


def test_publish_while_disconnected_returns_false(gateway, broker):
    broker.connected = False

    assert gateway.publish_command("plant-1", "water", duration_ms=5000) is False
    assert not gateway.is_connected()
    stats = gateway.get_stats()
    assert stats["publishes_failed"] == 1
    assert stats["gave_up"] is False
