from types import SimpleNamespace

import paho.mqtt.client as mqtt

from plantcare.hardware.mqtt.client_factory import create_mqtt_client, is_failure


def test_create_mqtt_client_uses_v311_and_version2_callbacks():
    client = create_mqtt_client("factory-test")

    assert getattr(client, "_client_id", b"").decode() == "factory-test"
    assert getattr(client, "_protocol", None) in (4, getattr(mqtt, "MQTTv311", 4))
    assert getattr(client, "_callback_api_version", None) == mqtt.CallbackAPIVersion.VERSION2
    assert hasattr(client, "connect")


def test_is_failure_handles_reason_codes_and_legacy_ints():
    assert is_failure(SimpleNamespace(is_failure=True))
    assert not is_failure(SimpleNamespace(is_failure=False))
    assert not is_failure(0)
    assert is_failure(5)
