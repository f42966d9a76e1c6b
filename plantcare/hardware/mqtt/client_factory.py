"""
Helpers for constructing paho-mqtt clients.

The core targets paho-mqtt 2.x with the VERSION2 callback API. Automatic
reconnection inside paho is disabled: ``MQTTClientWrapper`` owns the retry
policy (fixed interval, bounded attempts).
"""
from __future__ import annotations

from typing import Any, Dict

import paho.mqtt.client as mqtt


def create_mqtt_client(client_id: str = "", **kwargs: Any) -> mqtt.Client:
    """
    Build an MQTT v3.1.1 client with the VERSION2 callback signatures.

    Args:
        client_id: Optional client identifier.
        kwargs: Extra keyword arguments forwarded to the client constructor.
    """
    client_kwargs: Dict[str, Any] = {
        "callback_api_version": mqtt.CallbackAPIVersion.VERSION2,
        "client_id": client_id or "",
        "protocol": kwargs.pop("protocol", mqtt.MQTTv311),
        "reconnect_on_failure": kwargs.pop("reconnect_on_failure", False),
    }
    client_kwargs.update(kwargs)
    return mqtt.Client(**client_kwargs)


def is_failure(reason_code: Any) -> bool:
    """True when a CONNACK/DISCONNECT reason code (or legacy int rc) signals failure."""
    flag = getattr(reason_code, "is_failure", None)
    if flag is not None:
        return bool(flag)
    return int(reason_code) != 0
