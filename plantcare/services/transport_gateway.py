"""
Transport Gateway
=================

Routes inbound MQTT traffic into the device registry and the telemetry sink,
and publishes device commands.

Topic classes (``+`` is the device id)::

    sensors/+/data        telemetry   (QoS 1)
    sensors/+/status      status      (QoS 1)
    devices/+/heartbeat   heartbeat   (QoS 0)

The message callback runs on paho's network thread and never raises: bad
JSON, schema violations and unknown topics are logged, counted and dropped
without touching device state.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from plantcare.constants import (
    COMMAND_QOS,
    COMMAND_TOPIC_TEMPLATE,
    HEARTBEAT_QOS,
    HEARTBEAT_TOPIC,
    STATUS_QOS,
    STATUS_TOPIC,
    TELEMETRY_QOS,
    TELEMETRY_TOPIC,
)
from plantcare.domain.device import Reading
from plantcare.domain.irrigation import IrrigationPolicy
from plantcare.enums.common import CommandType
from plantcare.enums.events import DeviceEvent
from plantcare.schemas.commands import CommandPayload
from plantcare.schemas.events import ReadingReceivedPayload
from plantcare.schemas.telemetry import HeartbeatPayload, StatusPayload, TelemetryPayload
from plantcare.services.device_registry import DeviceRegistry, validation_messages
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.protocols import BrokerClient
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import Clock, utc_now

logger = logging.getLogger(__name__)


@dataclass
class GatewayStats:
    messages_received: int = 0
    readings_accepted: int = 0
    status_updates: int = 0
    heartbeats: int = 0
    decode_errors: int = 0
    validation_errors: int = 0
    unroutable: int = 0
    handler_errors: int = 0
    publishes_ok: int = 0
    publishes_failed: int = 0
    last_error: str | None = None
    last_error_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages_received": self.messages_received,
            "readings_accepted": self.readings_accepted,
            "status_updates": self.status_updates,
            "heartbeats": self.heartbeats,
            "decode_errors": self.decode_errors,
            "validation_errors": self.validation_errors,
            "unroutable": self.unroutable,
            "handler_errors": self.handler_errors,
            "publishes_ok": self.publishes_ok,
            "publishes_failed": self.publishes_failed,
            "last_error": self.last_error,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
        }


class TransportGateway:
    """MQTT ingress router and command publisher."""

    def __init__(
        self,
        mqtt_client: BrokerClient,
        registry: DeviceRegistry,
        sink: SinkAdapter,
        *,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.mqtt_client = mqtt_client
        self.registry = registry
        self.sink = sink
        self.event_bus = event_bus
        self._clock = clock
        self._lock = threading.Lock()
        self.stats = GatewayStats()
        self._subscribed = False

    def start(self) -> None:
        """Register the three topic classes with the broker client (idempotent)."""
        if self._subscribed:
            return
        topics = (
            (TELEMETRY_TOPIC, TELEMETRY_QOS),
            (STATUS_TOPIC, STATUS_QOS),
            (HEARTBEAT_TOPIC, HEARTBEAT_QOS),
        )
        for topic, qos in topics:
            self.mqtt_client.subscribe(topic, self._on_message, qos)
        self._subscribed = True
        logger.info("Transport gateway listening on %s", ", ".join(t for t, _ in topics))

    def is_connected(self) -> bool:
        return bool(self.mqtt_client.is_connected())

    # ------------------------------------------------------------------ ingress

    def _on_message(self, client: Any, userdata: Any, msg: Any) -> None:
        """
        Central router for device traffic.

        Guaranteed not to raise; the MQTT loop must survive any payload.
        """
        topic = str(getattr(msg, "topic", ""))
        payload = getattr(msg, "payload", b"") or b""
        self._count("messages_received")

        try:
            parts = topic.split("/")
            if len(parts) != 3 or not parts[1]:
                self._unroutable(topic)
                return
            root, device_id, leaf = parts

            if root == "sensors" and leaf == "data":
                self._handle_telemetry(device_id, payload)
            elif root == "sensors" and leaf == "status":
                self._handle_status(device_id, payload)
            elif root == "devices" and leaf == "heartbeat":
                self._handle_heartbeat(device_id, payload)
            else:
                self._unroutable(topic)
        except Exception as exc:
            logger.exception("Gateway routing error topic=%s: %s", topic, exc)
            self._failure("handler_errors", f"{topic}: {exc}")

    def _handle_telemetry(self, device_id: str, payload: bytes) -> None:
        data = self._parse_json(payload, device_id=device_id, kind="telemetry")
        if data is None:
            return
        try:
            telemetry = TelemetryPayload.model_validate(data)
        except PydanticValidationError as exc:
            self._invalid(device_id, "telemetry", exc)
            return

        reading = Reading(
            observed_at=self._clock(),
            moisture=telemetry.moisture,
            temperature=telemetry.temperature,
            humidity=telemetry.humidity,
            light=telemetry.light,
        )
        self.registry.upsert_reading(device_id, reading)
        self._count("readings_accepted")
        # Storage is independent of the registry update and never awaited.
        self.sink.write_reading(device_id, reading)

        if self.event_bus is not None:
            self.event_bus.publish(
                DeviceEvent.READING_RECEIVED,
                ReadingReceivedPayload(device_id=device_id, **reading.to_dict()),
            )

    def _handle_status(self, device_id: str, payload: bytes) -> None:
        data = self._parse_json(payload, device_id=device_id, kind="status")
        if data is None:
            return
        try:
            status = StatusPayload.model_validate(data)
        except PydanticValidationError as exc:
            self._invalid(device_id, "status", exc)
            return
        self.registry.upsert_status(device_id, status)
        self._count("status_updates")

    def _handle_heartbeat(self, device_id: str, payload: bytes) -> None:
        data = self._parse_json(payload, device_id=device_id, kind="heartbeat", allow_empty=True)
        if data is None:
            return
        try:
            meta = HeartbeatPayload.model_validate(data)
        except PydanticValidationError as exc:
            self._invalid(device_id, "heartbeat", exc)
            return
        self.registry.touch_heartbeat(device_id, meta)
        self._count("heartbeats")

    def _parse_json(
        self,
        payload: bytes,
        *,
        device_id: str,
        kind: str,
        allow_empty: bool = False,
    ) -> dict[str, Any] | None:
        """Safely decodes an MQTT payload into a JSON object."""
        if allow_empty and not payload.strip():
            return {}
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.error("Invalid JSON %s from %s: %s", kind, device_id, exc)
            self._failure("decode_errors", f"{kind} from {device_id}: {exc}")
            return None
        if not isinstance(data, dict):
            logger.warning("Dropped non-object %s payload from %s", kind, device_id)
            self._failure("decode_errors", f"{kind} from {device_id}: not a JSON object")
            return None
        return data

    def _invalid(self, device_id: str, kind: str, exc: PydanticValidationError) -> None:
        messages = validation_messages(exc)
        logger.warning("Dropped invalid %s from %s: %s", kind, device_id, "; ".join(messages))
        self._failure("validation_errors", f"{kind} from {device_id}: {messages[0] if messages else exc}")

    def _unroutable(self, topic: str) -> None:
        logger.warning("Unroutable MQTT topic: %s", topic)
        self._count("unroutable")

    # ------------------------------------------------------------------- egress

    def publish_command(
        self,
        device_id: str,
        command: str,
        *,
        duration_ms: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> bool:
        """
        Publish ``commands/<device_id>/<command>`` at QoS 1.

        Returns:
            False when the broker connection is down or the publish was
            refused. Never raises.
        """
        topic = COMMAND_TOPIC_TEMPLATE.format(device_id=device_id, command=command)
        body = CommandPayload(
            command=command,
            duration=duration_ms,
            config=config,
            timestamp=self._clock().isoformat(),
        )
        ok = self.mqtt_client.publish(topic, body.to_json(), qos=COMMAND_QOS)
        if ok:
            self._count("publishes_ok")
            logger.info("Sent %s command to %s", command, device_id)
        else:
            self._failure("publishes_failed", f"publish {topic} failed")
            logger.warning("Could not send %s command to %s (transport unavailable)", command, device_id)
        return bool(ok)

    def publish_config(self, device_id: str, policy: IrrigationPolicy) -> bool:
        return self.publish_command(device_id, CommandType.CONFIG.value, config=policy.to_dict())

    # ------------------------------------------------------------------- stats

    def _count(self, name: str) -> None:
        with self._lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)

    def _failure(self, name: str, error: str) -> None:
        with self._lock:
            setattr(self.stats, name, getattr(self.stats, name) + 1)
            self.stats.last_error = error
            self.stats.last_error_at = self._clock()

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            stats = self.stats.to_dict()
        health = getattr(self.mqtt_client, "health_status", None)
        if health is not None:
            stats["reconnect_attempt"] = health.reconnect_attempt
            stats["gave_up"] = health.gave_up
        return stats
