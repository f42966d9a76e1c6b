"""
    This module provides a wrapper class for handling MQTT client functionality.
    It includes methods for connecting, disconnecting, publishing, and subscribing
    to an MQTT broker, plus the bounded reconnect loop and the server presence
    (last-will) message, with appropriate logging for each operation.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import paho.mqtt.client as mqtt

from plantcare.constants import SERVER_STATUS_QOS, SERVER_STATUS_TOPIC
from plantcare.domain.exceptions import TransportConnectError
from plantcare.enums.events import SystemEvent
from plantcare.hardware.mqtt.client_factory import create_mqtt_client, is_failure
from plantcare.schemas.commands import ServerStatusPayload
from plantcare.schemas.events import ConnectivityStatePayload
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import iso_now, utc_now

# Broker traffic has its own logger; setup_logging() gives it a rotating file.
_mqtt_logger = logging.getLogger("plantcare.mqtt")

MessageCallback = Callable[[Any, Any, Any], None]

# CONNACK waits are sliced so a shutdown request is noticed promptly.
_CONNACK_POLL_SECONDS = 0.1


@dataclass
class HealthStatus:
    """
    Tracks the health status of the MQTT client connection.
    """

    is_connected: bool = False
    last_error: str | None = None
    last_error_time: datetime | None = None
    connection_attempts: int = 0
    reconnect_attempt: int = 0
    max_reconnect_attempts: int = 0
    gave_up: bool = False
    successful_publishes: int = 0
    failed_publishes: int = 0
    active_subscriptions: int = 0
    messages_received: int = 0
    unhandled_messages: int = 0

    @property
    def success_rate(self) -> float:
        """Calculate publish success rate percentage"""
        total_publishes = self.successful_publishes + self.failed_publishes
        if total_publishes == 0:
            return 0.0
        return (self.successful_publishes / total_publishes) * 100

    def mark_connected(self):
        self.is_connected = True
        self.gave_up = False
        self.reconnect_attempt = 0
        self.last_error = None
        self.last_error_time = None

    def mark_disconnected(self):
        self.is_connected = False

    def record_error(self, error: Exception | str):
        self.last_error = str(error)
        self.last_error_time = utc_now()

    def to_dict(self):
        """Return health status as a dictionary."""
        return {
            "is_connected": self.is_connected,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
            "connection_attempts": self.connection_attempts,
            "reconnect_attempt": self.reconnect_attempt,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "gave_up": self.gave_up,
            "successful_publishes": self.successful_publishes,
            "failed_publishes": self.failed_publishes,
            "active_subscriptions": self.active_subscriptions,
            "messages_received": self.messages_received,
            "unhandled_messages": self.unhandled_messages,
            "publish_success_rate": round(self.success_rate, 2),
        }


class MQTTClientWrapper:
    """
    Wrapper class for handling MQTT client functionality.

    One logical broker connection. Subscriptions are remembered and replayed on
    every successful (re)connect. When the connection drops, a background loop
    retries every ``reconnect_interval`` seconds up to ``max_reconnect_attempts``
    times, then tears the client down and stays unhealthy.
    """

    def __init__(
        self,
        broker: str,
        port: int,
        client_id: str = "",
        *,
        username: str | None = None,
        password: str | None = None,
        keepalive: int = 60,
        connect_timeout: float = 10.0,
        reconnect_interval: float = 5.0,
        max_reconnect_attempts: int = 10,
        event_bus: EventBus | None = None,
    ):
        """
        Initializes the MQTT client wrapper. Does not connect; call ``start()``
        or ``connect()``.

        Args:
            broker (str): The MQTT broker address.
            port (int): The MQTT broker port.
            client_id (str, optional): The MQTT client ID. Defaults to "".
        """
        self.broker = broker
        self.port = port
        self.client_id = client_id
        self.keepalive = keepalive
        self.connect_timeout = float(connect_timeout)
        self.reconnect_interval = float(reconnect_interval)
        self.max_reconnect_attempts = int(max_reconnect_attempts)
        self.event_bus = event_bus

        self.client = create_mqtt_client(client_id=client_id)
        if username:
            self.client.username_pw_set(username, password or None)
        self.client.will_set(
            SERVER_STATUS_TOPIC,
            ServerStatusPayload(status="offline").to_json(),
            qos=SERVER_STATUS_QOS,
            retain=True,
        )
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        # Always dispatch through our fan-out handler so multiple subscribers can coexist
        self.client.on_message = self._dispatch_message

        self.connected = False
        self.health_status = HealthStatus(max_reconnect_attempts=self.max_reconnect_attempts)

        self._callback_lock = threading.Lock()
        self._callbacks: list[tuple[str, MessageCallback]] = []
        self._subscriptions: dict[str, int] = {}

        self._state_lock = threading.Lock()
        self._connack = threading.Event()
        self._connack_failure: str | None = None
        self._stop_event = threading.Event()
        self._reconnect_thread: threading.Thread | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.broker}:{self.port}"

    def is_connected(self) -> bool:
        return self.connected

    # ------------------------------------------------------------------ connect

    def start(self) -> bool:
        """Connect, or hand over to the reconnect loop when the first attempt fails."""
        try:
            self.connect()
            return True
        except TransportConnectError as e:
            _mqtt_logger.error("Initial MQTT connection failed: %s; retrying in background", e)
            self.start_reconnect_loop()
            return False

    def connect(self) -> None:
        """
        Connects to the MQTT broker and waits for the CONNACK.

        Raises:
            TransportConnectError: socket error, refused CONNACK or timeout.
        """
        self._connack.clear()
        self._connack_failure = None
        self.health_status.connection_attempts += 1
        self.client.connect_timeout = self.connect_timeout

        try:
            self.client.connect(self.broker, self.port, self.keepalive)
        except (OSError, ValueError) as e:
            self.health_status.record_error(e)
            raise TransportConnectError(
                f"Cannot reach MQTT broker {self.endpoint}: {e}", detail={"endpoint": self.endpoint}
            ) from e

        self.client.loop_start()

        self._wait_for_connack()

        if self._connack_failure is not None:
            self.client.loop_stop()
            raise TransportConnectError(
                f"MQTT broker {self.endpoint} refused connection: {self._connack_failure}",
                detail={"endpoint": self.endpoint, "reason": self._connack_failure},
            )

    def _wait_for_connack(self) -> None:
        deadline = time.monotonic() + self.connect_timeout
        while not self._connack.wait(_CONNACK_POLL_SECONDS):
            if self._stop_event.is_set():
                self.client.loop_stop()
                raise TransportConnectError(
                    f"Shutdown requested while connecting to {self.endpoint}",
                    detail={"endpoint": self.endpoint, "reason": "shutdown"},
                )
            if time.monotonic() >= deadline:
                self.client.loop_stop()
                self.health_status.record_error("connect timeout")
                raise TransportConnectError(
                    f"No CONNACK from {self.endpoint} within {self.connect_timeout:g}s",
                    detail={"endpoint": self.endpoint},
                )

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if self._stop_event.is_set():
            # Late CONNACK after shutdown began: drop the session, announce nothing.
            _mqtt_logger.info("Ignoring CONNACK from %s during shutdown", self.endpoint)
            self._connack_failure = "shutdown"
            try:
                client.disconnect()
            except OSError as e:
                _mqtt_logger.error("Error dropping late MQTT session: %s", e)
            self._connack.set()
            return

        if is_failure(reason_code):
            self._connack_failure = str(reason_code)
            self.health_status.record_error(f"connack: {reason_code}")
            _mqtt_logger.error("MQTT broker %s refused connection: %s", self.endpoint, reason_code)
            self._connack.set()
            return

        self.connected = True
        self.health_status.mark_connected()
        _mqtt_logger.info("Connected to MQTT broker %s", self.endpoint)

        with self._callback_lock:
            subscriptions = dict(self._subscriptions)
        for topic, qos in subscriptions.items():
            self._subscribe_on_broker(topic, qos)

        self.publish(
            SERVER_STATUS_TOPIC,
            ServerStatusPayload(status="online", timestamp=iso_now()).to_json(),
            qos=SERVER_STATUS_QOS,
            retain=True,
        )
        self._emit_connectivity("connected")
        self._connack.set()

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        was_connected = self.connected
        self.connected = False
        self.health_status.mark_disconnected()

        if self._stop_event.is_set():
            return

        if was_connected:
            self.health_status.record_error(f"disconnected: {reason_code}")
            _mqtt_logger.warning("Lost connection to MQTT broker %s (%s)", self.endpoint, reason_code)
            self._emit_connectivity("disconnected")
            self.start_reconnect_loop()

    # ---------------------------------------------------------------- reconnect

    def start_reconnect_loop(self) -> None:
        """Start the background reconnect loop unless one is already running."""
        with self._state_lock:
            if self._stop_event.is_set():
                return
            if self._reconnect_thread is not None and self._reconnect_thread.is_alive():
                return
            self.health_status.gave_up = False
            self._reconnect_thread = threading.Thread(
                target=self._reconnect_loop, daemon=True, name="MQTTReconnect"
            )
            self._reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        for attempt in range(1, self.max_reconnect_attempts + 1):
            if self._stop_event.wait(self.reconnect_interval):
                return
            if self.connected:
                return

            self.health_status.reconnect_attempt = attempt
            self._emit_connectivity("reconnecting", attempt=attempt)
            _mqtt_logger.info(
                "Reconnecting to MQTT broker %s (attempt %s/%s)",
                self.endpoint,
                attempt,
                self.max_reconnect_attempts,
            )
            try:
                # paho's network thread exits after a drop when its own
                # reconnect is disabled; join it before starting a new one.
                self.client.loop_stop()
                self.connect()
            except TransportConnectError as e:
                if self._stop_event.is_set():
                    return
                _mqtt_logger.warning("Reconnect attempt %s failed: %s", attempt, e)
                continue
            _mqtt_logger.info("Reconnected to MQTT broker %s after %s attempt(s)", self.endpoint, attempt)
            return

        self.health_status.gave_up = True
        self.health_status.record_error(f"gave up after {self.max_reconnect_attempts} reconnect attempts")
        _mqtt_logger.error(
            "Giving up on MQTT broker %s after %s attempts", self.endpoint, self.max_reconnect_attempts
        )
        self.client.loop_stop()
        self._emit_connectivity("gave_up", attempt=self.max_reconnect_attempts)

    # --------------------------------------------------------------- disconnect

    def disconnect(self, timeout: float = 5.0):
        """
        Gracefully disconnects: announces ``offline`` and stops the reconnect loop.
        """
        self._stop_event.set()

        if self.connected:
            self.publish(
                SERVER_STATUS_TOPIC,
                ServerStatusPayload(status="offline", timestamp=iso_now()).to_json(),
                qos=SERVER_STATUS_QOS,
                retain=True,
            )
            try:
                self.client.disconnect()
            except OSError as e:
                _mqtt_logger.error("Error disconnecting from MQTT broker: %s", e)
                self.health_status.record_error(e)

        self.client.loop_stop()
        self.connected = False
        self.health_status.mark_disconnected()

        thread = self._reconnect_thread
        if thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

        _mqtt_logger.info("Disconnected from MQTT broker.")
        self._emit_connectivity("disconnected")

    # ------------------------------------------------------------ pub / sub

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> bool:
        """
        Publishes a message to the MQTT broker.

        Returns:
            True when the message was handed to the client; False when the
            connection is down or the client refused it. Never raises.
        """
        if not self.connected:
            self.health_status.failed_publishes += 1
            _mqtt_logger.warning("MQTT client not connected. Cannot publish to %s.", topic)
            return False

        try:
            msg_info = self.client.publish(topic, payload, qos=qos, retain=retain)
        except (OSError, ValueError) as e:
            self.health_status.failed_publishes += 1
            self.health_status.record_error(e)
            _mqtt_logger.error("Error publishing to MQTT: %s", e)
            return False

        if msg_info.rc == mqtt.MQTT_ERR_SUCCESS:
            self.health_status.successful_publishes += 1
            _mqtt_logger.debug("Published to %s: %s", topic, payload)
            return True

        self.health_status.failed_publishes += 1
        _mqtt_logger.error("Failed to publish to %s: %s. MQTT result code: %s", topic, payload, msg_info.rc)
        return False

    def subscribe(self, topic: str, callback: MessageCallback, qos: int = 0) -> None:
        """
        Subscribes to a topic and registers a callback for it.

        The subscription is remembered and (re)sent to the broker on every
        successful connect.
        """
        with self._callback_lock:
            self._callbacks.append((topic, callback))
            self._subscriptions[topic] = max(qos, self._subscriptions.get(topic, 0))
            self.health_status.active_subscriptions = len(self._subscriptions)

        _mqtt_logger.info("Registered callback %s for topic %s", getattr(callback, "__name__", callback), topic)
        if self.connected:
            self._subscribe_on_broker(topic, qos)

    def _subscribe_on_broker(self, topic: str, qos: int) -> None:
        try:
            result, _mid = self.client.subscribe(topic, qos)
        except (OSError, ValueError) as e:
            self.health_status.record_error(e)
            _mqtt_logger.error("Error subscribing to MQTT topic %s: %s", topic, e)
            return
        if result == mqtt.MQTT_ERR_SUCCESS:
            _mqtt_logger.info("Subscribed to topic %s (qos %s)", topic, qos)
        else:
            _mqtt_logger.error("Failed to subscribe to topic %s: result code %s", topic, result)

    def _dispatch_message(self, client, userdata, msg) -> None:
        """
        Fan out MQTT messages to all registered callbacks that match the topic
        using MQTT wildcard semantics.
        """
        self.health_status.messages_received += 1

        with self._callback_lock:
            callbacks = list(self._callbacks)

        handled = False
        for sub, callback in callbacks:
            if not mqtt.topic_matches_sub(sub, msg.topic):
                continue
            handled = True
            try:
                callback(client, userdata, msg)
            except Exception as e:
                _mqtt_logger.error("Error in MQTT callback for topic %s: %s", sub, e, exc_info=True)

        if not handled:
            self.health_status.unhandled_messages += 1
            _mqtt_logger.warning(
                "MQTT message on %s had no registered handlers (subscriptions: %s)",
                msg.topic,
                [s[0] for s in callbacks],
            )

    def _emit_connectivity(self, status: str, attempt: int | None = None) -> None:
        if self.event_bus is None:
            return
        payload = ConnectivityStatePayload(
            status=status,
            endpoint=self.endpoint,
            attempt=attempt,
            timestamp=iso_now(),
        )
        self.event_bus.publish(SystemEvent.TRANSPORT_CONNECTIVITY_CHANGED, payload)
