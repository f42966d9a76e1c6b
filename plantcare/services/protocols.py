"""
Service protocols (structural typing interfaces).

Protocols let consumer services declare the *minimal* surface they depend on
without importing the concrete class, breaking circular imports and making
tests trivially mockable.

At runtime the concrete classes (``TelemetryRepository``,
``MQTTClientWrapper``, ``TransportGateway``) satisfy these protocols via
structural subtyping, no explicit inheritance needed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from plantcare.domain.device import Reading
from plantcare.domain.irrigation import IrrigationEvent


@runtime_checkable
class TelemetryStore(Protocol):
    """Narrow persistence contract used by the sink adapter."""

    def write_reading(self, device_id: str, reading: Reading) -> None: ...

    def readings_since(self, device_id: str, since: datetime, limit: int = 1000) -> list[Reading]: ...

    def write_irrigation_event(self, event: IrrigationEvent) -> None: ...

    def irrigation_events_since(
        self, since: datetime, *, device_id: str | None = None, limit: int = 100
    ) -> list[IrrigationEvent]: ...

    def prune(self, before: datetime) -> int: ...

    def ping(self) -> None: ...


@runtime_checkable
class BrokerClient(Protocol):
    """What the gateway needs from the MQTT wrapper."""

    health_status: Any

    def is_connected(self) -> bool: ...

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> bool: ...

    def subscribe(self, topic: str, callback: Any, qos: int = 0) -> None: ...


@runtime_checkable
class CommandPublisher(Protocol):
    """What the decision engine and the facade need to reach a device."""

    def publish_command(
        self,
        device_id: str,
        command: str,
        *,
        duration_ms: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> bool: ...

    def is_connected(self) -> bool: ...
