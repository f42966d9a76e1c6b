"""
Device Registry
===============

Single writer of per-device state.

Every mutation for a device runs under that device's re-entrant lock, and
every read returns a deep copy taken under the same lock, so readers never
see a half-applied update. Different devices never contend with each other.

Events are published after the lock is released so inline subscribers may
call back into the registry.
"""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Iterator, Mapping

from pydantic import ValidationError as PydanticValidationError

from plantcare.domain.device import Device, Reading
from plantcare.domain.exceptions import NotFoundError, ValidationError
from plantcare.domain.irrigation import IrrigationPolicy
from plantcare.enums.events import DeviceEvent
from plantcare.schemas.events import (
    ConfigUpdatedPayload,
    DeviceProvisionedPayload,
    DeviceStatusChangedPayload,
)
from plantcare.schemas.events import HeartbeatPayload as HeartbeatEventPayload
from plantcare.schemas.irrigation import PolicyUpdate
from plantcare.schemas.telemetry import HeartbeatPayload, StatusPayload
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import Clock, to_iso, utc_now

logger = logging.getLogger(__name__)

_OFFLINE_STATUSES = {"offline", "disconnected"}


def validation_messages(exc: PydanticValidationError) -> list[str]:
    """Flatten pydantic errors into ``"field: message"`` strings."""
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return messages


class DeviceRegistry:
    """In-memory, lock-per-device store of ``Device`` records."""

    def __init__(
        self,
        *,
        default_policy: IrrigationPolicy,
        event_bus: EventBus | None = None,
        clock: Clock = utc_now,
        staleness_window: timedelta = timedelta(minutes=5),
    ) -> None:
        self._default_policy = default_policy
        self._event_bus = event_bus
        self._clock = clock
        self.staleness_window = staleness_window

        self._devices: dict[str, Device] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    # ------------------------------------------------------------------ internals

    def _entry(self, device_id: str, *, create: bool) -> tuple[Device, threading.RLock, bool]:
        with self._registry_lock:
            device = self._devices.get(device_id)
            if device is not None:
                return device, self._locks[device_id], False
            if not create:
                raise NotFoundError(f"Unknown device: {device_id}", detail={"device_id": device_id})
            device = Device(id=device_id, config=self._default_policy, display_name=device_id)
            lock = threading.RLock()
            self._devices[device_id] = device
            self._locks[device_id] = lock
        logger.info("Auto-provisioned device %s with default policy", device_id)
        return device, lock, True

    def _publish(self, event: DeviceEvent, payload: Any) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event, payload)

    def _provisioned(self, device_id: str, source: str) -> None:
        self._publish(
            DeviceEvent.PROVISIONED,
            DeviceProvisionedPayload(device_id=device_id, source=source, timestamp=self._clock().isoformat()),
        )

    def _status_changed(self, device: Device) -> None:
        self._publish(
            DeviceEvent.STATUS_CHANGED,
            DeviceStatusChangedPayload(
                device_id=device.id,
                online=device.online,
                last_seen_at=to_iso(device.connectivity.last_seen_at),
                timestamp=self._clock().isoformat(),
            ),
        )

    def _mark_seen(self, device: Device, now: datetime) -> bool:
        """Refresh ``last_seen_at``; returns True when the device came back online."""
        device.connectivity.seen(now)
        if not device.connectivity.online:
            device.connectivity.online = True
            return True
        return False

    # -------------------------------------------------------------- registration

    def register(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location_label: str | None = None,
        policy: IrrigationPolicy | None = None,
    ) -> Device:
        """Pre-register (or refresh) a device at startup.

        Raises:
            ValidationError: ``policy`` violates a bound.
        """
        if policy is not None:
            errors = policy.validate()
            if errors:
                raise ValidationError(f"Invalid policy for {device_id}", detail={"errors": errors})

        device, lock, created = self._entry(device_id, create=True)
        with lock:
            if display_name is not None:
                device.display_name = display_name
            if location_label is not None:
                device.location_label = location_label
            if policy is not None:
                device.config = policy
            snapshot = copy.deepcopy(device)
        if created:
            self._provisioned(device_id, "startup")
        return snapshot

    # ------------------------------------------------------------ gateway writes

    def upsert_reading(self, device_id: str, reading: Reading) -> Device:
        now = self._clock()
        device, lock, created = self._entry(device_id, create=True)
        with lock:
            device.last_reading = copy.copy(reading)
            came_online = self._mark_seen(device, now)
            snapshot = copy.deepcopy(device)
        if created:
            self._provisioned(device_id, "message")
        if came_online:
            self._status_changed(snapshot)
        return snapshot

    def upsert_status(self, device_id: str, status: StatusPayload) -> Device:
        """Merge a status message into connectivity.

        A self-reported ``offline`` (typically the device's own last-will) is
        recorded but does not count as contact; only the sweep flips ``online``.
        """
        now = self._clock()
        device, lock, created = self._entry(device_id, create=True)
        came_online = False
        with lock:
            connectivity = device.connectivity
            if status.battery_level is not None:
                connectivity.battery_level = status.battery_level
            if status.signal_quality is not None:
                connectivity.signal_quality = status.signal_quality
            if status.status is not None:
                connectivity.reported_status = status.status
            connectivity.attributes.update(status.attributes)
            if (status.status or "").lower() not in _OFFLINE_STATUSES:
                came_online = self._mark_seen(device, now)
            snapshot = copy.deepcopy(device)
        if created:
            self._provisioned(device_id, "message")
        if came_online:
            self._status_changed(snapshot)
        return snapshot

    def touch_heartbeat(self, device_id: str, meta: HeartbeatPayload | None = None) -> Device:
        now = self._clock()
        device, lock, created = self._entry(device_id, create=True)
        with lock:
            if meta is not None:
                if meta.battery_level is not None:
                    device.connectivity.battery_level = meta.battery_level
                if meta.signal_quality is not None:
                    device.connectivity.signal_quality = meta.signal_quality
            came_online = self._mark_seen(device, now)
            snapshot = copy.deepcopy(device)
        if created:
            self._provisioned(device_id, "message")
        if came_online:
            self._status_changed(snapshot)
        self._publish(
            DeviceEvent.HEARTBEAT,
            HeartbeatEventPayload(
                device_id=device_id,
                battery_level=snapshot.connectivity.battery_level,
                signal_quality=snapshot.connectivity.signal_quality,
                timestamp=now.isoformat(),
            ),
        )
        return snapshot

    # --------------------------------------------------------------------- reads

    def get(self, device_id: str) -> Device | None:
        with self._registry_lock:
            device = self._devices.get(device_id)
            lock = self._locks.get(device_id)
        if device is None or lock is None:
            return None
        with lock:
            return copy.deepcopy(device)

    def all(self) -> list[Device]:
        with self._registry_lock:
            entries = [(self._devices[key], self._locks[key]) for key in sorted(self._devices)]
        snapshots = []
        for device, lock in entries:
            with lock:
                snapshots.append(copy.deepcopy(device))
        return snapshots

    def ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._devices)

    def __contains__(self, device_id: object) -> bool:
        with self._registry_lock:
            return device_id in self._devices

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._devices)

    def summary(self) -> dict[str, int]:
        devices = self.all()
        online = sum(1 for d in devices if d.online)
        return {
            "total": len(devices),
            "online": online,
            "offline": len(devices) - online,
            "moisture_deficient": sum(1 for d in devices if d.is_moisture_deficient),
        }

    # ---------------------------------------------------------- config / details

    def update_config(self, device_id: str, partial: PolicyUpdate | Mapping[str, Any]) -> Device:
        """
        Apply a partial policy update atomically.

        The merged policy is validated as a whole before it replaces the old
        one; on any violation nothing is written.

        Raises:
            NotFoundError: unknown device.
            ValidationError: a field is malformed or the merged policy is invalid.
        """
        if not isinstance(partial, PolicyUpdate):
            try:
                partial = PolicyUpdate.model_validate(dict(partial))
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid irrigation policy update", detail={"errors": validation_messages(exc)}
                ) from None

        changes = partial.changes()
        device, lock, _created = self._entry(device_id, create=False)
        with lock:
            candidate = device.config.merged(changes)
            errors = candidate.validate()
            if errors:
                logger.warning("Rejected policy update for %s: %s", device_id, "; ".join(errors))
                raise ValidationError("Invalid irrigation policy update", detail={"errors": errors})
            device.config = candidate
            snapshot = copy.deepcopy(device)

        logger.info("Updated irrigation policy for %s: %s", device_id, changes)
        self._publish(
            DeviceEvent.CONFIG_UPDATED,
            ConfigUpdatedPayload(device_id=device_id, config=snapshot.config.to_dict(), timestamp=self._clock().isoformat()),
        )
        return snapshot

    def update_details(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location_label: str | None = None,
    ) -> Device:
        device, lock, _created = self._entry(device_id, create=False)
        with lock:
            if display_name is not None:
                device.display_name = display_name
            if location_label is not None:
                device.location_label = location_label
            return copy.deepcopy(device)

    # -------------------------------------------------------- engine integration

    @contextmanager
    def exclusive(self, device_id: str) -> Iterator[Device]:
        """Hold the device lock and yield a consistent snapshot.

        Used by the decision engine so evaluate, publish and record happen
        without another trigger for the same device interleaving.

        Raises:
            NotFoundError: unknown device.
        """
        device, lock, _created = self._entry(device_id, create=False)
        with lock:
            yield copy.deepcopy(device)

    def record_activation(
        self, device_id: str, at: datetime, day: date, *, counts_toward_cap: bool = True
    ) -> Device:
        """Count one successful activation (the only writer of irrigation stats).

        Scheduled runs pass ``counts_toward_cap=False``: they start the cooldown
        and add to the lifetime total but not to the daily activation count.
        """
        device, lock, _created = self._entry(device_id, create=False)
        with lock:
            device.irrigation_stats.record(at, day, counts_toward_cap=counts_toward_cap)
            return copy.deepcopy(device)

    # --------------------------------------------------------------------- sweep

    def sweep(self) -> list[str]:
        """Mark devices silent for longer than the staleness window offline.

        Returns the ids that transitioned; each one is announced exactly once.
        """
        now = self._clock()
        with self._registry_lock:
            entries = [(self._devices[key], self._locks[key]) for key in sorted(self._devices)]

        transitioned: list[Device] = []
        for device, lock in entries:
            with lock:
                last_seen = device.connectivity.last_seen_at
                if not device.connectivity.online or last_seen is None:
                    continue
                if now - last_seen > self.staleness_window:
                    device.connectivity.online = False
                    transitioned.append(copy.deepcopy(device))

        for snapshot in transitioned:
            logger.warning(
                "Device %s offline (last seen %s)", snapshot.id, to_iso(snapshot.connectivity.last_seen_at)
            )
            self._status_changed(snapshot)
        return [snapshot.id for snapshot in transitioned]
