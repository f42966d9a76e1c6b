"""
Lightweight EventBus shared by the gateway, registry, engine and aggregator.

Key invariants (enforced by call sites + tests):
  - Event topics come from enums in plantcare.enums.events (EventType).
  - Payloads are Pydantic models in plantcare.schemas.events (or dataclasses).
  - Subscribers always receive a plain dict payload.

One instance is built by the ServiceContainer and injected into every
component; outer layers subscribe to the same instance.
"""

import logging
import threading
import time
from collections import defaultdict
from dataclasses import asdict, is_dataclass
from enum import Enum
from queue import Full, Queue
from typing import Any, Callable, Dict, Hashable, Iterable

from pydantic import BaseModel

from plantcare.enums.events import EventType

logger = logging.getLogger(__name__)

# Drop warning configuration
_DROP_WARNING_THRESHOLD = 10  # Log summary every N drops
_DROP_WARNING_INTERVAL_SECONDS = 60  # Minimum seconds between drop summaries

_STOP = object()


class EventBus:
    """
    Handles event-driven communication across modules.

    ``worker_count=0`` delivers inline on the publishing thread, which keeps
    tests deterministic.
    """

    def __init__(self, queue_size: int = 1024, worker_count: int = 2) -> None:
        self.subscribers: Dict[Hashable, list[Callable[[Any], None]]] = defaultdict(list)
        self.lock = threading.Lock()
        self._queue_size = int(queue_size)
        self._queue: Queue = Queue(maxsize=self._queue_size)
        self._worker_pool_size = max(0, int(worker_count))
        self._workers: list[threading.Thread] = []
        self._workers_started = False
        self._dropped_events = 0
        self._drops_by_event: Dict[str, int] = defaultdict(int)
        self._drops_since_last_warning = 0
        self._last_drop_warning_time = 0.0
        self._delivered = 0
        if self._worker_pool_size:
            self._start_workers()

    @property
    def is_inline(self) -> bool:
        return self._worker_pool_size == 0

    def _start_workers(self) -> None:
        """Spin up a small worker pool to avoid unbounded thread creation."""
        with self.lock:
            if self._workers_started:
                return
            for index in range(self._worker_pool_size):
                worker = threading.Thread(target=self._worker_loop, daemon=True, name=f"EventBusWorker-{index}")
                worker.start()
                self._workers.append(worker)
            self._workers_started = True
            logger.info(
                "EventBus workers started (pool=%s queue=%s)",
                self._worker_pool_size,
                self._queue_size,
            )

    def subscribe(self, event_name: EventType | str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """
        Subscribes a callback function to an event.

        Args:
            event_name: The enum topic (preferred) or raw string.
            callback: Function to call when the event occurs.

        Returns:
            A function that removes the subscription.
        """
        name = event_name.value if isinstance(event_name, Enum) else event_name
        with self.lock:
            self.subscribers[name].append(callback)

        def unsubscribe() -> None:
            with self.lock:
                callbacks = self.subscribers.get(name, [])
                try:
                    callbacks.remove(callback)
                except ValueError:
                    return

        return unsubscribe

    def _worker_loop(self) -> None:
        """Worker thread loop to process events from the queue."""
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                event_name, callback, payload = item
                self._deliver(event_name, callback, payload)
            finally:
                self._queue.task_done()

    def _deliver(self, event_name: str, callback: Callable[[Any], None], payload: Any) -> None:
        try:
            callback(payload)
            self._delivered += 1
        except Exception as exc:
            logger.error("Error in callback for event %s: %s", event_name, exc, exc_info=True)

    def publish(self, event_name: EventType | str, data: Any | None = None) -> None:
        """
        Publishes an event, calling all subscribed callback functions.

        Args:
            event_name: The enum topic (preferred) or raw string.
            data: Payload object (Pydantic model, dataclass, or dict/primitive).
        """
        name = event_name.value if isinstance(event_name, Enum) else event_name

        # Normalize payload for subscribers: they always receive a dict or primitive.
        if isinstance(data, BaseModel):
            payload: Any = data.model_dump(mode="json")
        elif is_dataclass(data) and not isinstance(data, type):
            payload = asdict(data)
        else:
            payload = data

        with self.lock:
            callbacks: Iterable[Callable[[Any], None]] = list(self.subscribers.get(name, []))

        for callback in callbacks:
            if self.is_inline:
                self._deliver(name, callback, payload)
                continue
            try:
                self._queue.put_nowait((name, callback, payload))
            except Full:
                self._record_drop(name)
                break

    def _record_drop(self, event_name: str) -> None:
        """Record a dropped event and log periodic warnings."""
        self._dropped_events += 1
        self._drops_by_event[event_name] += 1
        self._drops_since_last_warning += 1

        now = time.time()
        should_warn = (
            self._drops_since_last_warning >= _DROP_WARNING_THRESHOLD
            and (now - self._last_drop_warning_time) >= _DROP_WARNING_INTERVAL_SECONDS
        )

        if should_warn:
            top_drops = sorted(self._drops_by_event.items(), key=lambda x: x[1], reverse=True)[:5]
            top_drops_str = ", ".join(f"{k}:{v}" for k, v in top_drops)

            logger.warning(
                "EventBus dropping events! queue_size=%d, total_dropped=%d, "
                "recent_drops=%d, top_dropped_events=[%s]. "
                "Consider increasing PLANTCARE_EVENTBUS_QUEUE_SIZE or reducing event volume.",
                self._queue_size,
                self._dropped_events,
                self._drops_since_last_warning,
                top_drops_str,
            )
            self._drops_since_last_warning = 0
            self._last_drop_warning_time = now

    def shutdown(self, timeout: float = 2.0) -> None:
        """Stop worker threads once the queued events have been delivered."""
        with self.lock:
            workers = list(self._workers)
            self._workers = []
            self._workers_started = False
        for _ in workers:
            self._queue.put(_STOP)
        for worker in workers:
            worker.join(timeout=timeout)

    def get_metrics(self) -> Dict[str, Any]:
        """Return lightweight metrics for health endpoints/logging."""
        top_dropped = dict(sorted(self._drops_by_event.items(), key=lambda x: x[1], reverse=True)[:5])

        with self.lock:
            subscribers = sum(len(values) for values in self.subscribers.values())

        return {
            "queue_depth": self._queue.qsize(),
            "queue_size": self._queue_size,
            "workers": self._worker_pool_size,
            "delivered_events": self._delivered,
            "dropped_events": self._dropped_events,
            "drops_by_event_top5": top_dropped,
            "subscribers": subscribers,
            "is_dropping": self._drops_since_last_warning > 0,
        }
