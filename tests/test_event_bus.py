import threading

from plantcare.enums.events import DeviceEvent
from plantcare.schemas.events import DeviceStatusChangedPayload
from plantcare.utils.event_bus import EventBus


def test_inline_bus_delivers_dict_payloads():
    bus = EventBus(worker_count=0)
    received = []
    bus.subscribe(DeviceEvent.STATUS_CHANGED, received.append)

    bus.publish(
        DeviceEvent.STATUS_CHANGED,
        DeviceStatusChangedPayload(device_id="plant-1", online=False, timestamp="2025-01-01T12:00:00+00:00"),
    )

    assert received == [
        {
            "device_id": "plant-1",
            "online": False,
            "last_seen_at": None,
            "timestamp": "2025-01-01T12:00:00+00:00",
        }
    ]


def test_multiple_subscribers_and_unsubscribe():
    bus = EventBus(worker_count=0)
    first, second = [], []
    unsubscribe = bus.subscribe("multi_event", first.append)
    bus.subscribe("multi_event", second.append)

    bus.publish("multi_event", {"message": "Hello"})
    unsubscribe()
    bus.publish("multi_event", {"message": "again"})

    assert first == [{"message": "Hello"}]
    assert second == [{"message": "Hello"}, {"message": "again"}]


def test_failing_subscriber_does_not_block_others():
    bus = EventBus(worker_count=0)
    received = []

    def broken(_payload):
        raise RuntimeError("boom")

    bus.subscribe("evt", broken)
    bus.subscribe("evt", received.append)
    bus.publish("evt", {"n": 1})

    assert received == [{"n": 1}]


def test_worker_pool_delivers_and_shuts_down():
    bus = EventBus(worker_count=2)
    done = threading.Event()
    bus.subscribe("evt", lambda _p: done.set())

    bus.publish("evt", {"n": 1})

    assert done.wait(2.0)
    bus.shutdown()
    assert bus.get_metrics()["delivered_events"] == 1


def test_full_queue_counts_drops():
    bus = EventBus(queue_size=1, worker_count=1)
    gate = threading.Event()
    bus.subscribe("slow", lambda _p: gate.wait(2.0))

    for _ in range(5):
        bus.publish("slow", {})

    metrics = bus.get_metrics()
    gate.set()
    bus.shutdown()
    assert metrics["dropped_events"] >= 1
