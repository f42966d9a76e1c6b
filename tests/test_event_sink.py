from datetime import timedelta

import pytest

from plantcare.domain.device import Reading
from plantcare.domain.exceptions import RepositoryError
from plantcare.domain.irrigation import IrrigationEvent
from plantcare.enums.common import TriggerType
from plantcare.services.event_sink import SinkAdapter


def _event(clock, **overrides):
    values = dict(
        device_id="plant-1",
        triggered_at=clock(),
        trigger_type=TriggerType.AUTOMATIC,
        duration_ms=10_000,
        success=True,
        reason="moisture_below_min",
    )
    values.update(overrides)
    return IrrigationEvent(**values)


def test_write_and_read_back(sink, clock):
    result = sink.write_reading("plant-1", Reading(observed_at=clock(), moisture=18.0, temperature=21.0))
    assert result.result().ok

    assert sink.write_irrigation_event(_event(clock)).result().ok

    readings = sink.query_recent("plant-1", timedelta(hours=1))
    assert [(r.moisture, r.temperature) for r in readings] == [(18.0, 21.0)]
    events = sink.query_irrigation_events("plant-1", timedelta(days=1))
    assert events == [_event(clock)]
    assert sink.get_stats()["writes_ok"] == 2


def test_failing_store_never_raises(failing_store, clock):
    sink = SinkAdapter(failing_store, max_workers=0, clock=clock)

    result = sink.write_reading("plant-1", Reading(observed_at=clock(), moisture=18.0)).result()
    assert result.ok is False
    assert result.error == "disk I/O error"

    assert sink.query_recent("plant-1", timedelta(hours=1)) == []
    assert sink.query_irrigation_events(None, timedelta(days=1)) == []
    assert sink.prune(timedelta(days=30)) == 0

    stats = sink.get_stats()
    assert stats["writes_failed"] == 2
    assert stats["reads_failed"] == 2
    assert stats["last_error"].startswith("prune")


def test_ping_raises_repository_error(failing_store, clock):
    sink = SinkAdapter(failing_store, max_workers=0, clock=clock)

    with pytest.raises(RepositoryError):
        sink.ping()


def test_pooled_writes_complete_and_ping_uses_probe_thread(telemetry_repo, clock):
    sink = SinkAdapter(telemetry_repo, max_workers=2, clock=clock)
    try:
        futures = [
            sink.write_reading("plant-1", Reading(observed_at=clock() - timedelta(seconds=i), moisture=float(i)))
            for i in range(5)
        ]
        assert all(f.result(timeout=5).ok for f in futures)
        assert sink.ping() >= 0.0
        assert len(sink.query_recent("plant-1", timedelta(hours=1))) == 5
    finally:
        sink.shutdown()


def test_write_after_shutdown_resolves_to_failure(telemetry_repo, clock):
    sink = SinkAdapter(telemetry_repo, max_workers=1, clock=clock)
    sink.shutdown()

    result = sink.write_irrigation_event(_event(clock)).result()

    assert result.ok is False


def test_prune_removes_old_rows(sink, clock):
    sink.write_reading("plant-1", Reading(observed_at=clock() - timedelta(days=40), moisture=10.0))
    sink.write_reading("plant-1", Reading(observed_at=clock(), moisture=20.0))
    sink.write_irrigation_event(_event(clock, triggered_at=clock() - timedelta(days=40)))

    assert sink.prune(timedelta(days=30)) == 2
    assert [r.moisture for r in sink.query_recent("plant-1", timedelta(days=90))] == [20.0]
