from __future__ import annotations

import asyncio
import json

import pytest

from fakes import FakeConnection, wait_for
from sensor_agent.models import SensorKind, SensorReading, Vector3
from sensor_agent.services.scheduler import PublishScheduler
from sensor_agent.services.snapshot_store import SnapshotStore


def _merge(store: SnapshotStore, kind: SensorKind, value: float, timestamp: float) -> None:
    store.merge(kind, SensorReading(kind, Vector3(value, 0.0, 0.0), timestamp=timestamp))


@pytest.mark.anyio
async def test_tick_publishes_latest_snapshot():
    store = SnapshotStore()
    connection = FakeConnection()
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.05)
    scheduler.start()
    try:
        _merge(store, SensorKind.ACCELEROMETER, 1.0, 1.0)
        assert await wait_for(lambda: len(connection.published) >= 1)
        _merge(store, SensorKind.GYROSCOPE, 2.0, 2.0)
        assert await wait_for(lambda: any(b"gyroscope" in payload for _, payload in connection.published))
    finally:
        await scheduler.stop()

    topic, payload = connection.published[-1]
    assert topic == "sensor/data"
    assert set(json.loads(payload)) == {"accelerometer", "gyroscope"}


@pytest.mark.anyio
async def test_tick_skips_publish_when_not_ready():
    store = SnapshotStore()
    connection = FakeConnection(ready=False)
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.02)
    scheduler.start()
    try:
        assert await wait_for(lambda: scheduler.tick_count >= 3)
    finally:
        await scheduler.stop()
    assert connection.published == []
    assert scheduler.published_ticks == 0


@pytest.mark.anyio
async def test_slow_publish_never_overlaps():
    store = SnapshotStore()
    connection = FakeConnection(publish_delay=0.12)
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.03)
    scheduler.start()
    try:
        await asyncio.sleep(0.5)
    finally:
        await scheduler.stop()
    assert connection.max_inflight == 1
    assert scheduler.skipped_ticks > 0
    assert len(connection.published) >= 2


@pytest.mark.anyio
async def test_nothing_fires_after_stop():
    store = SnapshotStore()
    connection = FakeConnection()
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.02)
    scheduler.start()
    assert await wait_for(lambda: scheduler.tick_count >= 2)
    await scheduler.stop()
    assert scheduler.running is False

    ticks = scheduler.tick_count
    published = len(connection.published)
    await asyncio.sleep(0.1)
    assert scheduler.tick_count == ticks
    assert len(connection.published) == published


@pytest.mark.anyio
async def test_stop_cancels_inflight_tick():
    store = SnapshotStore()
    connection = FakeConnection(publish_delay=1.0)
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.02)
    scheduler.start()
    assert await wait_for(lambda: connection.inflight == 1)
    await scheduler.stop()
    assert connection.inflight == 0
    assert connection.published == []


@pytest.mark.anyio
async def test_reconfigure_keeps_ticks_apart():
    store = SnapshotStore()
    connection = FakeConnection()
    scheduler = PublishScheduler(store, connection, topic="sensor/data", interval_seconds=0.1)
    scheduler.start()
    try:
        assert await wait_for(lambda: len(connection.publish_times) >= 1)
        before = len(connection.publish_times)
        await scheduler.reconfigure(0.05)
        assert scheduler.interval_seconds == 0.05
        assert scheduler.running is True
        assert await wait_for(lambda: len(connection.publish_times) >= before + 3)
    finally:
        await scheduler.stop()

    times = connection.publish_times
    gaps = [later - earlier for earlier, later in zip(times, times[1:])]
    # Allow a little loop jitter below the shorter interval.
    assert min(gaps) >= 0.05 - 0.01


@pytest.mark.anyio
async def test_reconfigure_waits_a_full_new_period():
    connection = FakeConnection()
    scheduler = PublishScheduler(SnapshotStore(), connection, topic="sensor/data", interval_seconds=10)
    scheduler.start()
    replacement = FakeConnection()
    loop = asyncio.get_running_loop()
    try:
        started = loop.time()
        await scheduler.reconfigure(0.1, connection=replacement)
        assert scheduler.interval_seconds == 0.1
        assert await wait_for(lambda: len(replacement.publish_times) >= 1)
    finally:
        await scheduler.stop()
    assert connection.published == []
    assert replacement.publish_times[0] - started >= 0.1 - 0.01


@pytest.mark.anyio
async def test_slow_pre_tick_hook_does_not_block_publish():
    store = SnapshotStore()
    connection = FakeConnection()
    calls = []

    async def slow_hook() -> None:
        calls.append(1)
        await asyncio.sleep(10)

    scheduler = PublishScheduler(
        store,
        connection,
        topic="sensor/data",
        interval_seconds=0.05,
        pre_tick=slow_hook,
        pre_tick_timeout_seconds=0.01,
    )
    scheduler.start()
    try:
        assert await wait_for(lambda: len(connection.published) >= 1)
    finally:
        await scheduler.stop()
    assert calls


@pytest.mark.anyio
async def test_failing_pre_tick_hook_still_publishes():
    async def broken_hook() -> None:
        raise RuntimeError("gps offline")

    connection = FakeConnection()
    scheduler = PublishScheduler(
        SnapshotStore(),
        connection,
        topic="sensor/data",
        interval_seconds=0.03,
        pre_tick=broken_hook,
        pre_tick_timeout_seconds=0.01,
    )
    scheduler.start()
    try:
        assert await wait_for(lambda: len(connection.published) >= 1)
    finally:
        await scheduler.stop()
    assert connection.published[0][1] == b"{}"


def test_non_positive_interval_rejected():
    with pytest.raises(ValueError):
        PublishScheduler(SnapshotStore(), FakeConnection(), topic="sensor/data", interval_seconds=0)
