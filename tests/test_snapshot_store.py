from __future__ import annotations

import itertools
import random
import threading

from sensor_agent.models import SensorKind, SensorReading, Vector3
from sensor_agent.services.snapshot_store import SnapshotStore


def _accel(timestamp: float, z: float = 1.0) -> SensorReading:
    return SensorReading(SensorKind.ACCELEROMETER, Vector3(0.0, 0.0, z), timestamp=timestamp)


def test_newest_timestamp_wins_in_any_order():
    timestamps = [1.0, 2.0, 3.0, 4.0]
    for order in itertools.permutations(timestamps):
        store = SnapshotStore()
        for ts in order:
            store.merge(SensorKind.ACCELEROMETER, _accel(ts, z=ts))
        reading = store.read_snapshot()[SensorKind.ACCELEROMETER]
        assert reading.timestamp == 4.0
        assert reading.value.z == 4.0


def test_shuffled_duplicates_never_roll_back():
    rng = random.Random(7)
    for _ in range(50):
        stamps = [rng.choice([1.0, 2.0, 3.0, 5.0, 8.0]) for _ in range(12)]
        store = SnapshotStore()
        for ts in stamps:
            store.merge(SensorKind.ACCELEROMETER, _accel(ts))
        assert store.read_snapshot()[SensorKind.ACCELEROMETER].timestamp == max(stamps)


def test_equal_timestamp_later_merge_wins():
    store = SnapshotStore()
    store.merge(SensorKind.ACCELEROMETER, _accel(5.0, z=1.0))
    assert store.merge(SensorKind.ACCELEROMETER, _accel(5.0, z=2.0)) is True
    assert store.read_snapshot()[SensorKind.ACCELEROMETER].value.z == 2.0


def test_stale_reading_is_counted_and_dropped():
    store = SnapshotStore()
    store.merge(SensorKind.ACCELEROMETER, _accel(5.0))
    assert store.merge(SensorKind.ACCELEROMETER, _accel(4.0)) is False
    assert store.stale_merges == 1


def test_snapshot_holds_one_entry_per_merged_kind():
    store = SnapshotStore()
    kinds = [SensorKind.ACCELEROMETER, SensorKind.GYROSCOPE, SensorKind.MAGNETOMETER]
    for index, kind in enumerate(kinds):
        store.merge(kind, SensorReading(kind, Vector3(float(index), 0.0, 0.0), timestamp=1.0))
    snapshot = store.read_snapshot()
    assert set(snapshot) == set(kinds)
    for index, kind in enumerate(kinds):
        assert snapshot[kind].kind is kind
        assert snapshot[kind].value.x == float(index)
    assert len(store) == 3


def test_mismatched_or_unknown_kind_rejected():
    store = SnapshotStore()
    assert store.merge(SensorKind.GYROSCOPE, _accel(1.0)) is False
    assert store.merge("thermometer", _accel(1.0)) is False  # type: ignore[arg-type]
    assert store.rejected_merges == 2
    assert len(store.read_snapshot()) == 0


def test_snapshot_is_a_copy():
    store = SnapshotStore()
    store.merge(SensorKind.ACCELEROMETER, _accel(1.0))
    before = store.read_snapshot()
    store.merge(SensorKind.GYROSCOPE, SensorReading(SensorKind.GYROSCOPE, Vector3(1, 1, 1), timestamp=2.0))
    store.merge(SensorKind.ACCELEROMETER, _accel(3.0))
    assert set(before) == {SensorKind.ACCELEROMETER}
    assert before[SensorKind.ACCELEROMETER].timestamp == 1.0


def test_clear_empties_store():
    store = SnapshotStore()
    store.merge(SensorKind.ACCELEROMETER, _accel(1.0))
    store.clear()
    assert len(store) == 0


def test_concurrent_merges_keep_latest_per_kind():
    store = SnapshotStore()
    kinds = [SensorKind.ACCELEROMETER, SensorKind.GYROSCOPE, SensorKind.MAGNETOMETER]

    def worker(kind: SensorKind) -> None:
        stamps = list(range(200))
        random.Random(kind.value).shuffle(stamps)
        for ts in stamps:
            store.merge(kind, SensorReading(kind, Vector3(0, 0, float(ts)), timestamp=float(ts)))

    threads = [threading.Thread(target=worker, args=(kind,)) for kind in kinds for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    snapshot = store.read_snapshot()
    assert set(snapshot) == set(kinds)
    for kind in kinds:
        assert snapshot[kind].timestamp == 199.0
