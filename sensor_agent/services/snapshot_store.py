"""Latest-reading-per-kind store shared by the sensor callbacks and the publish timer."""
from __future__ import annotations

import logging
import threading
from typing import Dict

from sensor_agent.models import SensorKind, SensorReading, Snapshot

logger = logging.getLogger(__name__)


class SnapshotStore:
    """Merge-on-write store with per-kind atomic replace.

    A merge keeps the reading with the newest timestamp (ties go to the later
    merge), so duplicate or out-of-order deliveries cannot roll a kind back.
    ``read_snapshot`` hands out a copy; callers never see internal state.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: Dict[SensorKind, SensorReading] = {}
        self.rejected_merges = 0
        self.stale_merges = 0

    def merge(self, kind: SensorKind, reading: SensorReading) -> bool:
        if not isinstance(kind, SensorKind) or not isinstance(reading, SensorReading):
            self.rejected_merges += 1
            logger.warning("Ignoring merge for unrecognized sensor kind %r", kind)
            return False
        if reading.kind is not kind:
            self.rejected_merges += 1
            logger.warning("Ignoring %s reading merged under %s", reading.kind.value, kind.value)
            return False
        with self._lock:
            current = self._latest.get(kind)
            if current is not None and reading.timestamp < current.timestamp:
                self.stale_merges += 1
                logger.debug(
                    "Dropping stale %s reading (%.3f < %.3f)", kind.value, reading.timestamp, current.timestamp
                )
                return False
            self._latest[kind] = reading
        return True

    def read_snapshot(self) -> Snapshot:
        with self._lock:
            latest = dict(self._latest)
        return Snapshot(latest)

    def clear(self) -> None:
        with self._lock:
            self._latest.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._latest)
