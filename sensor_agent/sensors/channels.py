"""Concrete sensor channels, one per sensor kind."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Mapping, Optional, Type

from sensor_agent.config import Settings
from sensor_agent.models import SensorKind, SensorReading, StepCount
from sensor_agent.sensors.backends import NullSensorBackend, PsutilBatteryBackend, SimulatedSensorBackend
from sensor_agent.sensors.base import SensorBackend, SensorChannel, SensorUnavailable
from sensor_agent.sensors.permissions import Permission, PermissionGate

logger = logging.getLogger(__name__)


class AccelerometerChannel(SensorChannel):
    kind = SensorKind.ACCELEROMETER


class GyroscopeChannel(SensorChannel):
    kind = SensorKind.GYROSCOPE


class MagnetometerChannel(SensorChannel):
    kind = SensorKind.MAGNETOMETER


class BarometerChannel(SensorChannel):
    kind = SensorKind.BAROMETER


class DeviceMotionChannel(SensorChannel):
    kind = SensorKind.DEVICE_MOTION


class BatteryLevelChannel(SensorChannel):
    kind = SensorKind.BATTERY_LEVEL


class StepCounterChannel(SensorChannel):
    """Live step watch plus a historical query over a time range."""

    kind = SensorKind.STEP_COUNT
    permission = Permission.STEP_COUNTING

    async def query_history(self, start: float, end: float) -> SensorReading:
        """Steps taken between two monotonic-clock offsets of the backend."""

        self.check_available()
        steps_between = getattr(self.backend, "steps_between", None)
        if steps_between is None:
            raise SensorUnavailable(self.kind, "backend has no step history")
        steps = await asyncio.to_thread(steps_between, start, end)
        return SensorReading(kind=self.kind, value=StepCount(steps=int(steps)), timestamp=time.time())


class LocationChannel(SensorChannel):
    """Continuous position watch plus a one-shot current position fetch."""

    kind = SensorKind.LOCATION
    permission = Permission.FOREGROUND_LOCATION

    async def current(self) -> Optional[SensorReading]:
        self.check_available()
        sample = getattr(self.backend, "sample", None)
        if sample is None:
            raise SensorUnavailable(self.kind, "backend cannot fetch a one-shot position")
        raw = await asyncio.to_thread(sample)
        if raw is None:
            return None
        return self.parse(raw)


CHANNEL_TYPES: Dict[SensorKind, Type[SensorChannel]] = {
    SensorKind.ACCELEROMETER: AccelerometerChannel,
    SensorKind.GYROSCOPE: GyroscopeChannel,
    SensorKind.MAGNETOMETER: MagnetometerChannel,
    SensorKind.BAROMETER: BarometerChannel,
    SensorKind.DEVICE_MOTION: DeviceMotionChannel,
    SensorKind.STEP_COUNT: StepCounterChannel,
    SensorKind.BATTERY_LEVEL: BatteryLevelChannel,
    SensorKind.LOCATION: LocationChannel,
}


def _backend_for(kind: SensorKind, settings: Settings) -> SensorBackend:
    if kind is SensorKind.BATTERY_LEVEL:
        if settings.battery_backend == "psutil":
            return PsutilBatteryBackend()
        if settings.battery_backend == "none":
            return NullSensorBackend(reason="battery backend disabled")
    simulation = settings.simulation
    if simulation.enabled and (kind in simulation.sensors or kind is SensorKind.BATTERY_LEVEL):
        return SimulatedSensorBackend(kind, simulation)
    return NullSensorBackend(reason="no hardware backend")


def build_channels(
    settings: Settings,
    permissions: PermissionGate,
    *,
    backends: Mapping[SensorKind, SensorBackend] | None = None,
) -> Dict[SensorKind, SensorChannel]:
    """Create one channel per sensor kind, using ``backends`` overrides where given."""

    overrides = dict(backends or {})
    channels: Dict[SensorKind, SensorChannel] = {}
    for kind, channel_type in CHANNEL_TYPES.items():
        backend = overrides.get(kind) or _backend_for(kind, settings)
        channels[kind] = channel_type(backend, permissions=permissions)
    return channels
