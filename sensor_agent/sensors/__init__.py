"""Sensor abstraction layer for the sensor agent."""
from __future__ import annotations

from .backends import NullSensorBackend, PollingSensorBackend, PsutilBatteryBackend, SimulatedSensorBackend
from .base import SensorBackend, SensorChannel, SensorUnavailable, SubscriptionHandle
from .channels import (
    AccelerometerChannel,
    BarometerChannel,
    BatteryLevelChannel,
    DeviceMotionChannel,
    GyroscopeChannel,
    LocationChannel,
    MagnetometerChannel,
    StepCounterChannel,
    build_channels,
)
from .permissions import Permission, PermissionGate, StaticPermissionGate

__all__ = [
    "AccelerometerChannel",
    "BarometerChannel",
    "BatteryLevelChannel",
    "DeviceMotionChannel",
    "GyroscopeChannel",
    "LocationChannel",
    "MagnetometerChannel",
    "NullSensorBackend",
    "Permission",
    "PermissionGate",
    "PollingSensorBackend",
    "PsutilBatteryBackend",
    "SensorBackend",
    "SensorChannel",
    "SensorUnavailable",
    "SimulatedSensorBackend",
    "StaticPermissionGate",
    "StepCounterChannel",
    "SubscriptionHandle",
    "build_channels",
]
