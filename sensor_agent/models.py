"""Typed sensor readings and the merged snapshot published to the broker."""
from __future__ import annotations

import json
import math
import time
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Union


class SensorKind(str, Enum):
    """Sensor kinds; the value doubles as the key in the published payload."""

    ACCELEROMETER = "accelerometer"
    GYROSCOPE = "gyroscope"
    MAGNETOMETER = "magnetometer"
    BAROMETER = "barometer"
    DEVICE_MOTION = "deviceMotion"
    STEP_COUNT = "pedometer"
    BATTERY_LEVEL = "batteryLevel"
    LOCATION = "location"

    @classmethod
    def parse(cls, value: "SensorKind | str") -> "SensorKind":
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for kind in cls:
            if text in (kind.value, kind.name, kind.name.lower()):
                return kind
        raise ValueError(f"Unknown sensor kind {value!r}")


def _number(raw: Mapping[str, Any], key: str) -> float:
    value = raw.get(key)
    if value is None or isinstance(value, bool):
        raise ValueError(f"missing numeric field {key!r}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"field {key!r} must be finite")
    return number


def _optional_number(raw: Mapping[str, Any], key: str) -> Optional[float]:
    if raw.get(key) is None:
        return None
    return _number(raw, key)


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass(frozen=True)
class Vector3:
    x: float
    y: float
    z: float

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "Vector3":
        return cls(x=_number(raw, "x"), y=_number(raw, "y"), z=_number(raw, "z"))

    def as_payload(self) -> Dict[str, Any]:
        return {"x": self.x, "y": self.y, "z": self.z}


@dataclass(frozen=True)
class BarometerSample:
    pressure: float
    relative_altitude: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "BarometerSample":
        return cls(pressure=_number(raw, "pressure"), relative_altitude=_optional_number(raw, "relativeAltitude"))

    def as_payload(self) -> Dict[str, Any]:
        return _compact({"pressure": self.pressure, "relativeAltitude": self.relative_altitude})


@dataclass(frozen=True)
class RotationSample:
    alpha: float
    beta: float
    gamma: float

    @classmethod
    def from_raw(cls, raw: Optional[Mapping[str, Any]]) -> Optional["RotationSample"]:
        if not raw:
            return None
        return cls(alpha=_number(raw, "alpha"), beta=_number(raw, "beta"), gamma=_number(raw, "gamma"))

    def as_payload(self) -> Dict[str, Any]:
        return {"alpha": self.alpha, "beta": self.beta, "gamma": self.gamma}


@dataclass(frozen=True)
class DeviceMotionSample:
    acceleration: Optional[Vector3] = None
    acceleration_including_gravity: Optional[Vector3] = None
    rotation: Optional[RotationSample] = None
    rotation_rate: Optional[RotationSample] = None
    orientation: int = 0

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "DeviceMotionSample":
        def vector(key: str) -> Optional[Vector3]:
            value = raw.get(key)
            return Vector3.from_raw(value) if value else None

        orientation = raw.get("orientation", 0)
        return cls(
            acceleration=vector("acceleration"),
            acceleration_including_gravity=vector("accelerationIncludingGravity"),
            rotation=RotationSample.from_raw(raw.get("rotation")),
            rotation_rate=RotationSample.from_raw(raw.get("rotationRate")),
            orientation=int(orientation or 0),
        )

    def as_payload(self) -> Dict[str, Any]:
        return _compact(
            {
                "acceleration": self.acceleration.as_payload() if self.acceleration else None,
                "accelerationIncludingGravity": (
                    self.acceleration_including_gravity.as_payload() if self.acceleration_including_gravity else None
                ),
                "rotation": self.rotation.as_payload() if self.rotation else None,
                "rotationRate": self.rotation_rate.as_payload() if self.rotation_rate else None,
                "orientation": self.orientation,
            }
        )


@dataclass(frozen=True)
class StepCount:
    steps: int

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "StepCount":
        steps = int(_number(raw, "steps"))
        if steps < 0:
            raise ValueError("steps must be non-negative")
        return cls(steps=steps)

    def as_payload(self) -> int:
        return self.steps


@dataclass(frozen=True)
class BatteryLevel:
    level: float

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "BatteryLevel":
        level = _number(raw, "batteryLevel") if "batteryLevel" in raw else _number(raw, "level")
        return cls(level=max(0.0, min(level, 1.0)))

    def as_payload(self) -> float:
        return self.level


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    timestamp_ms: int
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    altitude_accuracy: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> "LocationFix":
        coords = raw.get("coords") or raw
        latitude = _number(coords, "latitude")
        longitude = _number(coords, "longitude")
        if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
            raise ValueError("coordinates out of range")
        stamp = raw.get("timestamp")
        return cls(
            latitude=latitude,
            longitude=longitude,
            timestamp_ms=int(stamp) if stamp is not None else int(time.time() * 1000),
            altitude=_optional_number(coords, "altitude"),
            accuracy=_optional_number(coords, "accuracy"),
            altitude_accuracy=_optional_number(coords, "altitudeAccuracy"),
            heading=_optional_number(coords, "heading"),
            speed=_optional_number(coords, "speed"),
        )

    def as_payload(self) -> Dict[str, Any]:
        return {
            "coords": {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "altitude": self.altitude,
                "accuracy": self.accuracy,
                "altitudeAccuracy": self.altitude_accuracy,
                "heading": self.heading,
                "speed": self.speed,
            },
            "timestamp": self.timestamp_ms,
        }


ReadingValue = Union[Vector3, BarometerSample, DeviceMotionSample, StepCount, BatteryLevel, LocationFix]

_PARSERS = {
    SensorKind.ACCELEROMETER: Vector3.from_raw,
    SensorKind.GYROSCOPE: Vector3.from_raw,
    SensorKind.MAGNETOMETER: Vector3.from_raw,
    SensorKind.BAROMETER: BarometerSample.from_raw,
    SensorKind.DEVICE_MOTION: DeviceMotionSample.from_raw,
    SensorKind.STEP_COUNT: StepCount.from_raw,
    SensorKind.BATTERY_LEVEL: BatteryLevel.from_raw,
    SensorKind.LOCATION: LocationFix.from_raw,
}


@dataclass(frozen=True)
class SensorReading:
    """One immutable reading; ``timestamp`` is the arrival time in epoch seconds."""

    kind: SensorKind
    value: ReadingValue
    timestamp: float

    @classmethod
    def from_raw(
        cls,
        kind: SensorKind,
        raw: Mapping[str, Any],
        *,
        timestamp: float | None = None,
    ) -> "SensorReading":
        parser = _PARSERS.get(kind)
        if parser is None:
            raise ValueError(f"No parser for sensor kind {kind!r}")
        if not isinstance(raw, Mapping):
            raise ValueError(f"{kind.value} payload must be an object, got {type(raw).__name__}")
        try:
            value = parser(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid {kind.value} payload: {exc}") from exc
        return cls(kind=kind, value=value, timestamp=time.time() if timestamp is None else float(timestamp))

    def as_payload(self) -> Any:
        return self.value.as_payload()


class Snapshot(Mapping[SensorKind, SensorReading]):
    """Point-in-time, read-only view of the latest reading per sensor kind."""

    __slots__ = ("_readings",)

    def __init__(self, readings: Mapping[SensorKind, SensorReading] | None = None) -> None:
        self._readings = MappingProxyType(dict(readings or {}))

    def __getitem__(self, kind: SensorKind) -> SensorReading:
        return self._readings[kind]

    def __iter__(self) -> Iterator[SensorKind]:
        return iter(self._readings)

    def __len__(self) -> int:
        return len(self._readings)

    def __repr__(self) -> str:
        return f"Snapshot({', '.join(kind.value for kind in self._readings)})"

    def as_payload(self) -> Dict[str, Any]:
        # Enum order keeps the published key order stable.
        return {kind.value: self._readings[kind].as_payload() for kind in SensorKind if kind in self._readings}

    def to_json(self) -> bytes:
        return json.dumps(self.as_payload(), separators=(",", ":")).encode("utf-8")
