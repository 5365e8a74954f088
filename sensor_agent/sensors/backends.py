"""Sensor backends: fail-closed null, seeded simulator, and psutil battery.

Backends stand in for the platform sensor SDKs. Each one owns its sampling
thread so blocking device reads never touch the asyncio event loop; the
thread only runs while at least one listener is registered.
"""
from __future__ import annotations

import itertools
import logging
import math
import random
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional

import psutil

from sensor_agent import build_info
from sensor_agent.config import SimulationProfile
from sensor_agent.models import SensorKind

logger = logging.getLogger(__name__)

RawCallback = Callable[[Mapping[str, Any]], None]

DEFAULT_UPDATE_INTERVAL_MS = 1000
MIN_UPDATE_INTERVAL_MS = 10


class NullSensorBackend:
    """Fail-closed backend used when a sensor has no hardware behind it."""

    def __init__(self, *, reason: str = "no backend configured") -> None:
        self.reason = reason

    def available(self) -> bool:
        return False

    def set_update_interval(self, interval_ms: int) -> None:  # noqa: ARG002
        return

    def add_listener(self, callback: RawCallback) -> object:  # noqa: ARG002
        raise RuntimeError(f"sensor backend unavailable: {self.reason}")

    def remove_listener(self, token: object) -> None:  # noqa: ARG002
        return


class PollingSensorBackend:
    """Samples ``read_raw()`` on a background thread and fans out to listeners."""

    thread_name = "sensor-poller"

    def __init__(self, *, interval_ms: int = DEFAULT_UPDATE_INTERVAL_MS) -> None:
        self._interval = max(int(interval_ms), MIN_UPDATE_INTERVAL_MS) / 1000.0
        self._lock = threading.Lock()
        self._listeners: Dict[int, RawCallback] = {}
        self._tokens = itertools.count(1)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def available(self) -> bool:
        return True

    def read_raw(self) -> Optional[Mapping[str, Any]]:
        raise NotImplementedError

    def set_update_interval(self, interval_ms: int) -> None:
        with self._lock:
            self._interval = max(int(interval_ms), MIN_UPDATE_INTERVAL_MS) / 1000.0

    def add_listener(self, callback: RawCallback) -> object:
        token = next(self._tokens)
        with self._lock:
            self._listeners[token] = callback
        self._start()
        return token

    def remove_listener(self, token: object) -> None:
        with self._lock:
            self._listeners.pop(token, None)  # type: ignore[arg-type]
            idle = not self._listeners
        if idle:
            self._halt()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def _start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self.thread_name, daemon=True)
        self._thread.start()

    def _halt(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=2.0)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            cycle_start = time.monotonic()
            try:
                raw = self.read_raw()
            except Exception as exc:
                logger.debug("%s read failed: %s", self.thread_name, exc)
                raw = None
            if raw is not None:
                with self._lock:
                    listeners = list(self._listeners.values())
                for callback in listeners:
                    if self._stop.is_set():
                        break
                    try:
                        callback(raw)
                    except Exception:
                        logger.exception("%s listener raised", self.thread_name)
            with self._lock:
                interval = self._interval
            elapsed = time.monotonic() - cycle_start
            self._stop.wait(timeout=min(max(interval - elapsed, 0.0), threading.TIMEOUT_MAX))


class PsutilBatteryBackend(PollingSensorBackend):
    """Battery level from the host, reported as a 0..1 fraction."""

    thread_name = "battery-poller"

    def available(self) -> bool:
        return self._read_battery() is not None

    def read_raw(self) -> Optional[Mapping[str, Any]]:
        battery = self._read_battery()
        if battery is None:
            return None
        return {"batteryLevel": round(float(battery.percent) / 100.0, 4)}

    @staticmethod
    def _read_battery():
        sensors_battery = getattr(psutil, "sensors_battery", None)
        if sensors_battery is None:
            return None
        try:
            return sensors_battery()
        except (OSError, RuntimeError, NotImplementedError) as exc:
            logger.debug("psutil battery read failed: %s", exc)
            return None


class SimulatedSensorBackend(PollingSensorBackend):
    """Generate repeatable readings for one sensor kind.

    Values follow smooth waveforms keyed on elapsed time with seeded jitter,
    so runs with the same seed publish the same shapes.
    """

    def __init__(
        self,
        kind: SensorKind,
        profile: SimulationProfile,
        *,
        interval_ms: int = DEFAULT_UPDATE_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if build_info.BUILD_FLAVOR == "prod":
            raise RuntimeError("Simulation is not allowed in production builds")
        super().__init__(interval_ms=interval_ms)
        self.kind = kind
        self.profile = profile
        self.thread_name = f"sim-{kind.value}"
        seed = profile.seed if profile.seed is not None else 1
        self.random = random.Random(f"{seed}:{kind.value}")
        self._clock = clock
        self._started = clock()
        self._watch_started: Optional[float] = None

    def available(self) -> bool:
        return self.kind not in set(self.profile.unavailable or [])

    def add_listener(self, callback: RawCallback) -> object:
        if self._watch_started is None:
            self._watch_started = self._clock()
        return super().add_listener(callback)

    def remove_listener(self, token: object) -> None:
        super().remove_listener(token)
        if not self.running:
            self._watch_started = None

    def read_raw(self, now: Optional[float] = None) -> Optional[Mapping[str, Any]]:
        elapsed = (self._clock() if now is None else now) - self._started
        builder = getattr(self, f"_sample_{self.kind.name.lower()}")
        return builder(elapsed)

    def sample(self) -> Optional[Mapping[str, Any]]:
        """One-shot read used for on-demand sampling."""

        return self.read_raw()

    def steps_between(self, start: float, end: float) -> int:
        """Historical step count between two elapsed-time offsets."""

        if end <= start:
            return 0
        return self._cumulative_steps(end) - self._cumulative_steps(start)

    def _jitter(self, sigma: float) -> float:
        return self.random.gauss(0.0, sigma)

    @staticmethod
    def _cumulative_steps(elapsed: float) -> int:
        # Roughly 1.6 steps per second with a slow cadence wobble.
        return max(int(1.6 * elapsed + 4.0 * math.sin(elapsed / 30.0)), 0)

    def _sample_accelerometer(self, t: float) -> Dict[str, Any]:
        return {
            "x": round(0.05 * math.sin(t * 1.3) + self._jitter(0.005), 5),
            "y": round(0.05 * math.cos(t * 0.9) + self._jitter(0.005), 5),
            "z": round(1.0 + 0.02 * math.sin(t * 2.1) + self._jitter(0.005), 5),
        }

    def _sample_gyroscope(self, t: float) -> Dict[str, Any]:
        return {
            "x": round(0.1 * math.sin(t / 2.0) + self._jitter(0.01), 5),
            "y": round(0.1 * math.sin(t / 3.0 + 0.5) + self._jitter(0.01), 5),
            "z": round(0.05 * math.cos(t / 4.0) + self._jitter(0.01), 5),
        }

    def _sample_magnetometer(self, t: float) -> Dict[str, Any]:
        return {
            "x": round(20.0 + 2.0 * math.sin(t / 20.0) + self._jitter(0.2), 3),
            "y": round(-5.0 + 1.5 * math.cos(t / 25.0) + self._jitter(0.2), 3),
            "z": round(-40.0 + 1.0 * math.sin(t / 15.0) + self._jitter(0.2), 3),
        }

    def _sample_barometer(self, t: float) -> Dict[str, Any]:
        pressure = 1013.25 + 1.5 * math.sin(t / 120.0) + self._jitter(0.05)
        return {
            "pressure": round(pressure, 3),
            "relativeAltitude": round((1013.25 - pressure) * 8.3, 3),
        }

    def _sample_device_motion(self, t: float) -> Dict[str, Any]:
        accel = self._sample_accelerometer(t)
        return {
            "acceleration": {
                "x": round(accel["x"] * 9.81, 4),
                "y": round(accel["y"] * 9.81, 4),
                "z": round((accel["z"] - 1.0) * 9.81, 4),
            },
            "accelerationIncludingGravity": {key: round(value * 9.81, 4) for key, value in accel.items()},
            "rotation": {
                "alpha": round(math.pi * math.sin(t / 60.0), 4),
                "beta": round(0.2 * math.sin(t / 7.0), 4),
                "gamma": round(0.2 * math.cos(t / 9.0), 4),
            },
            "rotationRate": {
                "alpha": round(5.0 * math.cos(t / 60.0) + self._jitter(0.1), 4),
                "beta": round(2.0 * math.cos(t / 7.0) + self._jitter(0.1), 4),
                "gamma": round(2.0 * math.sin(t / 9.0) + self._jitter(0.1), 4),
            },
            "orientation": 0,
        }

    def _sample_step_count(self, t: float) -> Dict[str, Any]:
        # Live watch reports steps since the watch began.
        watch_started = self._watch_started if self._watch_started is not None else self._clock()
        since = watch_started - self._started
        return {"steps": self.steps_between(since, t)}

    def _sample_battery_level(self, t: float) -> Dict[str, Any]:
        return {"batteryLevel": round(max(1.0 - t / 36_000.0, 0.05), 4)}

    def _sample_location(self, t: float) -> Dict[str, Any]:
        return {
            "coords": {
                "latitude": round(59.9139 + 0.0005 * math.sin(t / 300.0) + self._jitter(0.00001), 7),
                "longitude": round(10.7522 + 0.0005 * math.cos(t / 300.0) + self._jitter(0.00001), 7),
                "altitude": round(23.0 + self._jitter(0.5), 2),
                "accuracy": 5.0,
                "altitudeAccuracy": 3.0,
                "heading": round((t * 2.0) % 360.0, 2),
                "speed": round(max(1.2 + self._jitter(0.1), 0.0), 3),
            },
            "timestamp": int(time.time() * 1000),
        }
