"""Sensor channel contract shared by every on-device sensor adapter."""
from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from sensor_agent.models import SensorKind, SensorReading
from sensor_agent.sensors.permissions import Permission, PermissionGate

logger = logging.getLogger(__name__)

ReadingCallback = Callable[[SensorReading], None]
RawCallback = Callable[[Mapping[str, Any]], None]

_handle_ids = itertools.count(1)


class SensorUnavailable(RuntimeError):
    """The sensor cannot be sampled: hardware is absent or permission was denied."""

    def __init__(self, kind: SensorKind, reason: str) -> None:
        super().__init__(f"{kind.value} unavailable: {reason}")
        self.kind = kind
        self.reason = reason


@dataclass(frozen=True)
class SubscriptionHandle:
    """Opaque token returned by ``SensorChannel.subscribe``."""

    kind: SensorKind
    token_id: int


class SensorBackend(Protocol):
    """Opaque producer of raw readings (an SDK, a simulator, a host API)."""

    def available(self) -> bool:
        ...

    def set_update_interval(self, interval_ms: int) -> None:
        ...

    def add_listener(self, callback: RawCallback) -> object:
        ...

    def remove_listener(self, token: object) -> None:
        ...


class SensorChannel:
    """Wraps one backend and turns its raw payloads into typed readings.

    Subclasses only pick the ``kind`` and, where the platform asks for one,
    the ``permission`` that must be granted before subscribing.
    """

    kind: SensorKind
    permission: Optional[Permission] = None

    def __init__(self, backend: SensorBackend, *, permissions: PermissionGate | None = None) -> None:
        self.backend = backend
        self.permissions = permissions
        self._lock = threading.Lock()
        self._listeners: Dict[SubscriptionHandle, object] = {}
        self.update_interval_ms: Optional[int] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind.value})"

    def configure(self, update_interval_ms: int) -> None:
        interval = max(int(update_interval_ms), 1)
        self.update_interval_ms = interval
        self.backend.set_update_interval(interval)

    def check_available(self) -> None:
        if self.permission is not None:
            if self.permissions is None or not self.permissions.is_granted(self.permission):
                raise SensorUnavailable(self.kind, f"permission {self.permission.value} not granted")
        if not self.backend.available():
            raise SensorUnavailable(self.kind, "sensor not present on this device")

    def subscribe(self, on_reading: ReadingCallback) -> SubscriptionHandle:
        self.check_available()
        handle = SubscriptionHandle(kind=self.kind, token_id=next(_handle_ids))

        def _deliver(raw: Mapping[str, Any]) -> None:
            reading = self.parse(raw)
            if reading is not None:
                on_reading(reading)

        token = self.backend.add_listener(_deliver)
        with self._lock:
            self._listeners[handle] = token
        logger.debug("Subscribed to %s (handle %s)", self.kind.value, handle.token_id)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        with self._lock:
            token = self._listeners.pop(handle, None)
        if token is None:
            return
        self.backend.remove_listener(token)
        logger.debug("Unsubscribed from %s (handle %s)", self.kind.value, handle.token_id)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def parse(self, raw: Mapping[str, Any]) -> Optional[SensorReading]:
        try:
            return SensorReading.from_raw(self.kind, raw)
        except ValueError as exc:
            logger.warning("Dropping malformed %s reading: %s", self.kind.value, exc)
            return None
