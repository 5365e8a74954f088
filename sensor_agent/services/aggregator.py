"""Top-level orchestration: sensors into the store, the store out to the broker."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Set

from sensor_agent.config import BrokerConfig, Settings
from sensor_agent.models import SensorKind, SensorReading
from sensor_agent.sensors.base import SensorChannel, SensorUnavailable, SubscriptionHandle
from sensor_agent.sensors.channels import LocationChannel
from sensor_agent.sensors.permissions import Permission, PermissionGate
from sensor_agent.services.config_store import ConfigStore
from sensor_agent.services.connection import ConnectionManager, ConnectionState
from sensor_agent.services.scheduler import PublishScheduler
from sensor_agent.services.snapshot_store import SnapshotStore
from sensor_agent.services.transport import TransportFactory

logger = logging.getLogger(__name__)

STARTUP_PERMISSIONS = (Permission.FOREGROUND_LOCATION, Permission.STEP_COUNTING)


class Aggregator:
    """Own the sampling session, the publish timer and the broker connection.

    All state changes happen on the event loop that called ``start``. Sensor
    backends may call back from their own threads; those deliveries hop onto
    the loop before they are checked against the current epoch and merged.
    """

    def __init__(
        self,
        settings: Settings,
        channels: Mapping[SensorKind, SensorChannel],
        permissions: PermissionGate,
        transport_factory: TransportFactory,
        config_store: ConfigStore,
        *,
        store: SnapshotStore | None = None,
    ) -> None:
        self.settings = settings
        self.channels: Dict[SensorKind, SensorChannel] = dict(channels)
        self.permissions = permissions
        self.transport_factory = transport_factory
        self.config_store = config_store
        self.store = store or SnapshotStore()
        self.config: BrokerConfig = settings.default_broker_config
        self.connection = self._new_connection()
        self.scheduler: PublishScheduler | None = None
        self.connect_intent = False
        self.epoch = 0
        self.dropped_callbacks = 0
        self.unavailable: Dict[SensorKind, str] = {}
        self._handles: Dict[SensorKind, SubscriptionHandle] = {}
        self._sampling = False
        self._started = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lifecycle_lock = asyncio.Lock()
        self._supervisor_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    # Lifecycle

    async def start(self) -> None:
        async with self._lifecycle_lock:
            if self._started:
                return
            self._loop = asyncio.get_running_loop()
            self._stop_event.clear()
            self.config = self.config_store.load_broker_config(self.settings.default_broker_config)
            logger.info(
                "Loaded broker config %s:%s every %ss",
                self.config.broker_host,
                self.config.broker_port,
                self.config.publish_interval_seconds,
            )
            await self._request_permissions()
            self._subscribe_all()
            self._start_scheduler()
            self._supervisor_task = asyncio.create_task(self._supervise_connection(), name="mqtt-reconnect")
            self._started = True
        if self.settings.connect_on_start:
            await self.set_connected(True)

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            self._stop_event.set()
            self._unsubscribe_all()
            task, self._supervisor_task = self._supervisor_task, None
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await self._stop_scheduler()
            await self.connection.disconnect()
            self._started = False
        logger.info("Aggregator stopped")

    # Connection intent

    async def set_connected(self, connected: bool) -> ConnectionState:
        """The single connect/disconnect toggle. Sensors stay subscribed either way."""

        async with self._lifecycle_lock:
            self.connect_intent = bool(connected)
            if self.connect_intent:
                self.connection.connect(self.config)
            else:
                await self.connection.disconnect()
            return self.connection.state

    async def _supervise_connection(self) -> None:
        """Re-issue ``connect`` on a fixed tick while the user wants a connection."""

        interval = self.settings.reconnect_interval_seconds
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                async with self._lifecycle_lock:
                    state = self.connection.state
                    if self.connect_intent and state in (ConnectionState.FAILED, ConnectionState.DISCONNECTED):
                        logger.info("Reconnecting to MQTT broker (was %s)", state.value)
                        self.connection.connect(self.config)
            except Exception:
                logger.exception("Unhandled reconnect supervisor error")

    # Configuration

    async def update_config(self, **edits: Any) -> BrokerConfig:
        """Apply user edits, persist them, then restart the sampling session.

        Raises ``ConfigInvalid`` on bad input and ``OSError`` when the edit cannot
        be saved; in both cases the previous config stays in effect.
        """

        async with self._lifecycle_lock:
            previous = self.config
            updated = previous.apply_edits(**edits)
            if updated == previous:
                return previous
            try:
                self.config_store.save_broker_config(updated)
            except OSError:
                logger.exception("Failed to persist broker config; keeping %s", previous.model_dump())
                raise
            self.config = updated
            if not self._started:
                return updated

            # Any effective edit restarts the sensor session under a new epoch.
            scheduler = self.scheduler
            if scheduler is not None:
                await scheduler.stop()
            self._unsubscribe_all()
            if (updated.broker_host, updated.broker_port) != (previous.broker_host, previous.broker_port):
                await self.connection.disconnect()
                self.connection = self._new_connection()
                if self.connect_intent:
                    self.connection.connect(updated)
            self._subscribe_all()
            if scheduler is None:
                self._start_scheduler()
            else:
                await scheduler.reconfigure(
                    updated.publish_interval_seconds,
                    connection=self.connection,
                    pre_tick_timeout_seconds=self._pre_tick_timeout(),
                )
            logger.info(
                "Broker config now %s:%s every %ss",
                updated.broker_host,
                updated.broker_port,
                updated.publish_interval_seconds,
            )
            return updated

    # Sampling session

    async def _request_permissions(self) -> None:
        timeout = self.settings.permission_timeout_seconds

        async def _ask(permission: Permission) -> None:
            try:
                granted = await asyncio.wait_for(self.permissions.request(permission), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("Permission %s request timed out; treating as denied", permission.value)
                return
            except Exception:
                logger.exception("Permission %s request failed; treating as denied", permission.value)
                return
            if not granted:
                logger.warning("Permission %s denied; dependent sensors stay absent", permission.value)

        await asyncio.gather(*(_ask(permission) for permission in STARTUP_PERMISSIONS))

    def _subscribe_all(self) -> None:
        self.epoch += 1
        epoch = self.epoch
        self._sampling = True
        self.unavailable = {}
        interval_ms = self.config.sensor_update_interval_ms
        for kind, channel in self.channels.items():
            if self._on_demand(kind):
                continue
            try:
                channel.configure(interval_ms)
                self._handles[kind] = channel.subscribe(self._callback_for(epoch, kind))
            except SensorUnavailable as exc:
                self.unavailable[kind] = exc.reason
                logger.warning("Sensor %s unavailable: %s", kind.value, exc.reason)
            except Exception as exc:
                self.unavailable[kind] = str(exc)
                logger.exception("Failed to subscribe to %s", kind.value)
        logger.info(
            "Sampling epoch %s: %s active, %s unavailable",
            epoch,
            len(self._handles),
            len(self.unavailable),
        )

    def _unsubscribe_all(self) -> None:
        # Bump the epoch first so deliveries already queued on the loop are discarded.
        self.epoch += 1
        self._sampling = False
        handles, self._handles = self._handles, {}
        for kind, handle in handles.items():
            try:
                self.channels[kind].unsubscribe(handle)
            except Exception:
                logger.exception("Failed to unsubscribe from %s", kind.value)

    def _callback_for(self, epoch: int, kind: SensorKind) -> Callable[[SensorReading], None]:
        def _on_reading(reading: SensorReading) -> None:
            loop = self._loop
            if loop is not None and loop.is_running():
                try:
                    current = asyncio.get_running_loop()
                except RuntimeError:
                    current = None
                if current is not loop:
                    try:
                        loop.call_soon_threadsafe(self._apply_reading, epoch, kind, reading)
                    except RuntimeError:
                        # Loop closed underneath a late backend thread.
                        pass
                    return
            self._apply_reading(epoch, kind, reading)

        return _on_reading

    def _apply_reading(self, epoch: int, kind: SensorKind, reading: SensorReading) -> None:
        if epoch != self.epoch or not self._sampling:
            self.dropped_callbacks += 1
            logger.debug("Dropping %s reading from superseded epoch %s", kind.value, epoch)
            return
        self.store.merge(kind, reading)

    def _on_demand(self, kind: SensorKind) -> bool:
        return kind is SensorKind.LOCATION and self.settings.location_mode == "on_demand"

    async def _sample_on_demand(self) -> None:
        channel = self.channels.get(SensorKind.LOCATION)
        if not isinstance(channel, LocationChannel):
            return
        epoch = self.epoch
        try:
            reading = await channel.current()
        except SensorUnavailable as exc:
            if SensorKind.LOCATION not in self.unavailable:
                self.unavailable[SensorKind.LOCATION] = exc.reason
                logger.warning("Sensor %s unavailable: %s", SensorKind.LOCATION.value, exc.reason)
            return
        if reading is not None:
            self._apply_reading(epoch, SensorKind.LOCATION, reading)

    # Wiring

    def _new_connection(self) -> ConnectionManager:
        return ConnectionManager(
            self.transport_factory,
            connect_timeout_seconds=self.settings.connect_timeout_seconds,
            qos=self.settings.mqtt_qos,
        )

    def _start_scheduler(self) -> None:
        on_demand = self.settings.location_mode == "on_demand"
        self.scheduler = PublishScheduler(
            self.store,
            self.connection,
            topic=self.settings.publish_topic,
            interval_seconds=self.config.publish_interval_seconds,
            pre_tick=self._sample_on_demand if on_demand else None,
            pre_tick_timeout_seconds=self._pre_tick_timeout(),
        )
        self.scheduler.start()

    def _pre_tick_timeout(self) -> float:
        return min(self.settings.on_demand_timeout_seconds, self.config.publish_interval_seconds / 2)

    async def _stop_scheduler(self) -> None:
        scheduler, self.scheduler = self.scheduler, None
        if scheduler is not None:
            await scheduler.stop()

    # Status

    @property
    def active_sensors(self) -> Set[SensorKind]:
        return set(self._handles)

    def status(self) -> Dict[str, object]:
        scheduler = self.scheduler
        last_publish: Optional[datetime] = self.connection.last_publish_at
        return {
            "connection": {
                "state": self.connection.state.value,
                "intent": self.connect_intent,
                "last_error": self.connection.last_error,
                "connected_at": self.connection.connected_at.isoformat() if self.connection.connected_at else None,
                "published": self.connection.published_count,
                "skipped": self.connection.skipped_count,
            },
            "config": self.config.model_dump(),
            "topic": self.settings.publish_topic,
            "epoch": self.epoch,
            "sensors": {
                "active": sorted(kind.value for kind in self._handles),
                "unavailable": {kind.value: reason for kind, reason in self.unavailable.items()},
                "dropped_callbacks": self.dropped_callbacks,
            },
            "scheduler": {
                "running": bool(scheduler and scheduler.running),
                "interval_seconds": scheduler.interval_seconds if scheduler else None,
                "ticks": scheduler.tick_count if scheduler else 0,
                "skipped_ticks": scheduler.skipped_ticks if scheduler else 0,
            },
            "last_publish_at": last_publish.isoformat() if last_publish else None,
            "snapshot": self.store.read_snapshot().as_payload(),
        }
