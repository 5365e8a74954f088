"""Periodic publish timer, independent of sensor arrival."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sensor_agent.services.connection import ConnectionManager
from sensor_agent.services.snapshot_store import SnapshotStore

logger = logging.getLogger(__name__)

PreTickHook = Callable[[], Awaitable[None]]


class PublishScheduler:
    """Fire a publish every ``interval_seconds`` with at most one tick in flight.

    Deadlines sit on a fixed grid (``start + n * interval``) of the loop
    clock. When a deadline arrives while the previous tick is still running,
    that deadline is skipped rather than queued.
    """

    def __init__(
        self,
        store: SnapshotStore,
        connection: ConnectionManager,
        *,
        topic: str,
        interval_seconds: float,
        pre_tick: PreTickHook | None = None,
        pre_tick_timeout_seconds: float | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.store = store
        self.connection = connection
        self.topic = topic
        self.interval_seconds = float(interval_seconds)
        self.pre_tick = pre_tick
        self.pre_tick_timeout_seconds = pre_tick_timeout_seconds
        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._stop_event = asyncio.Event()
        self.tick_count = 0
        self.skipped_ticks = 0
        self.published_ticks = 0
        self.last_tick_at: Optional[float] = None
        self.last_publish_at: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return bool(self._timer and not self._timer.done())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._timer = asyncio.create_task(self._run(), name="publish-scheduler")

    async def stop(self) -> None:
        """Cancel the timer and any in-flight tick; nothing fires after this returns."""

        self._stop_event.set()
        for task in (self._timer, self._inflight):
            if task is None or task.done() or task is asyncio.current_task():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._timer = None
        self._inflight = None

    async def reconfigure(
        self,
        interval_seconds: float,
        *,
        connection: ConnectionManager | None = None,
        pre_tick_timeout_seconds: float | None = None,
    ) -> None:
        """Cancel the timer and any in-flight tick, then start a fresh grid.

        The first tick on the new grid fires one full new period after this call.
        """

        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        await self.stop()
        self.interval_seconds = float(interval_seconds)
        if connection is not None:
            self.connection = connection
        if pre_tick_timeout_seconds is not None:
            self.pre_tick_timeout_seconds = pre_tick_timeout_seconds
        logger.info("Publish interval set to %gs", self.interval_seconds)
        self.start()

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.interval_seconds
        started = loop.time()
        n = 1
        while not self._stop_event.is_set():
            deadline = started + n * interval
            sleep_for = deadline - loop.time()
            if sleep_for > 0:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=sleep_for)
                    break
                except asyncio.TimeoutError:
                    pass
            n += 1
            if self._inflight is not None and not self._inflight.done():
                self.skipped_ticks += 1
                logger.debug("Publish tick skipped; previous tick still running")
                continue
            behind = int((loop.time() - deadline) // interval)
            if behind > 0:
                # The loop itself stalled; skip the missed grid points instead of bursting.
                self.skipped_ticks += behind
                n += behind
            self.tick_count += 1
            self.last_tick_at = loop.time()
            self._inflight = asyncio.create_task(self._tick(), name="publish-tick")

    async def _tick(self) -> None:
        try:
            if self.pre_tick is not None:
                try:
                    await asyncio.wait_for(self.pre_tick(), timeout=self.pre_tick_timeout_seconds)
                except asyncio.TimeoutError:
                    logger.debug("Pre-publish sampling timed out; publishing last known values")
                except Exception:
                    logger.exception("Pre-publish sampling failed")
            # Always read at tick time so the payload reflects the latest merges.
            snapshot = self.store.read_snapshot()
            if not self.connection.is_ready():
                logger.debug("Publish tick skipped; connection %s", self.connection.state.value)
                return
            if await self.connection.publish(self.topic, snapshot.to_json()):
                self.published_ticks += 1
                self.last_publish_at = datetime.now(timezone.utc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Unhandled publish tick error")
