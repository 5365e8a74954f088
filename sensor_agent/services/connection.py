"""Broker connection state machine.

The manager owns one transport session at a time and is the only writer of
``ConnectionState``. It never retries on its own: a failed manager stays
failed until something outside (the aggregator's reconnect supervisor)
calls ``connect`` again.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional

from aiomqtt import MqttError

from sensor_agent.config import BrokerConfig
from sensor_agent.services.transport import Transport, TransportFactory

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class ConnectionFailure(RuntimeError):
    """Handshake or transport failure; always converted into a state change."""


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.FAILED, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTED, ConnectionState.FAILED}),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING, ConnectionState.DISCONNECTED}),
}

StateListener = Callable[[ConnectionState, ConnectionState, str], None]


class ConnectionManager:
    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        connect_timeout_seconds: float = 10.0,
        qos: int = 1,
    ) -> None:
        self._transport_factory = transport_factory
        self.connect_timeout_seconds = float(connect_timeout_seconds)
        self.qos = int(qos)
        self._state = ConnectionState.DISCONNECTED
        self._transport: Transport | None = None
        self._attempt: asyncio.Task | None = None
        self._generation = 0
        self._listeners: List[StateListener] = []
        self.config: Optional[BrokerConfig] = None
        self.last_error: Optional[str] = None
        self.connected_at: Optional[datetime] = None
        self.last_publish_at: Optional[datetime] = None
        self.published_count = 0
        self.skipped_count = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def connect(self, config: BrokerConfig) -> "asyncio.Task[bool]":
        """Dispatch a handshake and return a task resolving to success.

        Must be called from the event loop. Network errors never escape; they
        resolve the task to ``False`` and leave the manager ``FAILED``.
        """

        if self._attempt is not None and self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return self._attempt
        self.config = config
        self._generation += 1
        self._transition(ConnectionState.CONNECTING, f"connect to {config.broker_host}:{config.broker_port}")
        self._attempt = asyncio.create_task(self._handshake(self._generation, config), name="mqtt-handshake")
        return self._attempt

    async def disconnect(self) -> None:
        """Close any session and settle in ``DISCONNECTED``. Safe from any state."""

        self._generation += 1
        attempt, self._attempt = self._attempt, None
        if attempt is not None and not attempt.done() and attempt is not asyncio.current_task():
            attempt.cancel()
            try:
                await attempt
            except asyncio.CancelledError:
                pass
        await self._drop_transport()
        if self._state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED, "disconnect requested")
        self.connected_at = None

    async def publish(self, topic: str, payload: bytes) -> bool:
        transport = self._transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            self.skipped_count += 1
            logger.debug("Publish to %s skipped; connection %s", topic, self._state.value)
            return False
        generation = self._generation
        try:
            await transport.publish(topic, payload, qos=self.qos)
        except Exception as exc:
            if not isinstance(exc, (MqttError, OSError, asyncio.TimeoutError)):
                logger.exception("Unexpected MQTT publish error")
            if generation == self._generation and self._transport is transport:
                self._fail(f"publish failed: {exc}")
                await self._drop_transport()
            return False
        self.published_count += 1
        self.last_publish_at = datetime.now(timezone.utc)
        return True

    async def _handshake(self, generation: int, config: BrokerConfig) -> bool:
        transport = self._transport_factory()
        transport.on_connection_lost = lambda exc: self._on_connection_lost(transport, exc)
        try:
            try:
                await asyncio.wait_for(
                    transport.connect(config.broker_host, config.broker_port),
                    timeout=self.connect_timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise ConnectionFailure(f"handshake timed out after {self.connect_timeout_seconds:g}s") from exc
            except (MqttError, OSError) as exc:
                raise ConnectionFailure(str(exc) or type(exc).__name__) from exc
            except Exception as exc:
                logger.exception("Unexpected MQTT handshake error")
                raise ConnectionFailure(f"unexpected error: {exc}") from exc
        except ConnectionFailure as exc:
            if generation == self._generation:
                self._fail(f"connect to {config.broker_host}:{config.broker_port} failed: {exc}")
            return False
        except asyncio.CancelledError:
            await self._close_quietly(transport)
            raise

        if generation != self._generation:
            # disconnect() superseded this attempt while the handshake was in flight.
            await self._close_quietly(transport)
            return False
        self._transport = transport
        self.last_error = None
        self.connected_at = datetime.now(timezone.utc)
        self._transition(ConnectionState.CONNECTED, f"connected to {config.broker_host}:{config.broker_port}")
        return True

    def _on_connection_lost(self, transport: Transport, exc: Optional[BaseException]) -> None:
        if transport is not self._transport:
            return
        self._transport = None
        self.connected_at = None
        self.last_error = f"connection lost: {exc}" if exc else "connection lost"
        if self._state is ConnectionState.CONNECTED:
            self._transition(ConnectionState.DISCONNECTED, self.last_error)

    def _fail(self, reason: str) -> None:
        self.last_error = reason
        logger.warning("MQTT %s", reason)
        if self._state is not ConnectionState.FAILED:
            self._transition(ConnectionState.FAILED, reason)

    async def _drop_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)

    @staticmethod
    async def _close_quietly(transport: Transport) -> None:
        transport.on_connection_lost = None
        try:
            await transport.disconnect()
        except (MqttError, OSError) as exc:
            logger.debug("Ignoring error while closing MQTT transport: %s", exc)

    def _transition(self, target: ConnectionState, reason: str) -> None:
        previous = self._state
        if target is previous:
            return
        if target not in TRANSITIONS[previous]:
            logger.error("Refusing connection transition %s -> %s (%s)", previous.value, target.value, reason)
            return
        self._state = target
        logger.info("MQTT connection %s -> %s: %s", previous.value, target.value, reason)
        for listener in list(self._listeners):
            try:
                listener(previous, target, reason)
            except Exception:
                logger.exception("Connection state listener failed")
