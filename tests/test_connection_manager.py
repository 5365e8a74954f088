from __future__ import annotations

import asyncio

import pytest
from aiomqtt import MqttError

from fakes import FakeBroker
from sensor_agent.config import BrokerConfig
from sensor_agent.services.connection import TRANSITIONS, ConnectionManager, ConnectionState

CONFIG = BrokerConfig(broker_host="broker.local", broker_port=1883, publish_interval_seconds=1)


def _manager(broker: FakeBroker, **kwargs) -> ConnectionManager:
    return ConnectionManager(broker, **kwargs)


@pytest.mark.anyio
async def test_connect_moves_through_connecting_to_connected():
    broker = FakeBroker(connect_delay=0.05)
    manager = _manager(broker)
    seen = []
    manager.add_listener(lambda old, new, reason: seen.append((old, new)))

    assert manager.state is ConnectionState.DISCONNECTED
    attempt = manager.connect(CONFIG)
    assert manager.state is ConnectionState.CONNECTING
    assert manager.is_ready() is False

    assert await attempt is True
    assert manager.state is ConnectionState.CONNECTED
    assert manager.is_ready() is True
    assert broker.connect_calls == [("broker.local", 1883)]
    assert seen == [
        (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING),
        (ConnectionState.CONNECTING, ConnectionState.CONNECTED),
    ]


@pytest.mark.anyio
async def test_connect_while_connecting_returns_same_attempt():
    broker = FakeBroker(connect_delay=0.05)
    manager = _manager(broker)
    first = manager.connect(CONFIG)
    second = manager.connect(CONFIG)
    assert first is second
    await first
    assert len(broker.transports) == 1


@pytest.mark.anyio
async def test_refused_handshake_fails_without_retry():
    broker = FakeBroker(failures=1)
    manager = _manager(broker)

    assert await manager.connect(CONFIG) is False
    assert manager.state is ConnectionState.FAILED
    assert "connection refused" in (manager.last_error or "")

    await asyncio.sleep(0.05)
    assert len(broker.connect_calls) == 1
    assert manager.state is ConnectionState.FAILED


@pytest.mark.anyio
async def test_failed_manager_can_connect_again():
    broker = FakeBroker(failures=1)
    manager = _manager(broker)
    await manager.connect(CONFIG)
    assert manager.state is ConnectionState.FAILED

    assert await manager.connect(CONFIG) is True
    assert manager.state is ConnectionState.CONNECTED
    assert manager.last_error is None


@pytest.mark.anyio
async def test_handshake_timeout_fails():
    broker = FakeBroker(connect_delay=1.0)
    manager = _manager(broker, connect_timeout_seconds=0.05)

    assert await manager.connect(CONFIG) is False
    assert manager.state is ConnectionState.FAILED
    assert "timed out" in (manager.last_error or "")


@pytest.mark.anyio
async def test_unexpected_handshake_error_fails():
    broker = FakeBroker()

    async def explode(host, port):  # noqa: ARG001
        raise KeyError("boom")

    def factory():
        transport = broker()
        transport.connect = explode
        return transport

    manager = ConnectionManager(factory)
    assert await manager.connect(CONFIG) is False
    assert manager.state is ConnectionState.FAILED


@pytest.mark.anyio
async def test_publish_while_disconnected_is_skipped_without_blocking():
    broker = FakeBroker()
    manager = _manager(broker)

    result = await asyncio.wait_for(manager.publish("sensor/data", b"{}"), timeout=0.1)
    assert result is False
    assert manager.skipped_count == 1
    assert broker.published == []


@pytest.mark.anyio
async def test_publish_while_connecting_is_skipped():
    broker = FakeBroker(connect_delay=0.2)
    manager = _manager(broker)
    attempt = manager.connect(CONFIG)

    assert await manager.publish("sensor/data", b"{}") is False
    assert broker.published == []
    await manager.disconnect()
    assert attempt.cancelled() or attempt.done()


@pytest.mark.anyio
async def test_publish_when_connected_delivers_with_qos():
    broker = FakeBroker()
    manager = _manager(broker, qos=1)
    await manager.connect(CONFIG)

    assert await manager.publish("sensor/data", b'{"a":1}') is True
    assert broker.published == [("sensor/data", b'{"a":1}', 1)]
    assert manager.published_count == 1
    assert manager.last_publish_at is not None


@pytest.mark.anyio
async def test_publish_failure_marks_failed_and_drops_transport():
    broker = FakeBroker()
    manager = _manager(broker)
    await manager.connect(CONFIG)
    transport = broker.current
    broker.publish_error = MqttError("broken pipe")

    assert await manager.publish("sensor/data", b"{}") is False
    assert manager.state is ConnectionState.FAILED
    assert transport.disconnects == 1
    assert "publish failed" in (manager.last_error or "")


@pytest.mark.anyio
async def test_connection_lost_returns_to_disconnected():
    broker = FakeBroker()
    manager = _manager(broker)
    await manager.connect(CONFIG)

    broker.current.drop(MqttError("keepalive timeout"))
    assert manager.state is ConnectionState.DISCONNECTED
    assert "keepalive timeout" in (manager.last_error or "")
    assert await manager.publish("sensor/data", b"{}") is False


@pytest.mark.anyio
async def test_disconnect_is_idempotent_from_every_state():
    broker = FakeBroker(failures=1)
    manager = _manager(broker)

    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED

    await manager.connect(CONFIG)
    assert manager.state is ConnectionState.FAILED
    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED

    await manager.connect(CONFIG)
    assert manager.state is ConnectionState.CONNECTED
    await manager.disconnect()
    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED
    assert broker.current.disconnects == 1


@pytest.mark.anyio
async def test_disconnect_during_handshake_discards_late_result():
    broker = FakeBroker(connect_delay=0.2)
    manager = _manager(broker)
    manager.connect(CONFIG)
    await asyncio.sleep(0.01)

    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED
    await asyncio.sleep(0.3)
    assert manager.state is ConnectionState.DISCONNECTED
    assert broker.current.connected is False


def test_illegal_transition_is_refused():
    manager = _manager(FakeBroker())
    manager._transition(ConnectionState.CONNECTED, "skip the handshake")
    assert manager.state is ConnectionState.DISCONNECTED
    assert set(TRANSITIONS) == set(ConnectionState)
