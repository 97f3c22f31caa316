"""Tests for best-effort fan-out."""

import asyncio
import logging

import pytest
from conftest import MockWebSocket
from websockets.protocol import State

from crowdflash.broadcast import Broadcaster, Group
from crowdflash.registry import ConnectionRegistry, Role

pytestmark = pytest.mark.asyncio


@pytest.fixture()
def registry():
    return ConnectionRegistry(token_verifier=lambda t: t == "ok")


@pytest.fixture()
def broadcaster(registry):
    return Broadcaster(registry, send_timeout=0.05)


async def test_reaches_every_open_client(registry, broadcaster):
    sockets = [MockWebSocket() for _ in range(5)]
    for ws in sockets:
        registry.register(ws, Role.CLIENT)

    delivered = await broadcaster.broadcast(Group.CLIENTS, {"type": "flash_on"})

    assert delivered == 5
    for ws in sockets:
        assert ws.messages() == [{"type": "flash_on"}]


async def test_serialized_once(registry, broadcaster):
    a, b = MockWebSocket(), MockWebSocket()
    registry.register(a, Role.CLIENT)
    registry.register(b, Role.CLIENT)
    await broadcaster.to_clients({"type": "set_bpm", "bpm": 128})
    assert a.sent == b.sent == ['{"type":"set_bpm","bpm":128}']


async def test_groups_are_disjoint(registry, broadcaster):
    client, admin = MockWebSocket(), MockWebSocket()
    registry.register(client, Role.CLIENT)
    registry.register(admin, Role.ADMIN, token="ok")

    await broadcaster.to_admins({"type": "metrics"})
    await broadcaster.to_clients({"type": "flash_off"})

    assert admin.messages() == [{"type": "metrics"}]
    assert client.messages() == [{"type": "flash_off"}]


@pytest.mark.parametrize("state", [State.CONNECTING, State.CLOSING, State.CLOSED])
async def test_skips_sockets_not_open(registry, broadcaster, state):
    open_ws, other = MockWebSocket(), MockWebSocket()
    registry.register(open_ws, Role.CLIENT)
    registry.register(other, Role.CLIENT)
    other.state = state

    delivered = await broadcaster.to_clients({"type": "flash_on"})

    assert delivered == 1
    assert other.sent == []
    assert broadcaster.failed_sends == 0


async def test_failed_send_is_not_raised(registry, broadcaster):
    good, bad = MockWebSocket(), MockWebSocket(fail_sends=True)
    registry.register(good, Role.CLIENT)
    registry.register(bad, Role.CLIENT)

    delivered = await broadcaster.to_clients({"type": "emergency_stop"})

    assert delivered == 1
    assert good.messages() == [{"type": "emergency_stop"}]
    assert broadcaster.failed_sends == 1
    # Best effort only: the failing socket stays registered until its close event
    assert registry.client_count == 2


async def test_unexpected_send_error_is_contained(registry, broadcaster, caplog):
    class BrokenWebSocket(MockWebSocket):
        async def send(self, message):
            raise RuntimeError("encoder exploded")

    first, broken, last = MockWebSocket(), BrokenWebSocket(), MockWebSocket()
    for ws in (first, broken, last):
        registry.register(ws, Role.CLIENT)

    with caplog.at_level(logging.WARNING, logger="crowdflash.broadcast"):
        delivered = await broadcaster.to_clients({"type": "emergency_stop"})

    assert delivered == 2
    assert first.messages() == [{"type": "emergency_stop"}]
    assert last.messages() == [{"type": "emergency_stop"}]
    assert broadcaster.failed_sends == 1
    assert broadcaster.messages_sent == 2
    assert "encoder exploded" in caplog.text


async def test_slow_socket_times_out(registry, broadcaster):
    class SlowWebSocket(MockWebSocket):
        async def send(self, message):
            await asyncio.sleep(1.0)

    fast, slow = MockWebSocket(), SlowWebSocket()
    registry.register(fast, Role.CLIENT)
    registry.register(slow, Role.CLIENT)

    delivered = await broadcaster.to_clients({"type": "flash_on"})

    assert delivered == 1
    assert broadcaster.failed_sends == 1


async def test_empty_group(broadcaster):
    assert await broadcaster.to_admins({"type": "metrics"}) == 0
    assert broadcaster.broadcasts == 1


async def test_send_single(broadcaster):
    ws = MockWebSocket()
    assert await broadcaster.send(ws, {"type": "heartbeat_ack"}) is True
    assert ws.messages() == [{"type": "heartbeat_ack"}]


async def test_send_single_closed(broadcaster):
    ws = MockWebSocket(state=State.CLOSED)
    assert await broadcaster.send(ws, {"type": "heartbeat_ack"}) is False
    assert ws.sent == []


async def test_counters(registry, broadcaster):
    for _ in range(3):
        registry.register(MockWebSocket(), Role.CLIENT)
    await broadcaster.to_clients({"type": "flash_on"})
    await broadcaster.to_clients({"type": "flash_off"})
    assert broadcaster.broadcasts == 2
    assert broadcaster.messages_sent == 6
