"""Tests for the participant device client and swarm simulator."""

import argparse
import asyncio
import json
import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import MockWebSocket

from crowdflash.device_client import (
    DeviceClient,
    SimulatedBattery,
    _positive_int,
    run_swarm,
    with_client_role,
)

URL = "ws://localhost:3000"


class TestWithClientRole:
    @pytest.mark.parametrize(
        "url, expected",
        [
            ("ws://localhost:3000", "ws://localhost:3000/?role=client"),
            ("ws://host/?role=admin", "ws://host/?role=client"),
            ("wss://host/show?room=a", "wss://host/show?room=a&role=client"),
        ],
    )
    def test_role_set(self, url, expected):
        assert with_client_role(url) == expected


class TestReconnectBackoff:
    def test_schedule(self):
        client = DeviceClient(URL)
        delays = [client.next_reconnect_delay() for _ in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_custom_cap(self):
        client = DeviceClient(URL, max_reconnect_delay=3.0)
        assert [client.next_reconnect_delay() for _ in range(3)] == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_reset_on_success(self):
        client = DeviceClient(URL)
        for _ in range(4):
            client.next_reconnect_delay()

        with patch("crowdflash.device_client.connect", AsyncMock(return_value=MockWebSocket())):
            assert await client.connect() is True

        assert client.connected is True
        assert client.next_reconnect_delay() == 1.0


@pytest.mark.asyncio
class TestConnect:
    async def test_refused(self):
        client = DeviceClient(URL)
        with patch(
            "crowdflash.device_client.connect", AsyncMock(side_effect=ConnectionRefusedError())
        ):
            assert await client.connect() is False
        assert client.connected is False

    async def test_timeout(self):
        client = DeviceClient(URL, connect_timeout=0.05)

        async def slow_connect(url):
            await asyncio.sleep(1.0)
            return MockWebSocket()

        with patch("crowdflash.device_client.connect", side_effect=slow_connect):
            assert await client.connect() is False

    async def test_connects_with_client_role(self):
        client = DeviceClient("ws://example.test:3000")
        mock_connect = AsyncMock(return_value=MockWebSocket())
        with patch("crowdflash.device_client.connect", mock_connect):
            await client.connect()
        mock_connect.assert_called_once_with("ws://example.test:3000/?role=client")


@pytest.mark.asyncio
class TestMessaging:
    async def test_send_when_disconnected(self):
        assert await DeviceClient(URL).send({"type": "heartbeat"}) is False

    async def test_report_battery(self):
        client = DeviceClient(URL, battery_provider=lambda: 73)
        client.ws = MockWebSocket()
        client._connected = True

        assert await client.report_battery() is True
        assert client.ws.messages() == [{"type": "battery", "level": 73}]

    async def test_report_battery_without_reading(self):
        client = DeviceClient(URL, battery_provider=lambda: None)
        client.ws = MockWebSocket()
        client._connected = True

        assert await client.report_battery() is False
        assert client.ws.sent == []

    async def test_send_on_closed_socket(self):
        client = DeviceClient(URL)
        client.ws = MockWebSocket(fail_sends=True)
        client._connected = True

        assert await client.send({"type": "heartbeat"}) is False
        assert client.connected is False

    async def test_dispatch_tracks_id_and_count(self):
        client = DeviceClient(URL)
        await client._dispatch({"type": "connected", "id": "D0042"})
        await client._dispatch({"type": "client_count", "count": 17})
        assert client.device_id == "D0042"
        assert client.client_count == 17

    async def test_dispatch_handlers(self):
        client = DeviceClient(URL)
        sync_handler = MagicMock()
        async_handler = AsyncMock()
        client.on("flash_on", sync_handler)
        client.on("set_bpm", async_handler)

        await client._dispatch({"type": "flash_on"})
        await client._dispatch({"type": "set_bpm", "bpm": 128})
        await client._dispatch({"type": "flash_off"})

        sync_handler.assert_called_once_with({"type": "flash_on"})
        async_handler.assert_awaited_once_with({"type": "set_bpm", "bpm": 128})

    async def test_handler_error_is_contained(self):
        client = DeviceClient(URL)
        client.on("emergency_stop", MagicMock(side_effect=RuntimeError("boom")))
        await client._dispatch({"type": "emergency_stop"})

    async def test_session_receives_and_heartbeats(self):
        client = DeviceClient(
            URL, battery_provider=lambda: 55, heartbeat_interval=0.01, battery_interval=10
        )
        ws = MockWebSocket()
        client.ws = ws
        client._connected = True
        received = []
        client.on("flash_pulse", received.append)

        session = asyncio.create_task(client._session())
        ws.feed({"type": "connected", "id": "D0001"})
        ws.feed("not json")
        ws.feed({"type": "flash_pulse", "duration": 100})
        await asyncio.sleep(0.05)
        ws.drop()
        await asyncio.wait_for(session, timeout=1.0)

        assert client.device_id == "D0001"
        assert received == [{"type": "flash_pulse", "duration": 100}]
        sent_types = [json.loads(m)["type"] for m in ws.sent]
        assert sent_types[0] == "battery"
        assert "heartbeat" in sent_types
        assert client.connected is False
        assert client._tasks == []

    async def test_run_reconnects_until_stopped(self):
        client = DeviceClient(URL)
        attempts = []
        delays = []
        next_delay = client.next_reconnect_delay

        async def failing_connect():
            attempts.append(len(attempts))
            if len(attempts) == 3:
                client._running = False
            return False

        def record_delay():
            delays.append(next_delay())
            return 0

        client.connect = failing_connect
        client.next_reconnect_delay = record_delay
        await asyncio.wait_for(client.run(), timeout=1.0)

        assert len(attempts) == 3
        assert delays == [1.0, 2.0]


class TestSimulatedBattery:
    def test_starts_in_range_and_drains(self):
        battery = SimulatedBattery(min_start=40, rng=random.Random(7))
        readings = [battery() for _ in range(200)]
        assert 40 <= readings[0] <= 100
        assert all(0 <= r <= 100 for r in readings)
        assert readings == sorted(readings, reverse=True)


class TestPositiveInt:
    def test_valid(self):
        assert _positive_int("25") == 25

    @pytest.mark.parametrize("value", ["0", "-3", "many"])
    def test_invalid(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            _positive_int(value)


@pytest.mark.asyncio
async def test_swarm():
    sockets = []

    async def fake_connect(url):
        ws = MockWebSocket()
        ws.feed({"type": "connected", "id": f"D{len(sockets) + 1:04d}"})
        sockets.append(ws)
        return ws

    with patch("crowdflash.device_client.connect", side_effect=fake_connect):
        clients = await run_swarm(URL, 5, duration=0.05)

    assert sorted(c.device_id for c in clients) == [f"D000{i}" for i in range(1, 6)]
    for ws in sockets:
        battery = ws.messages("battery")
        assert len(battery) == 1
        assert 40 <= battery[0]["level"] <= 100
        assert len(ws.close_calls) == 1
