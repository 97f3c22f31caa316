"""
Crowdflash device client.

Connects to the server as a participant device, reports battery and
heartbeats, and dispatches lighting commands to registered handlers.
Reconnects forever with exponential backoff (1s, 2s, 4s, ... capped at 10s).

Also provides a swarm simulator for rehearsing a show without phones:

    crowdflash-sim --url ws://localhost:3000 --devices 200
"""

import argparse
import asyncio
import inspect
import json
import logging
import random
import sys
import urllib.parse
from typing import Any, Callable, Dict, List, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from crowdflash.logging_config import configure_logging

logger = logging.getLogger(__name__)

BASE_RECONNECT_DELAY = 1.0
MAX_RECONNECT_DELAY = 10.0
HEARTBEAT_INTERVAL = 15.0
BATTERY_INTERVAL = 30.0


def with_client_role(url: str) -> str:
    """Return ``url`` with ``role=client`` set in its query string."""
    parts = urllib.parse.urlsplit(url)
    query = dict(urllib.parse.parse_qsl(parts.query))
    query["role"] = "client"
    path = parts.path or "/"
    return urllib.parse.urlunsplit(
        (parts.scheme, parts.netloc, path, urllib.parse.urlencode(query), parts.fragment)
    )


class DeviceClient:
    """WebSocket client playing the part of one participant phone."""

    def __init__(
        self,
        url: str,
        battery_provider: Optional[Callable[[], Optional[int]]] = None,
        connect_timeout: float = 10.0,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
        battery_interval: float = BATTERY_INTERVAL,
        max_reconnect_delay: float = MAX_RECONNECT_DELAY,
    ):
        self.url = with_client_role(url)
        self.battery_provider = battery_provider
        self.connect_timeout = connect_timeout
        self.heartbeat_interval = heartbeat_interval
        self.battery_interval = battery_interval
        self.max_reconnect_delay = max_reconnect_delay

        self.ws: Optional[ClientConnection] = None
        self.device_id: Optional[str] = None
        self.client_count: int = 0
        self._connected = False
        self._running = False
        self._reconnect_attempts = 0
        self._message_handlers: Dict[str, Callable] = {}
        self._tasks: List[asyncio.Task] = []

    @property
    def connected(self) -> bool:
        return self._connected

    def on(self, message_type: str, callback: Callable[[dict], Any]):
        """Register a handler for a specific message type (e.g. ``flash_on``)."""
        self._message_handlers[message_type] = callback

    def next_reconnect_delay(self) -> float:
        """Delay before the next reconnect attempt; advances the attempt counter."""
        delay = min(
            BASE_RECONNECT_DELAY * (2**self._reconnect_attempts), self.max_reconnect_delay
        )
        self._reconnect_attempts += 1
        return delay

    async def connect(self) -> bool:
        """Open the socket. Resets the backoff on success."""
        try:
            self.ws = await asyncio.wait_for(connect(self.url), timeout=self.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Connection timed out to {self.url}")
            return False
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning(f"Failed to connect: {e}")
            return False

        self._connected = True
        self._reconnect_attempts = 0
        return True

    async def send(self, message: dict) -> bool:
        if not self.ws or not self._connected:
            return False
        try:
            await self.ws.send(json.dumps(message))
        except websockets.exceptions.ConnectionClosed:
            self._connected = False
            return False
        return True

    async def report_battery(self) -> bool:
        level = self.battery_provider() if self.battery_provider else None
        if level is None:
            return False
        return await self.send({"type": "battery", "level": level})

    async def _heartbeat_loop(self):
        while self._connected:
            await asyncio.sleep(self.heartbeat_interval)
            await self.send({"type": "heartbeat"})

    async def _battery_loop(self):
        while self._connected:
            await self.report_battery()
            await asyncio.sleep(self.battery_interval)

    async def _dispatch(self, data: dict):
        msg_type = data.get("type")
        if msg_type == "connected":
            self.device_id = data.get("id")
            logger.info(f"Registered as {self.device_id}")
        elif msg_type == "client_count":
            self.client_count = data.get("count", 0)

        handler = self._message_handlers.get(msg_type)
        if handler is None:
            return
        try:
            if inspect.iscoroutinefunction(handler):
                await handler(data)
            else:
                handler(data)
        except Exception as e:
            logger.error(f"Handler error for {msg_type}: {e}")

    async def _receive_loop(self):
        try:
            async for message in self.ws:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Received invalid JSON message")
                    continue
                if isinstance(data, dict):
                    await self._dispatch(data)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Connection closed by server")

    async def _session(self):
        """Run one connected session until the socket closes."""
        self._tasks = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._battery_loop()),
        ]
        try:
            await self._receive_loop()
        finally:
            self._connected = False
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks = []

    async def run(self):
        """Connect and stay connected until :meth:`stop` is called."""
        self._running = True
        while self._running:
            if await self.connect():
                await self._session()
            if not self._running:
                break
            delay = self.next_reconnect_delay()
            logger.info(f"Reconnecting in {delay:.1f}s (attempt {self._reconnect_attempts})")
            await asyncio.sleep(delay)

    async def stop(self):
        self._running = False
        if self.ws:
            await self.ws.close()
        self._connected = False


class SimulatedBattery:
    """Battery that starts somewhere in [min_start, 100] and slowly drains."""

    def __init__(self, min_start: int = 40, drain_per_report: float = 0.5, rng=None):
        self._rng = rng or random.Random()
        self._level = float(self._rng.randint(min_start, 100))
        self._drain = drain_per_report

    def __call__(self) -> int:
        level = int(round(self._level))
        self._level = max(0.0, self._level - self._rng.uniform(0, self._drain * 2))
        return level


async def run_swarm(url: str, count: int, duration: Optional[float] = None, **client_kwargs):
    """Run ``count`` simulated devices against ``url``."""
    clients = [
        DeviceClient(url, battery_provider=SimulatedBattery(), **client_kwargs)
        for _ in range(count)
    ]
    tasks = [asyncio.create_task(c.run()) for c in clients]
    logger.info(f"Started {count} simulated devices against {url}")
    try:
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            await asyncio.gather(*tasks)
    finally:
        for client in clients:
            await client.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
    return clients


def _positive_int(value: str) -> int:
    try:
        num = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid integer: {value}")
    if num <= 0:
        raise argparse.ArgumentTypeError(f"Value must be positive, got: {num}")
    return num


def main():
    """CLI entry point for the device swarm simulator."""
    parser = argparse.ArgumentParser(
        prog="crowdflash-sim",
        description="Simulate participant devices against a Crowdflash server",
    )
    parser.add_argument("--url", default="ws://localhost:3000", help="Server WebSocket URL")
    parser.add_argument("--devices", "-n", type=_positive_int, default=10, help="Device count")
    parser.add_argument(
        "--duration", type=float, default=None, help="Seconds to run (default: until Ctrl+C)"
    )
    args = parser.parse_args()

    configure_logging()
    try:
        asyncio.run(run_swarm(args.url, args.devices, args.duration))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
