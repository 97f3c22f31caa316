"""Shared pytest fixtures for the Crowdflash test suite.

Sockets are replaced by :class:`MockWebSocket`, which records outbound
frames and lets a test feed inbound frames one at a time, so the whole
server can be exercised without opening a port.
"""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from typing import List, Optional

import pytest
import websockets
from websockets.datastructures import Headers
from websockets.protocol import State

from crowdflash.auth import hash_password
from crowdflash.config import Settings
from crowdflash.server import CrowdflashServer

ADMIN_EMAIL = "admin@test.local"
ADMIN_PASSWORD = "Cr0wd-test"

_CLOSED = object()


class MockWebSocket:
    """Mock server-side WebSocket connection for testing."""

    def __init__(
        self,
        path: str = "/?role=client",
        headers: Optional[dict] = None,
        remote_address=("127.0.0.1", 50000),
        state: State = State.OPEN,
        fail_sends: bool = False,
    ):
        self.request = SimpleNamespace(path=path, headers=Headers(headers or {}))
        self.remote_address = remote_address
        self.state = state
        self.fail_sends = fail_sends
        self.sent: List[str] = []
        self.close_calls: List[tuple] = []
        self._inbound: asyncio.Queue = asyncio.Queue()

    async def send(self, message):
        """Record sent message."""
        if self.fail_sends or self.state is not State.OPEN:
            raise websockets.exceptions.ConnectionClosed(None, None)
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        """Close the connection and end the inbound stream."""
        self.close_calls.append((code, reason))
        self.state = State.CLOSED
        self._inbound.put_nowait(_CLOSED)

    def feed(self, message):
        """Queue an inbound frame; dicts are JSON-encoded."""
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbound.put_nowait(message)

    def drop(self):
        """Simulate the peer going away."""
        self.state = State.CLOSED
        self._inbound.put_nowait(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbound.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    def messages(self, msg_type: Optional[str] = None) -> List[dict]:
        """Decoded sent frames, optionally filtered by type."""
        decoded = [json.loads(m) for m in self.sent]
        if msg_type is None:
            return decoded
        return [m for m in decoded if m.get("type") == msg_type]

    def clear(self):
        self.sent.clear()


class StuckCloseWebSocket(MockWebSocket):
    """A peer that never answers the close handshake until ``release`` is set."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.release = asyncio.Event()

    async def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        await self.release.wait()
        self.state = State.CLOSED
        self._inbound.put_nowait(_CLOSED)


async def settle(rounds: int = 50):
    """Let scheduled tasks run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def connect(server: CrowdflashServer, websocket: MockWebSocket) -> asyncio.Task:
    """Run a connection handler in the background and let it reach its message loop."""
    task = asyncio.create_task(server.handle_connection(websocket))
    await settle()
    return task


async def disconnect(*pairs):
    """Drop each (websocket, task) pair and wait for its handler to finish."""
    for websocket, task in pairs:
        websocket.drop()
    await asyncio.gather(*(task for _, task in pairs))
    await settle()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        admin_email=ADMIN_EMAIL,
        admin_password_hash=hash_password(ADMIN_PASSWORD, "sha256"),
        http_port=0,
        metrics_interval=3.0,
        cors_origins=["http://localhost:3000"],
    )


@pytest.fixture()
def server(settings: Settings) -> CrowdflashServer:
    return CrowdflashServer(settings=settings)


@pytest.fixture()
def admin_token(server: CrowdflashServer) -> str:
    return server.auth.issue_token(ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture()
def admin_path(admin_token: str) -> str:
    return f"/?role=admin&token={admin_token}"
