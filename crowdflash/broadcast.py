"""
Broadcast engine - best-effort fan-out to a role group.

Delivery contract: at most once, no acknowledgement, no retry. A message is
serialized once and sent to every socket in the group whose state is OPEN;
sockets still connecting or already closing are skipped. A send that fails
or times out is counted and logged at DEBUG, never raised to the caller.
Any other error from a send during a broadcast is counted and logged at
WARNING without disturbing the other recipients.
"""

import asyncio
import logging
from enum import Enum
from typing import Iterable

import websockets
from websockets.protocol import State

from crowdflash.protocol import encode
from crowdflash.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class Group(str, Enum):
    ADMINS = "admins"
    CLIENTS = "clients"


class Broadcaster:
    """Sends messages to admins, devices, or a single socket."""

    def __init__(self, registry: ConnectionRegistry, send_timeout: float = 0.5):
        self._registry = registry
        self.send_timeout = send_timeout

        # Counters for health stats
        self.broadcasts = 0
        self.messages_sent = 0
        self.failed_sends = 0

    async def broadcast(self, group: Group, message: dict) -> int:
        """Send ``message`` to every open socket in ``group``. Returns how many were sent."""
        if group is Group.ADMINS:
            sockets = self._registry.admin_sockets()
        else:
            sockets = self._registry.client_sockets()
        self.broadcasts += 1
        return await self._fan_out(sockets, encode(message))

    async def to_admins(self, message: dict) -> int:
        return await self.broadcast(Group.ADMINS, message)

    async def to_clients(self, message: dict) -> int:
        return await self.broadcast(Group.CLIENTS, message)

    async def send(self, websocket, message: dict) -> bool:
        """Send to one socket with the same best-effort contract as a broadcast."""
        if websocket.state is not State.OPEN:
            return False
        return await self._send(websocket, encode(message))

    async def _fan_out(self, sockets: Iterable, payload: str) -> int:
        targets = [ws for ws in sockets if ws.state is State.OPEN]
        if not targets:
            return 0
        results = await asyncio.gather(
            *(self._send(ws, payload) for ws in targets), return_exceptions=True
        )
        delivered = 0
        for ws, result in zip(targets, results):
            if isinstance(result, BaseException):
                self.failed_sends += 1
                logger.warning(
                    f"Unexpected error sending to {getattr(ws, 'remote_address', '?')}: {result!r}"
                )
            elif result:
                delivered += 1
        return delivered

    async def _send(self, websocket, payload: str) -> bool:
        try:
            await asyncio.wait_for(websocket.send(payload), timeout=self.send_timeout)
        except (asyncio.TimeoutError, websockets.exceptions.ConnectionClosed) as e:
            self.failed_sends += 1
            logger.debug(f"Send to {getattr(websocket, 'remote_address', '?')} failed: {e!r}")
            return False
        self.messages_sent += 1
        return True
