"""
Connection registry - the single source of truth for who is connected.

Every open socket has exactly one record, keyed by the socket object itself.
Records are immutable snapshots; updates swap in a new record so callers can
hold on to what they were given without seeing it change underneath them.

All methods except :meth:`ConnectionRegistry.finish_closing` run to
completion without yielding. Forced disconnects hand the socket close to a
background task.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

import websockets

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"

    @classmethod
    def from_query(cls, value: Optional[str]) -> "Role":
        """Anything other than an explicit ``admin`` is a client."""
        return cls.ADMIN if value == cls.ADMIN.value else cls.CLIENT


@dataclass(frozen=True)
class Connection:
    """Metadata for one live socket."""

    role: Role
    websocket: Any = field(repr=False, compare=False)
    connected_at: int = field(default_factory=lambda: int(time.time() * 1000))
    remote_address: str = ""
    client_id: Optional[str] = None  # Devices only, e.g. D0007
    battery: Optional[int] = None  # Devices only, None until first report

    def to_device_dict(self) -> dict:
        """Entry for the admin device list."""
        return {
            "id": self.client_id,
            "battery": self.battery,
            "connectedAt": self.connected_at,
            "ip": self.remote_address,
        }


class ConnectionRegistry:
    """Tracks admin and device sockets.

    Args:
        token_verifier: Called with the token an admin presented; the admin
            is only registered if it returns True.
        clock: Time source in seconds (overridable for tests).
    """

    def __init__(
        self,
        token_verifier: Callable[[Optional[str]], bool],
        clock: Callable[[], float] = time.time,
    ):
        self._verify_token = token_verifier
        self._clock = clock
        self._clients: Dict[Any, Connection] = {}
        self._admins: Dict[Any, Connection] = {}
        # Strong references to in-flight closes from disconnect_by_id
        self._closing: Set[asyncio.Task] = set()
        # Never reset, so device ids are unique for the process lifetime
        self._id_counter = 0

    def _next_client_id(self) -> str:
        self._id_counter += 1
        return f"D{self._id_counter:04d}"

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def admin_count(self) -> int:
        return len(self._admins)

    @property
    def ids_issued(self) -> int:
        return self._id_counter

    def register(
        self,
        websocket,
        role: Role,
        remote_address: str = "",
        token: Optional[str] = None,
    ) -> Optional[Connection]:
        """Register a freshly opened socket.

        Devices get the next sequential display id. Admins must present a
        valid token; otherwise nothing is registered and None is returned.
        Registering an already-known socket returns its existing record.
        """
        existing = self.get(websocket)
        if existing is not None:
            return existing

        now_ms = int(self._clock() * 1000)
        if role is Role.ADMIN:
            if not self._verify_token(token):
                logger.warning(
                    f"Rejected admin connection from {remote_address or 'unknown'}",
                    extra={"role": role.value, "remote_address": remote_address},
                )
                return None
            conn = Connection(
                role=Role.ADMIN,
                websocket=websocket,
                connected_at=now_ms,
                remote_address=remote_address,
            )
            self._admins[websocket] = conn
        else:
            conn = Connection(
                role=Role.CLIENT,
                websocket=websocket,
                connected_at=now_ms,
                remote_address=remote_address,
                client_id=self._next_client_id(),
            )
            self._clients[websocket] = conn
        logger.debug(
            f"Registered {conn.role.value} {conn.client_id or ''}".rstrip(),
            extra={
                "role": conn.role.value,
                "remote_address": remote_address,
                "client_id": conn.client_id,
            },
        )
        return conn

    def unregister(self, websocket) -> Optional[Connection]:
        """Remove a socket. Returns the removed record, or None if it was absent."""
        conn = self._clients.pop(websocket, None)
        if conn is None:
            conn = self._admins.pop(websocket, None)
        return conn

    def get(self, websocket) -> Optional[Connection]:
        conn = self._clients.get(websocket)
        if conn is None:
            conn = self._admins.get(websocket)
        return conn

    def find_client(self, client_id: str) -> Optional[Connection]:
        for conn in self._clients.values():
            if conn.client_id == client_id:
                return conn
        return None

    def clients(self) -> List[Connection]:
        """Snapshot of device records in registration order."""
        return list(self._clients.values())

    def admins(self) -> List[Connection]:
        return list(self._admins.values())

    def client_sockets(self) -> list:
        return list(self._clients)

    def admin_sockets(self) -> list:
        return list(self._admins)

    def for_each_client(self, fn: Callable[[Connection], Any]):
        for conn in self.clients():
            fn(conn)

    def for_each_admin(self, fn: Callable[[Connection], Any]):
        for conn in self.admins():
            fn(conn)

    def device_list(self) -> List[dict]:
        return [conn.to_device_dict() for conn in self._clients.values()]

    def update_battery(self, websocket, level: int) -> bool:
        """Record a battery report. No-op (False) if the socket is not a known device."""
        conn = self._clients.get(websocket)
        if conn is None:
            return False
        self._clients[websocket] = replace(conn, battery=level)
        return True

    def disconnect_by_id(self, client_id: str) -> bool:
        """Force-close the device with ``client_id``.

        The record is removed first, so the socket's own close handling finds
        nothing to remove and does not log twice. The close handshake runs as
        a background task; a slow peer must not hold up the admin that asked.
        """
        conn = self.find_client(client_id)
        if conn is None:
            return False

        del self._clients[conn.websocket]
        task = asyncio.create_task(conn.websocket.close())
        self._closing.add(task)
        task.add_done_callback(self._close_finished)
        return True

    def _close_finished(self, task: asyncio.Task):
        self._closing.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not isinstance(exc, websockets.exceptions.ConnectionClosed):
            logger.warning(f"Closing disconnected device failed: {exc!r}")

    @property
    def pending_closes(self) -> int:
        return len(self._closing)

    async def finish_closing(self, timeout: float = 5.0):
        """Wait for background closes started by :meth:`disconnect_by_id`."""
        if not self._closing:
            return
        pending = list(self._closing)
        _, still_open = await asyncio.wait(pending, timeout=timeout)
        for task in still_open:
            task.cancel()
        if still_open:
            await asyncio.gather(*still_open, return_exceptions=True)
