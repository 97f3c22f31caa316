"""
Crowdflash Server - real-time coordination for a flashlight mob.

One admin console drives many participant phones over WebSockets:

    Admin console ──commands──> Server ──broadcast──> Devices
    Admin console <──metrics/log/device list── Server <──battery/heartbeat── Devices

The server owns all shared state (registry, event log, counters). Handlers
run on a single event loop, so state is only ever touched by one handler
at a time and no locks are needed.
"""

import asyncio
import logging
import time
import urllib.parse
from typing import Optional, Tuple

import websockets
from websockets.asyncio.server import serve

from crowdflash.aggregator import MetricsAggregator
from crowdflash.auth import AuthService
from crowdflash.broadcast import Broadcaster
from crowdflash.config import Settings, get_settings
from crowdflash.event_log import EventLog, LogType
from crowdflash.protocol import connected_event, log_history_event, unauthorized_event
from crowdflash.registry import ConnectionRegistry, Role
from crowdflash.router import CommandRouter

logger = logging.getLogger(__name__)

# Close code sent to admins presenting a bad token (policy violation)
CLOSE_UNAUTHORIZED = 1008


def parse_connection_query(path: str) -> Tuple[Role, Optional[str]]:
    """Extract the role and admin token from a request path like ``/?role=admin&token=...``."""
    query = urllib.parse.parse_qs(urllib.parse.urlsplit(path or "").query)
    role = Role.from_query(query.get("role", [None])[0])
    token = query.get("token", [None])[0]
    return role, token


class CrowdflashServer:
    """
    Coordination server for admin consoles and participant devices.

    Responsibilities:
    - Register sockets by role and assign device ids
    - Route admin commands to devices and device reports to admins
    - Keep the event log and stream it to admins
    - Push metrics on every change and on a fixed interval
    """

    def __init__(self, settings: Optional[Settings] = None, auth: Optional[AuthService] = None):
        self.settings = settings or get_settings()
        self.auth = auth or AuthService.from_settings(self.settings)

        self.registry = ConnectionRegistry(token_verifier=self.auth.verify_token)
        self.event_log = EventLog(capacity=self.settings.log_capacity)
        self.broadcaster = Broadcaster(self.registry)
        self.aggregator = MetricsAggregator(self.registry)
        self.router = CommandRouter(self.registry, self.event_log, self.broadcaster, self.aggregator)

        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._metrics_task: Optional[asyncio.Task] = None

        # Connection health metrics
        self._start_time = time.time()
        self._client_connects = 0
        self._client_disconnects = 0
        self._admin_connects = 0
        self._admin_rejections = 0

    # -- connection lifecycle ------------------------------------------------

    def _remote_address(self, websocket) -> str:
        """Best-effort peer address, preferring the proxy's X-Forwarded-For."""
        if self.settings.trust_forwarded_for:
            forwarded = websocket.request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()
        address = websocket.remote_address
        if isinstance(address, (tuple, list)) and address:
            return str(address[0])
        return str(address or "")

    async def handle_connection(self, websocket):
        """Entry point for every new socket."""
        role, token = parse_connection_query(websocket.request.path)
        remote_address = self._remote_address(websocket)
        if role is Role.ADMIN:
            await self._handle_admin(websocket, token, remote_address)
        else:
            await self._handle_client(websocket, remote_address)

    async def _handle_client(self, websocket, remote_address: str):
        conn = self.registry.register(websocket, Role.CLIENT, remote_address)
        self._client_connects += 1
        try:
            await self.router.log_event(
                LogType.NET,
                f"+1 new connection ({conn.client_id}) - Total: {self.registry.client_count}",
            )
            await self.router.push_metrics()
            await self.router.push_device_list()
            await self.broadcaster.send(websocket, connected_event(conn.client_id))
            await self.router.broadcast_client_count()

            await self._message_loop(websocket, self.router.handle_client_frame)
        finally:
            await self._on_client_closed(websocket)

    async def _on_client_closed(self, websocket):
        conn = self.registry.unregister(websocket)
        if conn is None:
            # Already removed by an admin disconnect
            return
        self._client_disconnects += 1
        await self.router.log_event(
            LogType.NET,
            f"Device {conn.client_id} disconnected - Total: {self.registry.client_count}",
        )
        await self.router.push_metrics()
        await self.router.push_device_list()
        await self.router.broadcast_client_count()

    async def _handle_admin(self, websocket, token: Optional[str], remote_address: str):
        conn = self.registry.register(websocket, Role.ADMIN, remote_address, token=token)
        if conn is None:
            self._admin_rejections += 1
            logger.info(
                "Closing unauthorized admin socket",
                extra={"role": Role.ADMIN.value, "remote_address": remote_address},
            )
            await self.broadcaster.send(websocket, unauthorized_event())
            await websocket.close(CLOSE_UNAUTHORIZED, "Unauthorized")
            return

        self._admin_connects += 1
        try:
            # History goes out before anything else can reach this socket, so
            # the console sees history first and then live entries, once each.
            history = self.event_log.snapshot(self.settings.log_history_size)
            await self.broadcaster.send(websocket, log_history_event(history))
            await self.broadcaster.send(websocket, self.aggregator.compute().to_message())
            await self.router.push_device_list()
            await self.router.log_event(LogType.SYS, "Admin console connected")

            await self._message_loop(websocket, self.router.handle_admin_frame)
        finally:
            if self.registry.unregister(websocket) is not None:
                await self.router.log_event(LogType.SYS, "Admin console disconnected")

    async def _message_loop(self, websocket, handler):
        """Feed each inbound frame to ``handler`` until the socket closes."""
        try:
            async for message in websocket:
                try:
                    await handler(websocket, message)
                except Exception:
                    # Don't close the connection on a handler error, just log and continue
                    logger.exception("Error handling message")
        except websockets.exceptions.ConnectionClosed:
            pass

    # -- collaborator hooks --------------------------------------------------

    async def record_upload(self, filename: str):
        """Called by the upload service after a device video has been stored."""
        await self.router.log_event(LogType.SYS, f"Video uploaded: {filename}")

    async def record_video_deletion(self, deleted: int, errors: int = 0):
        suffix = f" ({errors} errors)" if errors > 0 else ""
        await self.router.log_event(LogType.SYS, f"Deleted {deleted} video(s){suffix}")

    # -- stats ---------------------------------------------------------------

    def get_health_stats(self) -> dict:
        """Connection health counters for the HTTP API."""
        return {
            "uptime_seconds": round(time.time() - self._start_time, 2),
            "connected_clients": self.registry.client_count,
            "connected_admins": self.registry.admin_count,
            "client_connects": self._client_connects,
            "client_disconnects": self._client_disconnects,
            "admin_connects": self._admin_connects,
            "admin_rejections": self._admin_rejections,
            "commands_routed": self.router.commands_routed,
            "messages_dropped": self.router.messages_dropped,
            "broadcasts": self.broadcaster.broadcasts,
            "messages_sent": self.broadcaster.messages_sent,
            "failed_sends": self.broadcaster.failed_sends,
            "log_entries": len(self.event_log),
        }

    # -- main loop -----------------------------------------------------------

    async def _metrics_loop(self):
        """Push metrics to admins on a fixed interval so consoles recover from missed pushes."""
        interval = self.settings.metrics_interval
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self.router.push_metrics()
            except asyncio.CancelledError:
                logger.debug("Metrics loop cancelled")
                break
            except Exception:
                logger.exception("Metrics loop error")

    def start_background_tasks(self):
        self._running = True
        if self._metrics_task is None or self._metrics_task.done():
            self._metrics_task = asyncio.create_task(self._metrics_loop())

    async def run(self):
        """Start the socket listener, HTTP API and metrics task; return after stop()."""
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        self.start_background_tasks()

        http_api = None
        async with serve(
            self.handle_connection,
            self.settings.host,
            self.settings.port,
            max_size=self.settings.max_message_size,
        ):
            logger.info(f"WebSocket server: ws://{self.settings.host}:{self.settings.port}")
            if self.settings.http_port > 0:
                from crowdflash.http_api import HttpApi

                http_api = HttpApi(self, self.settings.http_port, self.settings.host)
                await http_api.start()

            logger.info("Crowdflash server ready. Waiting for connections...")
            try:
                await self._stop_event.wait()
            finally:
                if http_api:
                    await http_api.stop()
                await self.cleanup()

    def stop(self):
        """Stop the server. Safe to call from a signal handler."""
        self._running = False
        if self._loop is not None and self._stop_event is not None:
            self._loop.call_soon_threadsafe(self._stop_event.set)

    async def cleanup(self):
        """Cancel background tasks and wait out pending forced closes."""
        self._running = False
        if self._metrics_task and not self._metrics_task.done():
            self._metrics_task.cancel()
            try:
                await self._metrics_task
            except asyncio.CancelledError:
                pass
        self._metrics_task = None
        await self.registry.finish_closing()
