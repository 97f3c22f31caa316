"""
Health, metrics and login HTTP endpoints for the Crowdflash server.

Provides a small FastAPI app served next to the WebSocket listener:
- GET /health - JSON health check
- GET /metrics - Prometheus-compatible text format metrics
- POST /api/login - exchange admin credentials for a session token

The app runs under uvicorn inside the server's own event loop, so handlers
read live server state without locking.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from crowdflash.auth import InvalidCredentials

if TYPE_CHECKING:
    from crowdflash.server import CrowdflashServer

logger = logging.getLogger(__name__)

MAX_BODY_SIZE = 16_384


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1, max_length=200)


class BodyTooLarge(Exception):
    pass


def _failure(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "message": message},
        headers=headers,
    )


def render_metrics(server: "CrowdflashServer") -> str:
    """Prometheus text exposition of the server's gauges and counters."""
    stats = server.get_health_stats()
    metrics = server.aggregator.compute()

    # Format: metric_name{label="value"} value
    lines = [
        "# HELP crowdflash_uptime_seconds Server uptime in seconds",
        "# TYPE crowdflash_uptime_seconds gauge",
        f"crowdflash_uptime_seconds {stats['uptime_seconds']:.2f}",
        "",
        "# HELP crowdflash_active_users Number of currently connected devices",
        "# TYPE crowdflash_active_users gauge",
        f"crowdflash_active_users {metrics.active_users}",
        "",
        "# HELP crowdflash_avg_battery_percent Mean battery of reporting devices",
        "# TYPE crowdflash_avg_battery_percent gauge",
        f"crowdflash_avg_battery_percent {metrics.avg_battery}",
        "",
        "# HELP crowdflash_connected_admins Number of connected admin consoles",
        "# TYPE crowdflash_connected_admins gauge",
        f"crowdflash_connected_admins {stats['connected_admins']}",
        "",
        "# HELP crowdflash_client_connections_total Device connections since start",
        "# TYPE crowdflash_client_connections_total counter",
        f"crowdflash_client_connections_total {stats['client_connects']}",
        "",
        "# HELP crowdflash_admin_rejections_total Admin connections refused for a bad token",
        "# TYPE crowdflash_admin_rejections_total counter",
        f"crowdflash_admin_rejections_total {stats['admin_rejections']}",
        "",
        "# HELP crowdflash_commands_total Admin commands routed",
        "# TYPE crowdflash_commands_total counter",
        f"crowdflash_commands_total {stats['commands_routed']}",
        "",
        "# HELP crowdflash_messages_sent_total Frames delivered to sockets",
        "# TYPE crowdflash_messages_sent_total counter",
        f"crowdflash_messages_sent_total {stats['messages_sent']}",
        "",
        "# HELP crowdflash_failed_sends_total Frames dropped by best-effort delivery",
        "# TYPE crowdflash_failed_sends_total counter",
        f"crowdflash_failed_sends_total {stats['failed_sends']}",
        "",
    ]
    return "\n".join(lines)


async def _read_body(request: Request) -> bytes:
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > MAX_BODY_SIZE:
            raise BodyTooLarge()
    return bytes(body)


router = APIRouter()


@router.get("/health", summary="Health check")
async def health(request: Request) -> dict:
    server: CrowdflashServer = request.app.state.crowdflash
    return {"status": "ok", **server.get_health_stats()}


@router.get("/metrics", response_class=PlainTextResponse, summary="Prometheus metrics")
async def metrics(request: Request) -> PlainTextResponse:
    server: CrowdflashServer = request.app.state.crowdflash
    return PlainTextResponse(render_metrics(server), media_type="text/plain; version=0.0.4")


@router.post("/api/login", summary="Exchange admin credentials for a session token")
async def login(request: Request) -> JSONResponse:
    """Return a session token for the admin console.

    The body is read under ``body_timeout``; a client that announces more
    bytes than it sends gets 408 instead of holding the connection open.
    """
    server: CrowdflashServer = request.app.state.crowdflash
    try:
        declared = int(request.headers.get("content-length", "0"))
    except ValueError:
        return _failure(400, "Bad request")
    if declared > MAX_BODY_SIZE:
        return _failure(413, "Body too large", {"Connection": "close"})

    try:
        raw = await asyncio.wait_for(_read_body(request), timeout=request.app.state.body_timeout)
    except asyncio.TimeoutError:
        logger.info("Login body not received in time")
        return _failure(408, "Request timeout", {"Connection": "close"})
    except BodyTooLarge:
        return _failure(413, "Body too large", {"Connection": "close"})

    try:
        body = LoginRequest.model_validate_json(raw)
    except ValidationError:
        return _failure(400, "Bad request")

    try:
        token = server.auth.issue_token(body.email, body.password)
    except InvalidCredentials:
        logger.warning("Rejected admin login")
        return _failure(401, "Invalid credentials")
    return JSONResponse({"success": True, "token": token})


def create_app(server: "CrowdflashServer", body_timeout: Optional[float] = None) -> FastAPI:
    """Build the HTTP API for ``server``."""
    application = FastAPI(
        title="Crowdflash",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.state.crowdflash = server
    application.state.body_timeout = (
        body_timeout if body_timeout is not None else server.settings.http_read_timeout
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=server.settings.cors_origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    application.include_router(router)
    return application


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the CLI."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class HttpApi:
    """Runs the HTTP API under uvicorn in the current event loop.

    Args:
        server: CrowdflashServer instance to serve
        port: Port to listen on (0 picks a free port)
        host: Host to bind to
        body_timeout: Seconds allowed for a request body; defaults to the
            server's ``http_read_timeout`` setting
    """

    def __init__(
        self,
        server: "CrowdflashServer",
        port: int,
        host: str = "0.0.0.0",
        body_timeout: Optional[float] = None,
    ):
        self.app = create_app(server, body_timeout)
        config = uvicorn.Config(
            self.app,
            host=host,
            port=port,
            log_config=None,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._uvicorn = _EmbeddedServer(config)
        self._task: Optional[asyncio.Task] = None

    @property
    def port(self) -> int:
        return self._uvicorn.servers[0].sockets[0].getsockname()[1]

    async def start(self):
        """Start serving and return once the socket is bound."""
        self._task = asyncio.create_task(self._uvicorn.serve())
        while not self._uvicorn.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError("HTTP API exited during startup")
            await asyncio.sleep(0.01)
        logger.info(f"HTTP API: http://localhost:{self.port}/health, /metrics, /api/login")

    async def stop(self):
        if self._task is None:
            return
        self._uvicorn.should_exit = True
        await self._task
        self._task = None
