"""HTTP + WebSocket server for Bob Control.

Clients connect to ``/ws`` and speak the JSON protocol handled by
``Gateway``; ``/health`` reports liveness and room statistics.

Usage:
    bob-control [--host HOST] [--port PORT]
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
import uuid

from aiohttp import WSMsgType, web

from .. import __version__
from ..engine.config import ServerConfig
from ..engine.providers.registry import AgentRegistry, build_agent_registry
from ..engine.room_manager import RoomManager
from ..shared.services.worktree import WorktreeManager
from .gateway import ClientConnection, Gateway

logger = logging.getLogger(__name__)

WS_HEARTBEAT_SECONDS = 30.0


class BobServer:
    """aiohttp application wrapping one RoomManager and its Gateway."""

    def __init__(
        self,
        config: ServerConfig | None = None,
        *,
        agent_registry: AgentRegistry | None = None,
        room_manager: RoomManager | None = None,
        cwd: str | None = None,
    ) -> None:
        self._config = config or ServerConfig()
        self._host = self._config.host
        self._port = self._config.port
        self._cwd = cwd or os.getcwd()
        self._started_at = time.time()
        if room_manager is None:
            room_manager = RoomManager(
                agent_registry or build_agent_registry(self._config.agent_defaults),
                worktree_manager=WorktreeManager(self._config.worktree_base),
                use_worktrees=self._config.use_worktrees,
                request_timeout=self._config.request_timeout_seconds,
                max_messages=self._config.max_messages,
                history_replay=self._config.history_replay,
            )
        self.room_manager = room_manager
        self.gateway = Gateway(
            room_manager,
            server_version=__version__,
            default_directory=self._cwd,
            default_agent=self._config.default_agent,
        )
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        self._stopped = False
        self._shutdown = asyncio.Event()
        logger.info(
            "BobServer init host=%s port=%s cwd=%s worktrees=%s timeout=%ss pid=%s",
            self._host, self._port, self._cwd, self._config.use_worktrees,
            self._config.request_timeout_seconds, os.getpid(),
        )

    @property
    def app(self) -> web.Application:
        return self._app

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-bob-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_get("/ws", self._handle_ws)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Serve until cancelled, then destroy every room."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()
        logger.info("Bob Control %s listening on ws://%s:%d/ws", __version__, self._host, self._port)

        await self._prune_orphaned_worktrees()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError):
                pass
        try:
            await self._shutdown.wait()
        except (KeyboardInterrupt, asyncio.CancelledError):
            logger.info("Server shutting down")
        finally:
            await self.stop()
            await runner.cleanup()

    def request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        self._shutdown.set()

    async def stop(self) -> None:
        """Destroy all rooms and close all clients. Idempotent."""
        if self._stopped:
            return
        self._stopped = True
        errors = await self.room_manager.destroy_all()
        for workspace_id, error in errors.items():
            logger.warning("Worktree %s left behind: %s", workspace_id[:8], error)
        await self.gateway.close()

    async def _prune_orphaned_worktrees(self) -> None:
        try:
            pruned = await self.room_manager.worktree_manager.prune_orphaned()
        except Exception:
            logger.exception("Orphaned worktree pruning failed")
            return
        if pruned:
            logger.info("Removed %d orphaned worktrees", pruned)

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "version": __version__,
            "stats": self.gateway.get_stats(),
        })

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT_SECONDS)
        await ws.prepare(request)

        client = self.gateway.connect()
        pump = asyncio.create_task(self._pump(client, ws))
        logger.info(
            "WebSocket client %s connected req=%s from=%s",
            client.client_id[:8], request.get("req_id", "unknown"), request.remote,
        )
        try:
            async for msg in ws:
                if msg.type in (WSMsgType.TEXT, WSMsgType.BINARY):
                    await self.gateway.handle_raw(client, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning("WebSocket client %s error: %s", client.client_id[:8], ws.exception())
        finally:
            self.gateway.disconnect(client.client_id)
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        return ws

    async def _pump(self, client: ClientConnection, ws: web.WebSocketResponse) -> None:
        while True:
            payload = await client.receive()
            if payload is None:
                break
            if ws.closed:
                break
            try:
                await ws.send_json(payload)
            except ConnectionResetError:
                break
        if not ws.closed:
            await ws.close()
