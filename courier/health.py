"""
Lightweight HTTP health and status server.

Runs an aiohttp server on HEALTH_PORT (default 8080) alongside the workers in
the same asyncio event loop.

Endpoints:
  GET /        → 200 {"service": "courier", "version": ...}
  GET /health  → 200 {"status": "ok", "uptime_s": N}
  GET /ready   → 200 {"status": "ready"} or 503 {"status": "starting"}
  GET /status  → 200 channel connectivity, fallback queue depth, worker counters
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from aiohttp import web

from . import __version__
from .channels.base import MessageChannel
from .delivery.dispatcher import DispatchWorker
from .delivery.fallback import FallbackQueue
from .delivery.flusher import FlushWorker

logger = logging.getLogger(__name__)


@dataclass
class StatusSources:
    """What the status endpoints report on. Any part may be absent."""

    channel: MessageChannel | None = None
    queue: FallbackQueue | None = None
    dispatcher: DispatchWorker | None = None
    flusher: FlushWorker | None = None
    ready: bool = False
    started_at: float = field(default_factory=time.monotonic)


SOURCES_KEY = web.AppKey("sources", StatusSources)


async def _handle_root(request: web.Request) -> web.Response:
    return web.json_response({"service": "courier", "version": __version__})


async def _handle_health(request: web.Request) -> web.Response:
    sources = request.app[SOURCES_KEY]
    uptime = int(time.monotonic() - sources.started_at)
    return web.json_response({"status": "ok", "uptime_s": uptime})


async def _handle_ready(request: web.Request) -> web.Response:
    if request.app[SOURCES_KEY].ready:
        return web.json_response({"status": "ready"})
    return web.json_response({"status": "starting"}, status=503)


async def _handle_status(request: web.Request) -> web.Response:
    sources = request.app[SOURCES_KEY]
    response: dict = {"ready": sources.ready}

    if sources.channel is not None:
        try:
            channel_status = await sources.channel.status()
            response["channel"] = {
                "name": sources.channel.name,
                "connected": channel_status.connected,
                "detail": channel_status.detail,
            }
        except Exception as e:
            logger.warning("Channel status check failed: %s", e)
            response["channel"] = {"name": sources.channel.name, "connected": False, "detail": str(e)}

    if sources.queue is not None:
        response["fallback_queue"] = {
            "depth": len(sources.queue),
            "by_kind": sources.queue.count_by_kind(),
        }
    if sources.dispatcher is not None:
        response["dispatcher"] = {
            "running": sources.dispatcher.running,
            **sources.dispatcher.stats.to_dict(),
        }
    if sources.flusher is not None:
        response["flusher"] = {
            "running": sources.flusher.running,
            **sources.flusher.stats.to_dict(),
        }
    return web.json_response(response)


def build_app(sources: StatusSources) -> web.Application:
    app = web.Application()
    app[SOURCES_KEY] = sources
    app.router.add_get("/", _handle_root)
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/ready", _handle_ready)
    app.router.add_get("/status", _handle_status)
    return app


async def run_health_server(sources: StatusSources, port: int = 8080) -> None:
    """
    Start the health server on ``port``.
    Runs until cancelled. Call with asyncio.create_task().
    """
    runner = web.AppRunner(build_app(sources), access_log=None)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)

    try:
        await site.start()
        logger.info("Health server listening on http://0.0.0.0:%d", port)
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        logger.info("Health server shutting down")
    finally:
        await runner.cleanup()
