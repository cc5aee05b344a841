"""
courier entry point.
Builds the store, channel and fallback queue, then runs the dispatch and
flush workers until SIGTERM / SIGINT.
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import dataclass
from functools import partial

from .channels.base import MessageChannel
from .config import Settings, get_settings
from .delivery.dispatcher import DispatchWorker
from .delivery.fallback import FallbackQueue
from .delivery.flusher import FlushWorker
from .delivery.media import fetch_media
from .delivery.writer import DurableWriter
from .exceptions import FatalConfigError
from .health import StatusSources, run_health_server
from .inbound import InboundMessageHandler
from .logging_config import setup_logging
from .outbox.rest_store import RestOutboxStore
from .outbox.sqlite_store import SqliteOutboxStore
from .outbox.store import OutboxStore
from .storage.base import ObjectStore
from .storage.local import LocalObjectStore
from .storage.supabase import SupabaseObjectStore

logger = logging.getLogger(__name__)


@dataclass
class Components:
    store: OutboxStore
    object_store: ObjectStore
    channel: MessageChannel
    queue: FallbackQueue
    writer: DurableWriter
    dispatcher: DispatchWorker
    flusher: FlushWorker
    inbound: InboundMessageHandler

    async def close(self) -> None:
        for resource in (self.channel, self.object_store, self.store):
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Error closing %s: %s", type(resource).__name__, e)


def _build_channel(cfg: Settings) -> MessageChannel:
    if cfg.channel_backend == "telegram":
        from .channels.telegram import TelegramChannel
        return TelegramChannel(token=cfg.telegram_bot_token)
    from .channels.bridge import BridgeChannel
    return BridgeChannel(cfg.bridge_url, timeout=cfg.http_timeout)


async def build_components(cfg: Settings) -> Components:
    """Wire every component from settings. Raises FatalConfigError on bad config."""
    cfg.validate_runtime()

    store: OutboxStore
    object_store: ObjectStore
    if cfg.store_backend == "sqlite":
        store = SqliteOutboxStore(cfg.db_path)
        await store.init()
        object_store = LocalObjectStore(cfg.media_dir)
    else:
        store = RestOutboxStore(
            cfg.supabase_url, cfg.supabase_service_role_key, timeout=cfg.http_timeout
        )
        object_store = SupabaseObjectStore(
            cfg.supabase_url, cfg.supabase_service_role_key, cfg.storage_bucket,
            timeout=cfg.http_timeout,
        )

    channel = _build_channel(cfg)

    queue = FallbackQueue(cfg.fallback_log_path, cfg.fallback_dead_path)
    await queue.load_on_startup()

    writer = DurableWriter(store, queue, object_store)
    dispatcher = DispatchWorker(
        store,
        channel,
        writer,
        batch_size=cfg.dispatch_batch_size,
        max_attempts=cfg.max_attempts,
        poll_interval=cfg.dispatch_poll_interval,
        claim_timeout=cfg.claim_timeout,
        media_fetcher=partial(
            fetch_media,
            timeout=cfg.http_timeout,
            max_attempts=cfg.backoff_max_retries,
            base_delay=cfg.backoff_base_delay,
        ),
    )
    flusher = FlushWorker(
        queue, writer, interval=cfg.flush_interval, max_replays=cfg.fallback_max_replays
    )
    if cfg.channel_backend == "telegram":
        inbound = InboundMessageHandler(store, writer, normalize=lambda raw: (raw or "").strip() or None)
    else:
        inbound = InboundMessageHandler(store, writer)

    return Components(
        store=store,
        object_store=object_store,
        channel=channel,
        queue=queue,
        writer=writer,
        dispatcher=dispatcher,
        flusher=flusher,
        inbound=inbound,
    )


async def run(cfg: Settings) -> None:
    components = await build_components(cfg)

    sources = StatusSources(
        channel=components.channel,
        queue=components.queue,
        dispatcher=components.dispatcher,
        flusher=components.flusher,
    )
    health_task = asyncio.create_task(run_health_server(sources, port=cfg.health_port))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            pass

    components.dispatcher.start()
    components.flusher.start()
    sources.ready = True
    logger.info("courier ready (store=%s, channel=%s)", cfg.store_backend, components.channel.name)

    await stop.wait()
    logger.info("Shutdown requested, letting in-flight work finish")
    sources.ready = False
    await components.dispatcher.stop()
    await components.flusher.stop()
    health_task.cancel()
    await asyncio.gather(health_task, return_exceptions=True)
    await components.close()
    logger.info("courier stopped (%d fallback item(s) pending)", len(components.queue))


def main() -> None:
    cfg = get_settings()
    os.makedirs(cfg.data_dir, exist_ok=True)
    setup_logging(cfg.log_level, cfg.logs_dir, cfg.json_logs)

    logger.info("Starting courier (data_dir=%s)", cfg.data_dir)
    try:
        asyncio.run(run(cfg))
    except FatalConfigError as e:
        logger.critical("Refusing to start: %s", e)
        sys.exit(2)


if __name__ == "__main__":
    main()
