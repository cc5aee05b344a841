"""
Dispatch worker: moves approved messages to sent or failed.

State machine per record:
    approved (unclaimed) -> [claim wins] -> in flight
    in flight -> [send ok] -> sent
    in flight -> [send fails, attempts < max] -> approved (unclaimed)
    in flight -> [send fails, attempts == max] -> failed

A lost claim means another dispatcher owns the record; it is skipped.
Once a claim is won, exactly one of mark_sent / mark_failed_attempt is
issued through the DurableWriter whatever happens during the send, so a
store outage turns into a queued status update instead of a stuck claim.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Awaitable, Callable

from ..channels.base import MediaContent, MessageChannel, OutgoingContent, TextContent
from ..exceptions import ChannelSendError, TransientStoreError
from ..logging_config import log_context
from ..models import AuditEntry, MessageRecord, MessageStatus
from ..outbox.store import OutboxStore, next_status
from .media import fetch_media
from .writer import DurableWriter

logger = logging.getLogger(__name__)

MediaFetcher = Callable[[str], Awaitable[MediaContent]]


@dataclass
class DispatchStats:
    """Counters for diagnostics."""

    batches: int = 0
    claimed: int = 0
    lost: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    diverted: int = 0
    stale_released: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DispatchWorker:
    """Polls the Outbox Store and delivers claimable messages.

    Usage:
        worker = DispatchWorker(store, channel, writer, batch_size=20, max_attempts=5)
        worker.start()
        ...
        await worker.stop()   # lets the current batch finish

    Tests drive single passes with ``await worker.run_once()``.
    """

    def __init__(
        self,
        store: OutboxStore,
        channel: MessageChannel,
        writer: DurableWriter,
        *,
        batch_size: int = 20,
        max_attempts: int = 5,
        poll_interval: float = 2.0,
        claim_timeout: float = 300.0,
        media_fetcher: MediaFetcher | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.writer = writer
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.claim_timeout = claim_timeout
        self.media_fetcher = media_fetcher or fetch_media
        self.stats = DispatchStats()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_stale_sweep = 0.0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── One pass ────────────────────────────────────────────────────────────────

    async def run_once(self) -> int:
        """Fetch one batch and process it sequentially.

        Returns:
            Number of records fetched (0 means the outbox looked empty).
        """
        await self._maybe_release_stale()
        try:
            records = await self.store.list_claimable(self.batch_size, self.max_attempts)
        except TransientStoreError as e:
            logger.warning("Could not list claimable messages: %s", e)
            return 0

        self.stats.batches += 1
        for record in records:
            with log_context(worker="dispatcher", message_id=record.id):
                try:
                    await self._process(record)
                except Exception:
                    logger.exception("Dispatch of message %s aborted", record.id)
        return len(records)

    async def _maybe_release_stale(self) -> None:
        now = time.monotonic()
        if self._last_stale_sweep and now - self._last_stale_sweep < self.claim_timeout:
            return
        self._last_stale_sweep = now
        try:
            released = await self.store.release_stale_claims(self.claim_timeout)
        except TransientStoreError as e:
            logger.warning("Stale claim sweep failed: %s", e)
            return
        if released:
            self.stats.stale_released += released
            logger.warning("Released %d stale claim(s) older than %.0fs", released, self.claim_timeout)

    async def _process(self, record: MessageRecord) -> None:
        try:
            claimed = await self.store.claim(record.id)
        except TransientStoreError as e:
            logger.warning("Claim of message %s failed: %s", record.id, e)
            return
        if claimed is None:
            self.stats.lost += 1
            logger.debug("Message %s claimed elsewhere, skipping", record.id)
            return
        # the listed row may predate another dispatcher's failed attempt
        record = claimed

        self.stats.claimed += 1
        try:
            content = await self._resolve_content(record)
            remote_id = await self.channel.send(record.destination, content)
        except ChannelSendError as e:
            await self._record_failure(record, str(e), permanent=not e.retryable)
        except Exception as e:
            logger.exception("Unexpected error sending message %s", record.id)
            await self._record_failure(record, f"{type(e).__name__}: {e}", permanent=False)
        else:
            await self._record_success(record, remote_id)

    async def _resolve_content(self, record: MessageRecord) -> OutgoingContent:
        if record.media_url:
            media = await self.media_fetcher(record.media_url)
            if record.body:
                media = MediaContent(
                    data=media.data,
                    mime_type=media.mime_type,
                    filename=media.filename,
                    caption=record.body,
                )
            return media
        return TextContent(text=record.body or "")

    async def _record_success(self, record: MessageRecord, remote_id: str | None) -> None:
        self.stats.sent += 1
        logger.info("Message %s sent to %s (remote id %s)", record.id, record.destination, remote_id)
        if not await self.writer.mark_sent(record.id, remote_id):
            self.stats.diverted += 1
        await self.writer.audit(
            AuditEntry(
                event="message.sent",
                message_id=record.id,
                details={"remote_message_id": remote_id, "channel": self.channel.name},
            )
        )

    async def _record_failure(self, record: MessageRecord, error: str, *, permanent: bool) -> None:
        attempts = record.attempt_count + 1
        status = next_status(attempts, self.max_attempts)
        if status == MessageStatus.FAILED:
            self.stats.failed += 1
            logger.error(
                "Message %s permanently failed after %d attempts: %s",
                record.id, attempts, error,
            )
        else:
            self.stats.retried += 1
            logger.warning(
                "Message %s failed (attempt %d/%d%s): %s",
                record.id, attempts, self.max_attempts,
                ", not retryable" if permanent else "", error,
            )
        if not await self.writer.mark_failed_attempt(record.id, attempts, self.max_attempts):
            self.stats.diverted += 1
        await self.writer.audit(
            AuditEntry(
                event="message.failed" if status == MessageStatus.FAILED else "message.retry",
                message_id=record.id,
                details={"attempt": attempts, "error": error[:500]},
            )
        )

    # ── Loop ────────────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Poll until stop() is called. Sleeps only after an empty batch."""
        logger.info(
            "Dispatch worker running (batch=%d, max_attempts=%d, poll=%.1fs)",
            self.batch_size, self.max_attempts, self.poll_interval,
        )
        while not self._stop.is_set():
            try:
                fetched = await self.run_once()
            except Exception:
                logger.exception("Dispatch pass failed")
                fetched = 0
            if fetched == 0:
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.info("Dispatch worker stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Signal the loop and wait for the in-flight batch to finish."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
