"""
Flush worker: replays fallback queue items until the remote side accepts them.

Each cycle works on a snapshot of the queue, so items enqueued mid-flush wait
for the next cycle. A successful replay evicts exactly that item. Failures are
counted per item in memory; after ``max_replays`` failures the item is parked
in the dead log. Malformed items are parked on the first attempt.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass

from ..exceptions import TransientStoreError
from ..logging_config import log_context
from ..models import FallbackItem
from .fallback import FallbackQueue
from .writer import DurableWriter

logger = logging.getLogger(__name__)


@dataclass
class FlushStats:
    cycles: int = 0
    replayed: int = 0
    failed: int = 0
    parked: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class FlushWorker:
    def __init__(
        self,
        queue: FallbackQueue,
        writer: DurableWriter,
        *,
        interval: float = 10.0,
        max_replays: int = 50,
    ) -> None:
        self.queue = queue
        self.writer = writer
        self.interval = interval
        self.max_replays = max_replays
        self.stats = FlushStats()
        self._failures: dict[str, int] = defaultdict(int)
        # replayed, but the eviction rewrite failed; never replay these again
        self._unevicted: set[str] = set()
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Replay every item currently queued.

        Returns:
            Number of items replayed and evicted.
        """
        items = self.queue.snapshot()
        if not items:
            return 0

        self.stats.cycles += 1
        replayed = 0
        for item in items:
            with log_context(worker="flusher", fallback_item=item.id):
                if await self._flush_item(item):
                    replayed += 1

        if replayed:
            logger.info("Flushed %d/%d fallback item(s), %d pending", replayed, len(items), len(self.queue))
        return replayed

    async def _flush_item(self, item: FallbackItem) -> bool:
        """Replay and evict one item; True once it has left the queue."""
        if item.id in self._unevicted:
            return await self._evict(item)
        try:
            await self.writer.replay(item)
        except (KeyError, ValueError) as e:
            # malformed payload: UnknownReplayError, ValidationError, bad base64
            await self._park(item.id, f"malformed {item.kind.value} item: {e}")
            return False
        except Exception as e:
            if not isinstance(e, TransientStoreError):
                logger.exception("Unexpected error replaying %s item %s", item.kind.value, item.id)
            self._record_failure(item.id, item.kind.value, e)
            if self._failures[item.id] >= self.max_replays:
                await self._park(item.id, f"gave up after {self.max_replays} replays: {e}")
            return False

        self._failures.pop(item.id, None)
        self.stats.replayed += 1
        return await self._evict(item)

    async def _evict(self, item: FallbackItem) -> bool:
        try:
            await self.queue.evict(item.id)
        except OSError as e:
            self._unevicted.add(item.id)
            logger.error("Replayed %s item %s but could not evict it: %s", item.kind.value, item.id, e)
            return False
        self._unevicted.discard(item.id)
        return True

    def _record_failure(self, item_id: str, kind: str, error: Exception) -> None:
        self._failures[item_id] += 1
        self.stats.failed += 1
        logger.debug(
            "Replay of %s item %s failed (%d/%d): %s",
            kind, item_id, self._failures[item_id], self.max_replays, error,
        )

    async def _park(self, item_id: str, reason: str) -> None:
        await self.queue.park(item_id, reason)
        self._failures.pop(item_id, None)
        self.stats.parked += 1

    async def run(self) -> None:
        logger.info("Flush worker running (interval=%.1fs)", self.interval)
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Flush cycle failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Flush worker stopped")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Signal the loop and wait for the current cycle to finish."""
        self._stop.set()
        if self._task:
            await self._task
            self._task = None
