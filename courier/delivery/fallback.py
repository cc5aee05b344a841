"""
Local fallback queue for writes a remote dependency refused.

A JSONL log on local disk: ``enqueue`` appends one line, eviction rewrites the
whole file through a temp file + ``os.replace`` so a crash mid-rewrite leaves
either the old or the new log. Every write is fsynced before it counts as
queued, and the directory is fsynced after each rename. The full log is held
in memory; the queue is owned by one process and never shared between
instances.

Items that keep failing are moved to a separate dead log ("parked") rather
than retried forever; see ``park`` and ``requeue_dead``.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone

import aiofiles
from pydantic import ValidationError

from ..models import FallbackItem, FallbackKind

logger = logging.getLogger(__name__)


async def _fsync(f) -> None:
    """Push an open aiofiles handle through to disk."""
    await asyncio.to_thread(os.fsync, f.fileno())


def _fsync_dir(path: str) -> None:
    """Persist a rename inside the directory holding ``path`` (POSIX only)."""
    if os.name != "posix":
        return
    fd = os.open(os.path.dirname(path) or ".", os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class FallbackQueue:
    """Durable, ordered, per-process staging area for failed writes.

    Usage:
        queue = FallbackQueue(settings.fallback_log_path, settings.fallback_dead_path)
        await queue.load_on_startup()

        await queue.enqueue(FallbackItem(kind=FallbackKind.AUDIT, payload={...}))
        for item in queue.snapshot():
            ...
            await queue.evict(item.id)
    """

    def __init__(self, path: str, dead_path: str | None = None) -> None:
        self.path = path
        self.dead_path = dead_path or f"{path}.dead"
        self._items: list[FallbackItem] = []
        self._lock = asyncio.Lock()
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> list[FallbackItem]:
        """Items pending right now, oldest first."""
        return list(self._items)

    async def load_on_startup(self) -> int:
        """Restore items persisted by a previous run, in their original order.

        Returns:
            Number of items restored.
        """
        async with self._lock:
            self._items = await self._read_log(self.path)
        if self._items:
            logger.info("Restored %d pending fallback item(s) from %s", len(self._items), self.path)
        return len(self._items)

    async def enqueue(self, item: FallbackItem) -> None:
        """Append ``item`` to the on-disk log, then to the in-memory list."""
        line = item.model_dump_json() + "\n"
        async with self._lock:
            async with aiofiles.open(self.path, mode="a", encoding="utf-8") as f:
                await f.write(line)
                await f.flush()
                await _fsync(f)
            self._items.append(item)
        logger.info("Queued %s item %s for replay (depth=%d)", item.kind.value, item.id, len(self._items))

    async def evict(self, item_id: str) -> bool:
        """Remove an item after a confirmed replay.

        Returns:
            False if the item was not in the queue.
        """
        async with self._lock:
            remaining = [i for i in self._items if i.id != item_id]
            if len(remaining) == len(self._items):
                return False
            await self._rewrite(remaining)
            self._items = remaining
        logger.debug("Evicted fallback item %s", item_id)
        return True

    async def park(self, item_id: str, reason: str) -> bool:
        """Move an item to the dead log and evict it from the live queue."""
        item = next((i for i in self._items if i.id == item_id), None)
        if item is None:
            return False
        record = {
            "reason": reason,
            "parked_at": datetime.now(timezone.utc).isoformat(),
            "item": json.loads(item.model_dump_json()),
        }
        async with self._lock:
            async with aiofiles.open(self.dead_path, mode="a", encoding="utf-8") as f:
                await f.write(json.dumps(record) + "\n")
                await f.flush()
                await _fsync(f)
        logger.error("Parked %s item %s: %s", item.kind.value, item.id, reason)
        return await self.evict(item_id)

    async def dead_items(self) -> list[FallbackItem]:
        if not os.path.exists(self.dead_path):
            return []
        items: list[FallbackItem] = []
        async with aiofiles.open(self.dead_path, mode="r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(FallbackItem.model_validate(json.loads(line)["item"]))
                except (ValueError, KeyError) as e:
                    logger.warning("Skipping corrupt dead-log line: %s", e)
        return items

    async def requeue_dead(self) -> int:
        """Put every parked item back on the live queue and clear the dead log."""
        items = await self.dead_items()
        for item in items:
            await self.enqueue(item)
        if os.path.exists(self.dead_path):
            os.remove(self.dead_path)
        if items:
            logger.info("Re-queued %d parked fallback item(s)", len(items))
        return len(items)

    def count_by_kind(self) -> dict[str, int]:
        counts = {kind.value: 0 for kind in FallbackKind}
        for item in self._items:
            counts[item.kind.value] += 1
        return counts

    async def _rewrite(self, items: list[FallbackItem]) -> None:
        tmp = f"{self.path}.tmp"
        async with aiofiles.open(tmp, mode="w", encoding="utf-8") as f:
            for item in items:
                await f.write(item.model_dump_json() + "\n")
            await f.flush()
            await _fsync(f)
        os.replace(tmp, self.path)
        await asyncio.to_thread(_fsync_dir, self.path)

    @staticmethod
    async def _read_log(path: str) -> list[FallbackItem]:
        if not os.path.exists(path):
            return []
        items: list[FallbackItem] = []
        async with aiofiles.open(path, mode="r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(FallbackItem.model_validate_json(line))
                except ValidationError as e:
                    # A torn final line after a crash mid-append
                    logger.warning("Skipping corrupt fallback line: %s", e)
        return items
