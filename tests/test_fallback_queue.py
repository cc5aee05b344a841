"""
Tests for courier/delivery/fallback.py — persistence, ordering and eviction.
"""

import json
import os

import pytest

from courier.delivery.fallback import FallbackQueue
from courier.models import FallbackItem, FallbackKind


def status_item(message_id, op="sent"):
    return FallbackItem(
        kind=FallbackKind.STATUS_UPDATE,
        payload={"op": op, "message_id": message_id, "remote_message_id": None},
    )


@pytest.mark.asyncio
async def test_enqueue_appends_one_line_per_item(queue):
    await queue.enqueue(status_item(1))
    await queue.enqueue(status_item(2))

    with open(queue.path, encoding="utf-8") as f:
        lines = [json.loads(line) for line in f if line.strip()]
    assert [line["payload"]["message_id"] for line in lines] == [1, 2]
    assert len(queue) == 2


@pytest.mark.asyncio
async def test_reload_restores_items_in_order(tmp_path):
    path = str(tmp_path / "q.jsonl")
    first = FallbackQueue(path)
    items = [status_item(i) for i in range(5)]
    for item in items:
        await first.enqueue(item)

    second = FallbackQueue(path)
    restored = await second.load_on_startup()

    assert restored == 5
    assert [i.id for i in second.snapshot()] == [i.id for i in items]
    assert second.snapshot()[0].kind == FallbackKind.STATUS_UPDATE


@pytest.mark.asyncio
async def test_load_with_no_file_is_empty(queue):
    assert await queue.load_on_startup() == 0
    assert queue.snapshot() == []


@pytest.mark.asyncio
async def test_evict_removes_only_that_item(tmp_path):
    path = str(tmp_path / "q.jsonl")
    queue = FallbackQueue(path)
    a, b, c = status_item(1), status_item(2), status_item(3)
    for item in (a, b, c):
        await queue.enqueue(item)

    assert await queue.evict(b.id) is True

    assert [i.id for i in queue.snapshot()] == [a.id, c.id]
    reloaded = FallbackQueue(path)
    await reloaded.load_on_startup()
    assert [i.id for i in reloaded.snapshot()] == [a.id, c.id]


@pytest.mark.asyncio
async def test_evict_unknown_item_returns_false(queue):
    await queue.enqueue(status_item(1))
    assert await queue.evict("nope") is False
    assert len(queue) == 1


@pytest.mark.asyncio
async def test_evict_leaves_no_temp_file(queue, tmp_path):
    item = status_item(1)
    await queue.enqueue(item)
    await queue.evict(item.id)
    assert not (tmp_path / "fallback.jsonl.tmp").exists()


@pytest.mark.asyncio
async def test_snapshot_is_a_copy(queue):
    await queue.enqueue(status_item(1))
    snap = queue.snapshot()
    await queue.enqueue(status_item(2))
    assert len(snap) == 1
    assert len(queue) == 2


@pytest.mark.asyncio
async def test_corrupt_line_is_skipped(tmp_path):
    path = tmp_path / "q.jsonl"
    good = status_item(7)
    path.write_text(good.model_dump_json() + "\n" + '{"kind": "status-upd', encoding="utf-8")

    queue = FallbackQueue(str(path))
    assert await queue.load_on_startup() == 1
    assert queue.snapshot()[0].id == good.id


@pytest.mark.asyncio
async def test_park_moves_item_to_dead_log(queue):
    keep, bad = status_item(1), status_item(2)
    await queue.enqueue(keep)
    await queue.enqueue(bad)

    assert await queue.park(bad.id, "gave up") is True

    assert [i.id for i in queue.snapshot()] == [keep.id]
    with open(queue.dead_path, encoding="utf-8") as f:
        [record] = [json.loads(line) for line in f]
    assert record["reason"] == "gave up"
    assert record["item"]["id"] == bad.id
    assert [i.id for i in await queue.dead_items()] == [bad.id]


@pytest.mark.asyncio
async def test_requeue_dead_restores_parked_items(queue):
    item = status_item(3)
    await queue.enqueue(item)
    await queue.park(item.id, "test")
    assert len(queue) == 0

    assert await queue.requeue_dead() == 1

    assert [i.id for i in queue.snapshot()] == [item.id]
    assert await queue.dead_items() == []


@pytest.mark.asyncio
async def test_count_by_kind(queue):
    await queue.enqueue(status_item(1))
    await queue.enqueue(FallbackItem(kind=FallbackKind.AUDIT, payload={"event": "x"}))
    counts = queue.count_by_kind()
    assert counts["status-update"] == 1
    assert counts["audit"] == 1
    assert counts["media-upload"] == 0


def test_default_dead_path(tmp_path):
    queue = FallbackQueue(str(tmp_path / "q.jsonl"))
    assert queue.dead_path == str(tmp_path / "q.jsonl") + ".dead"


@pytest.mark.asyncio
async def test_writes_are_fsynced(queue, monkeypatch):
    synced = []
    monkeypatch.setattr(os, "fsync", synced.append)

    item = status_item(1)
    await queue.enqueue(item)
    assert len(synced) == 1

    await queue.evict(item.id)
    # temp file, then the directory holding the renamed log
    assert len(synced) == 3


@pytest.mark.asyncio
async def test_park_fsyncs_dead_log(queue, monkeypatch):
    item = status_item(1)
    await queue.enqueue(item)
    synced = []
    monkeypatch.setattr(os, "fsync", synced.append)

    await queue.park(item.id, "gave up")

    # dead log append, then the live log rewrite and its directory
    assert len(synced) == 3


@pytest.mark.asyncio
async def test_failed_rewrite_keeps_item(queue, monkeypatch):
    item = status_item(1)
    await queue.enqueue(item)

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", broken_replace)
    with pytest.raises(OSError):
        await queue.evict(item.id)
    assert [i.id for i in queue.snapshot()] == [item.id]
