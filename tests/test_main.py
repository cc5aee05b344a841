"""Tests for courier/main.py — component wiring."""

import pytest

from courier.channels.bridge import BridgeChannel
from courier.config import Settings
from courier.delivery.fallback import FallbackQueue
from courier.exceptions import FatalConfigError
from courier.main import build_components
from courier.models import FallbackItem, FallbackKind
from courier.outbox.sqlite_store import SqliteOutboxStore
from courier.storage.local import LocalObjectStore


@pytest.mark.asyncio
async def test_build_sqlite_bridge_components(tmp_path):
    cfg = Settings(data_dir=str(tmp_path), store_backend="sqlite", channel_backend="bridge")

    components = await build_components(cfg)
    try:
        assert isinstance(components.store, SqliteOutboxStore)
        assert isinstance(components.object_store, LocalObjectStore)
        assert isinstance(components.channel, BridgeChannel)
        assert components.dispatcher.max_attempts == cfg.max_attempts
        assert components.flusher.max_replays == cfg.fallback_max_replays
        assert (tmp_path / "courier.db").exists()
    finally:
        await components.close()


@pytest.mark.asyncio
async def test_build_restores_pending_fallback_items(tmp_path):
    cfg = Settings(data_dir=str(tmp_path), store_backend="sqlite")
    await FallbackQueue(cfg.fallback_log_path).enqueue(
        FallbackItem(kind=FallbackKind.AUDIT, payload={"event": "message.sent"})
    )

    components = await build_components(cfg)
    try:
        assert len(components.queue) == 1
    finally:
        await components.close()


@pytest.mark.asyncio
async def test_build_refuses_rest_without_credentials(tmp_path):
    cfg = Settings(data_dir=str(tmp_path), store_backend="rest", supabase_url="", supabase_service_role_key="")
    with pytest.raises(FatalConfigError):
        await build_components(cfg)


@pytest.mark.asyncio
async def test_created_message_flows_to_channel(tmp_path, channel):
    """An admin message goes from create_outbound to the channel in one dispatch pass."""
    cfg = Settings(data_dir=str(tmp_path), store_backend="sqlite")
    components = await build_components(cfg)
    components.dispatcher.channel = channel
    try:
        record = await components.inbound.create_outbound("39 333 1234567", "ciao")
        await components.dispatcher.run_once()

        assert [dest for dest, _ in channel.sent] == ["393331234567@c.us"]
        stored = await components.store.get_message(record.id)
        assert stored.status.value == "sent"
    finally:
        await components.close()
