"""Shared fixtures for courier tests."""

import pytest
import pytest_asyncio

from courier.channels.base import MessageChannel
from courier.delivery.fallback import FallbackQueue
from courier.delivery.writer import DurableWriter
from courier.exceptions import ChannelSendError, TransientStoreError
from courier.models import MessageDraft, Sender
from courier.outbox.sqlite_store import SqliteOutboxStore
from courier.outbox.store import OutboxStore
from courier.storage.local import LocalObjectStore


@pytest.fixture(autouse=True)
def isolate_env(monkeypatch, tmp_path):
    """Prevent tests from reading real .env or touching real data."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("STORE_BACKEND", "sqlite")
    monkeypatch.setenv("CHANNEL_BACKEND", "bridge")
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "")
    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "")


class FakeChannel(MessageChannel):
    """Records deliveries; fails for destinations listed in ``fail_for``."""

    name = "fake"

    def __init__(self) -> None:
        self.sent: list[tuple[str, object]] = []
        self.fail_for: set[str] = set()

    async def send(self, destination, content):
        if destination in self.fail_for:
            raise ChannelSendError(f"cannot reach {destination}")
        self.sent.append((destination, content))
        return f"remote-{len(self.sent)}"


class FlakyStore(OutboxStore):
    """Wraps a real store; operations named in ``down`` raise TransientStoreError."""

    def __init__(self, inner: OutboxStore) -> None:
        self.inner = inner
        self.down: set[str] = set()

    def _check(self, op: str) -> None:
        if op in self.down or "*" in self.down:
            raise TransientStoreError(f"{op}: store unreachable")

    async def list_claimable(self, limit, max_attempts):
        self._check("list_claimable")
        return await self.inner.list_claimable(limit, max_attempts)

    async def claim(self, message_id):
        self._check("claim")
        return await self.inner.claim(message_id)

    async def mark_sent(self, message_id, remote_message_id):
        self._check("mark_sent")
        await self.inner.mark_sent(message_id, remote_message_id)

    async def mark_failed_attempt(self, message_id, new_attempt_count, max_attempts):
        self._check("mark_failed_attempt")
        await self.inner.mark_failed_attempt(message_id, new_attempt_count, max_attempts)

    async def release_stale_claims(self, older_than):
        self._check("release_stale_claims")
        return await self.inner.release_stale_claims(older_than)

    async def insert_message(self, draft):
        self._check("insert_message")
        return await self.inner.insert_message(draft)

    async def insert_audit(self, entry):
        self._check("insert_audit")
        await self.inner.insert_audit(entry)

    async def find_or_create_chat(self, address):
        self._check("find_or_create_chat")
        return await self.inner.find_or_create_chat(address)

    async def get_message(self, message_id):
        return await self.inner.get_message(message_id)


@pytest_asyncio.fixture
async def sqlite_store(tmp_path):
    store = SqliteOutboxStore(str(tmp_path / "outbox.db"))
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def flaky_store(sqlite_store):
    return FlakyStore(sqlite_store)


@pytest.fixture
def queue(tmp_path):
    return FallbackQueue(str(tmp_path / "fallback.jsonl"), str(tmp_path / "fallback.dead.jsonl"))


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(str(tmp_path / "media"))


@pytest.fixture
def writer(flaky_store, queue, object_store):
    return DurableWriter(flaky_store, queue, object_store)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def make_message(sqlite_store):
    """Insert an approved admin message, optionally with prior failed attempts."""

    async def _make(destination="391111@c.us", body="hello", attempts=0, max_attempts=5, **kwargs):
        record = await sqlite_store.insert_message(
            MessageDraft(sender=Sender.ADMIN, destination=destination, body=body, **kwargs)
        )
        if attempts:
            await sqlite_store.mark_failed_attempt(record.id, attempts, max_attempts)
            record = await sqlite_store.get_message(record.id)
        return record

    return _make
