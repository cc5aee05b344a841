"""
Best-effort remote writes with diversion to the fallback queue.

Every write the core makes against the Outbox Store or the object store goes
through DurableWriter. A write that fails for any reason is not retried inline;
it becomes a FallbackItem and the flush worker calls ``replay`` on it later. Payload
encoding and replay live side by side here so the two cannot drift apart.

Payloads by kind:
  status-update     {"op": "sent", "message_id", "remote_message_id"}
                    {"op": "failed_attempt", "message_id", "attempt_count", "max_attempts"}
  audit             AuditEntry fields
  incoming-message  {"draft": MessageDraft fields, "chat_address": str | None}
  media-upload      {"key", "content_type", "data": base64}
"""

import base64
import logging

from ..exceptions import TransientStoreError
from ..models import (
    AuditEntry,
    FallbackItem,
    FallbackKind,
    MessageDraft,
    MessageId,
    MessageRecord,
)
from ..outbox.store import OutboxStore
from ..storage.base import ObjectStore
from .fallback import FallbackQueue

logger = logging.getLogger(__name__)


class UnknownReplayError(ValueError):
    """A fallback item this writer cannot replay (unknown kind or op)."""


class DurableWriter:
    def __init__(
        self,
        store: OutboxStore,
        queue: FallbackQueue,
        object_store: ObjectStore | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.object_store = object_store

    async def _divert(self, kind: FallbackKind, payload: dict, error: Exception) -> None:
        if isinstance(error, TransientStoreError):
            logger.warning("%s write failed, diverting to fallback queue: %s", kind.value, error)
        else:
            logger.error(
                "%s write failed unexpectedly, diverting to fallback queue",
                kind.value, exc_info=error,
            )
        await self.queue.enqueue(FallbackItem(kind=kind, payload=payload))

    # ── Status updates ──────────────────────────────────────────────────────────

    async def mark_sent(self, message_id: MessageId, remote_message_id: str | None) -> bool:
        """Record a delivered message. Returns False if the update was diverted."""
        try:
            await self.store.mark_sent(message_id, remote_message_id)
            return True
        except Exception as e:
            await self._divert(
                FallbackKind.STATUS_UPDATE,
                {"op": "sent", "message_id": message_id, "remote_message_id": remote_message_id},
                e,
            )
            return False

    async def mark_failed_attempt(
        self, message_id: MessageId, attempt_count: int, max_attempts: int
    ) -> bool:
        """Record a failed send. Returns False if the update was diverted."""
        try:
            await self.store.mark_failed_attempt(message_id, attempt_count, max_attempts)
            return True
        except Exception as e:
            await self._divert(
                FallbackKind.STATUS_UPDATE,
                {
                    "op": "failed_attempt",
                    "message_id": message_id,
                    "attempt_count": attempt_count,
                    "max_attempts": max_attempts,
                },
                e,
            )
            return False

    # ── Audit trail ─────────────────────────────────────────────────────────────

    async def audit(self, entry: AuditEntry) -> bool:
        try:
            await self.store.insert_audit(entry)
            return True
        except Exception as e:
            await self._divert(FallbackKind.AUDIT, entry.model_dump(mode="json"), e)
            return False

    # ── Inbound messages ────────────────────────────────────────────────────────

    async def store_incoming(
        self, draft: MessageDraft, chat_address: str | None = None
    ) -> MessageRecord | None:
        """Insert an inbound message row. Returns None if the insert was diverted."""
        try:
            if draft.chat_id is None and chat_address:
                draft = draft.model_copy(
                    update={"chat_id": await self.store.find_or_create_chat(chat_address)}
                )
            return await self.store.insert_message(draft)
        except Exception as e:
            await self._divert(
                FallbackKind.INCOMING_MESSAGE,
                {"draft": draft.model_dump(mode="json"), "chat_address": chat_address},
                e,
            )
            return None

    # ── Media ───────────────────────────────────────────────────────────────────

    async def upload_media(self, key: str, data: bytes, content_type: str) -> str:
        """Upload an attachment and return its URL.

        On failure the upload is queued and the object's eventual URL is
        returned, so the caller can reference it straight away.
        """
        if self.object_store is None:
            raise RuntimeError("DurableWriter has no object store configured")
        try:
            return await self.object_store.upload(key, data, content_type)
        except Exception as e:
            await self._divert(
                FallbackKind.MEDIA_UPLOAD,
                {
                    "key": key,
                    "content_type": content_type,
                    "data": base64.b64encode(data).decode("ascii"),
                },
                e,
            )
            return self.object_store.url_for(key)

    # ── Replay ──────────────────────────────────────────────────────────────────

    async def replay(self, item: FallbackItem) -> None:
        """Re-issue the remote write behind ``item``. Raises on failure."""
        payload = item.payload
        if item.kind == FallbackKind.STATUS_UPDATE:
            op = payload.get("op")
            if op == "sent":
                await self.store.mark_sent(payload["message_id"], payload.get("remote_message_id"))
            elif op == "failed_attempt":
                await self.store.mark_failed_attempt(
                    payload["message_id"], payload["attempt_count"], payload["max_attempts"]
                )
            else:
                raise UnknownReplayError(f"unknown status-update op {op!r}")
        elif item.kind == FallbackKind.AUDIT:
            await self.store.insert_audit(AuditEntry.model_validate(payload))
        elif item.kind == FallbackKind.INCOMING_MESSAGE:
            draft = MessageDraft.model_validate(payload["draft"])
            chat_address = payload.get("chat_address")
            if draft.chat_id is None and chat_address:
                draft = draft.model_copy(
                    update={"chat_id": await self.store.find_or_create_chat(chat_address)}
                )
            await self.store.insert_message(draft)
        elif item.kind == FallbackKind.MEDIA_UPLOAD:
            if self.object_store is None:
                raise UnknownReplayError("media-upload item but no object store configured")
            await self.object_store.upload(
                payload["key"], base64.b64decode(payload["data"]), payload["content_type"]
            )
        else:
            raise UnknownReplayError(f"unknown fallback kind {item.kind!r}")
