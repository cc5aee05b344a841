"""
OutboxStore abstract base class.

Every mutation of ``status`` / ``in_progress`` goes through ``try_claim``,
``mark_sent`` and ``mark_failed_attempt``. ``try_claim`` must be a single
conditional write in the backing store; it is the only cross-instance
synchronisation point.

Implementations raise TransientStoreError when the backend is unreachable.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import AuditEntry, MessageDraft, MessageId, MessageRecord, MessageStatus


def next_status(new_attempt_count: int, max_attempts: int) -> MessageStatus:
    """Status after a failed send: terminal once attempts are exhausted."""
    if new_attempt_count >= max_attempts:
        return MessageStatus.FAILED
    return MessageStatus.APPROVED


class OutboxStore(ABC):

    @abstractmethod
    async def list_claimable(self, limit: int, max_attempts: int) -> list[MessageRecord]:
        """Approved, unclaimed rows under max_attempts, oldest first."""
        ...

    @abstractmethod
    async def claim(self, message_id: MessageId) -> MessageRecord | None:
        """Set in_progress only if the row is still approved and unclaimed.

        Returns the row as it stands after the claim, or None if another
        caller holds it. Attempt counts must be taken from this row, not
        from the listing, which may be stale by the time the claim lands.
        """
        ...

    async def try_claim(self, message_id: MessageId) -> bool:
        """True if this caller won the claim."""
        return await self.claim(message_id) is not None

    @abstractmethod
    async def mark_sent(self, message_id: MessageId, remote_message_id: str | None) -> None:
        ...

    @abstractmethod
    async def mark_failed_attempt(
        self,
        message_id: MessageId,
        new_attempt_count: int,
        max_attempts: int,
    ) -> None:
        ...

    @abstractmethod
    async def release_stale_claims(self, older_than: float) -> int:
        """Clear claims held longer than ``older_than`` seconds.

        A dispatcher that dies between claim and outcome leaves its row
        claimed; this returns such rows to the claimable set.
        """
        ...

    @abstractmethod
    async def insert_message(self, draft: MessageDraft) -> MessageRecord:
        ...

    @abstractmethod
    async def insert_audit(self, entry: AuditEntry) -> None:
        ...

    @abstractmethod
    async def find_or_create_chat(self, address: str) -> MessageId:
        """Return the id of the chat grouping for ``address``, creating it if needed."""
        ...

    @abstractmethod
    async def get_message(self, message_id: MessageId) -> MessageRecord | None:
        ...

    async def close(self) -> None:
        """Release backend resources."""
        return None
