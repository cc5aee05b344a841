"""
Pydantic v2 data models for courier.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field

MessageId = Union[int, str]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Sender(str, Enum):
    ADMIN = "admin"
    CHANNEL = "channel"


class MessageStatus(str, Enum):
    """Lifecycle of an outbound message.

    received -> (admin) -> approved -> sent | failed
    """

    RECEIVED = "received"
    APPROVED = "approved"
    SENT = "sent"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MessageStatus.SENT, MessageStatus.FAILED)


class MessageDraft(BaseModel):
    """Fields supplied when a message row is created; the store assigns the rest."""

    chat_id: Optional[MessageId] = None
    sender: Sender
    destination: str
    body: Optional[str] = None
    media_url: Optional[str] = None
    status: MessageStatus = MessageStatus.APPROVED


class MessageRecord(BaseModel):
    """A row of the Outbox Store."""

    id: MessageId
    chat_id: Optional[MessageId] = None
    sender: Sender
    destination: str
    body: Optional[str] = None
    media_url: Optional[str] = None
    status: MessageStatus
    in_progress: bool = False
    attempt_count: int = Field(default=0, ge=0)
    remote_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)


class AuditEntry(BaseModel):
    event: str  # message.sent, message.retry, message.failed, ...
    message_id: Optional[MessageId] = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)


class FallbackKind(str, Enum):
    STATUS_UPDATE = "status-update"
    AUDIT = "audit"
    INCOMING_MESSAGE = "incoming-message"
    MEDIA_UPLOAD = "media-upload"


class FallbackItem(BaseModel):
    """A write that could not reach a remote dependency, staged on local disk.

    Items are immutable once written; the flush worker evicts them by ``id``.
    """

    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: uuid4().hex)
    kind: FallbackKind
    payload: dict[str, Any]
    created_at: datetime = Field(default_factory=_utcnow)
