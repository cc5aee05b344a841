"""
Entry points used by the collaborators that create work.

The channel session (QR pairing, event callbacks) calls
``InboundMessageHandler.handle`` for every message it receives; the admin
surface calls ``create_outbound`` to queue a message for delivery. Neither
talks to the dispatcher directly: both only write rows to the Outbox Store.
"""

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from .channels.addressing import normalize_destination
from .channels.base import MediaContent
from .delivery.writer import DurableWriter
from .models import MessageDraft, MessageId, MessageRecord, MessageStatus, Sender
from .outbox.store import OutboxStore

logger = logging.getLogger(__name__)

AddressNormalizer = Callable[[str | None], str | None]


@dataclass
class InboundEvent:
    """A message received from the channel."""

    sender_address: str
    body: str | None = None
    media: MediaContent | None = None


def media_key(mime_type: str, now: datetime | None = None) -> str:
    """Object-store key for an inbound attachment: inbound/YYYY/MM/<uuid><ext>."""
    now = now or datetime.now(timezone.utc)
    ext = mimetypes.guess_extension(mime_type) or ""
    return f"inbound/{now:%Y}/{now:%m}/{uuid4().hex}{ext}"


class InboundMessageHandler:
    def __init__(
        self,
        store: OutboxStore,
        writer: DurableWriter,
        normalize: AddressNormalizer = normalize_destination,
    ) -> None:
        self.store = store
        self.writer = writer
        self.normalize = normalize

    async def handle(self, event: InboundEvent) -> MessageRecord | None:
        """Persist a received message as a ``received`` row.

        Store failures divert to the fallback queue (returns None); inbound
        media is uploaded first and referenced by URL either way.
        """
        address = self.normalize(event.sender_address) or event.sender_address
        logger.info("Message received from %s", address)

        media_url = None
        if event.media is not None:
            media_url = await self.writer.upload_media(
                media_key(event.media.mime_type), event.media.data, event.media.mime_type
            )

        draft = MessageDraft(
            sender=Sender.CHANNEL,
            destination=address,
            body=event.body,
            media_url=media_url,
            status=MessageStatus.RECEIVED,
        )
        return await self.writer.store_incoming(draft, chat_address=address)

    async def create_outbound(
        self,
        destination: str,
        body: str | None = None,
        *,
        media_url: str | None = None,
        chat_id: MessageId | None = None,
    ) -> MessageRecord:
        """Insert an ``approved`` admin message; the dispatcher picks it up.

        Raises:
            ValueError: nothing to send, or unusable destination.
            TransientStoreError: the store is unreachable; nothing was queued.
        """
        if not body and not media_url:
            raise ValueError("Message needs a body or a media_url")
        address = self.normalize(destination)
        if address is None:
            raise ValueError(f"Invalid destination {destination!r}")
        record = await self.store.insert_message(
            MessageDraft(
                chat_id=chat_id,
                sender=Sender.ADMIN,
                destination=address,
                body=body,
                media_url=media_url,
                status=MessageStatus.APPROVED,
            )
        )
        logger.info("Queued message %s for %s", record.id, address)
        return record
