"""Messaging channel adapters."""

from courier.channels.addressing import normalize_destination
from courier.channels.base import (
    ChannelStatus,
    MediaContent,
    MessageChannel,
    OutgoingContent,
    TextContent,
)

__all__ = [
    "ChannelStatus",
    "MediaContent",
    "MessageChannel",
    "OutgoingContent",
    "TextContent",
    "normalize_destination",
]
