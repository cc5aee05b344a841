"""
Messaging channel capability interface.

The dispatcher depends only on ``send``; concrete channels (HTTP bridge,
Telegram) translate their transport errors into ChannelSendError.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class MediaContent:
    data: bytes
    mime_type: str
    filename: str | None = None
    caption: str | None = None


OutgoingContent = Union[TextContent, MediaContent]


@dataclass
class ChannelStatus:
    connected: bool
    detail: str = ""


class MessageChannel(ABC):
    name: str = "channel"

    @abstractmethod
    async def send(self, destination: str, content: OutgoingContent) -> str | None:
        """Deliver ``content`` and return the channel's message id, if it reports one.

        Raises:
            ChannelSendError: the attempt failed.
        """
        ...

    async def status(self) -> ChannelStatus:
        return ChannelStatus(connected=True)

    async def close(self) -> None:
        return None
