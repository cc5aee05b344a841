"""
Telegram channel via python-telegram-bot.

Destinations are Telegram chat ids (numeric, or ``@channelusername``).
"""

import io
import logging

import telegram
import telegram.error

from ..exceptions import ChannelSendError
from .base import ChannelStatus, MediaContent, MessageChannel, OutgoingContent, TextContent

logger = logging.getLogger(__name__)


class TelegramChannel(MessageChannel):
    name = "telegram"

    def __init__(self, token: str | None = None, bot: telegram.Bot | None = None) -> None:
        if bot is None and not token:
            raise ValueError("TelegramChannel needs a bot token or a Bot instance")
        self.bot = bot or telegram.Bot(token=token)

    @staticmethod
    def _chat_id(destination: str) -> int | str:
        if destination.startswith("@"):
            return destination
        try:
            return int(destination)
        except ValueError as e:
            raise ChannelSendError(
                f"Invalid Telegram chat id {destination!r}", retryable=False
            ) from e

    async def send(self, destination: str, content: OutgoingContent) -> str | None:
        chat_id = self._chat_id(destination)
        try:
            if isinstance(content, TextContent):
                msg = await self.bot.send_message(chat_id=chat_id, text=content.text)
            elif isinstance(content, MediaContent):
                msg = await self.bot.send_document(
                    chat_id=chat_id,
                    document=io.BytesIO(content.data),
                    filename=content.filename or "attachment",
                    caption=content.caption,
                )
            else:
                raise ChannelSendError(
                    f"Unsupported content type {type(content).__name__}", retryable=False
                )
        except (telegram.error.BadRequest, telegram.error.Forbidden) as e:
            raise ChannelSendError(f"telegram rejected message: {e}", retryable=False) from e
        except telegram.error.TelegramError as e:
            # NetworkError, TimedOut, RetryAfter
            raise ChannelSendError(f"telegram: {e}") from e
        return str(msg.message_id)

    async def status(self) -> ChannelStatus:
        try:
            me = await self.bot.get_me()
        except telegram.error.TelegramError as e:
            return ChannelStatus(connected=False, detail=str(e))
        return ChannelStatus(connected=True, detail=f"@{me.username}")
