"""Telegram delivery of run reports through python-telegram-bot."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from telegram import Bot
from telegram.error import InvalidToken, TelegramError as BotAPIError

from ..models import NotificationResult
from .config import TelegramConfig
from .exceptions import TelegramAuthError, TelegramConfigError

logger = logging.getLogger(__name__)


class TelegramClient:
    """Posts run reports to a chat.

    Usage:
        async with TelegramClient(config) as client:
            result = await client.send_report("<pre>demo-app: Failed</pre>")
    """

    def __init__(self, config: TelegramConfig):
        if not config.bot_token:
            raise TelegramConfigError("Telegram bot token is not configured")
        if not config.default_chat_id:
            raise TelegramConfigError("Telegram chat id is not configured")
        self.config = config
        self._bot: Bot | None = None

    async def __aenter__(self) -> TelegramClient:
        bot = Bot(token=self.config.bot_token)
        try:
            await bot.initialize()
        except InvalidToken as e:
            raise TelegramAuthError(f"Telegram rejected the bot token: {e}") from e
        except BotAPIError as e:
            raise TelegramAuthError(f"Could not reach Telegram: {e}") from e
        self._bot = bot
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> None:
        if self._bot is not None:
            await self._bot.shutdown()
            self._bot = None

    async def send_report(self, text: str, chat_id: str | None = None) -> NotificationResult:
        """Send one message; a failed attempt is retried after ``retry_delay_seconds``."""
        if self._bot is None:
            raise RuntimeError("TelegramClient must be used as an async context manager")

        target = chat_id or self.config.default_chat_id
        last_error = "Message send failed"

        for attempt in range(self.config.max_attempts):
            if attempt:
                await asyncio.sleep(self.config.retry_delay_seconds)
            try:
                message = await self._bot.send_message(
                    chat_id=target,
                    text=text,
                    parse_mode=self.config.parse_mode,
                )
            except BotAPIError as e:
                last_error = e.message or type(e).__name__
                logger.warning(
                    f"Telegram report to {target} failed "
                    f"(attempt {attempt + 1}/{self.config.max_attempts}): {last_error}"
                )
                continue

            logger.debug(f"Telegram report delivered to {target} as message {message.message_id}")
            return NotificationResult(
                success=True,
                sink="telegram",
                recipient=target,
                message_id=str(message.message_id),
                retry_count=attempt,
            )

        return NotificationResult(
            success=False,
            sink="telegram",
            recipient=target,
            error=last_error,
            retry_count=self.config.max_attempts - 1,
        )
