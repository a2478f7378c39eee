"""Telegram sink configuration."""

from pydantic import BaseModel


class TelegramConfig(BaseModel):
    """Bot credentials and delivery policy for run notifications."""

    bot_token: str = ""
    default_chat_id: str = ""
    max_attempts: int = 2
    retry_delay_seconds: float = 2.0
    parse_mode: str = "HTML"
