"""Telegram notification sink."""

from .client import TelegramClient
from .config import TelegramConfig
from .exceptions import TelegramAuthError, TelegramConfigError, TelegramError

__all__ = [
    "TelegramClient",
    "TelegramConfig",
    "TelegramError",
    "TelegramAuthError",
    "TelegramConfigError",
]
