"""Telegram delivery failures."""

from conveyor.exceptions import DeliveryError


class TelegramError(DeliveryError):
    """Base Telegram delivery error."""


class TelegramAuthError(TelegramError):
    """Bot token rejected or Telegram unreachable at startup."""


class TelegramConfigError(TelegramError):
    """Bot token or chat id missing."""
