"""Webhook notification service."""

from ..models import NotificationResult
from .client import WebhookClient
from .config import WebhookConfig
from .exceptions import (
    WebhookConfigError,
    WebhookError,
    WebhookRejectedError,
    WebhookUnreachableError,
)

__all__ = [
    "WebhookClient",
    "WebhookConfig",
    "NotificationResult",
    "WebhookError",
    "WebhookConfigError",
    "WebhookRejectedError",
    "WebhookUnreachableError",
]
