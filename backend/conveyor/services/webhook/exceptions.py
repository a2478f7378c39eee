"""Custom exceptions for webhook delivery."""

from conveyor.exceptions import DeliveryError


class WebhookError(DeliveryError):
    """Base exception for webhook delivery errors."""


class WebhookConfigError(WebhookError):
    """Webhook URL missing or invalid."""

    pass


class WebhookRejectedError(WebhookError):
    """The sink answered with a non-retryable 4xx status."""

    pass


class WebhookUnreachableError(WebhookError):
    """Network failure or 5xx/429 after all retries."""

    pass
