"""Configuration for the webhook notification client."""

from pydantic import BaseModel, Field


class WebhookConfig(BaseModel):
    """Configuration for webhook delivery (Slack-compatible incoming webhooks)."""

    url: str = ""
    timeout_seconds: float = 10.0
    max_retries: int = 3
    backoff_seconds: float = 1.0
    headers: dict[str, str] = Field(default_factory=dict)
