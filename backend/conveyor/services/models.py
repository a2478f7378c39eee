"""Notification delivery models."""

from datetime import datetime, timezone

from pydantic import BaseModel, Field


class NotificationResult(BaseModel):
    """Notification delivery result."""

    success: bool
    sink: str
    recipient: str
    message_id: str | None = None
    sent_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    error: str | None = None
    retry_count: int = 0

    def __str__(self) -> str:
        """Human-readable status."""
        if self.success:
            return f"Sent via {self.sink} to {self.recipient}"
        return f"{self.sink} delivery to {self.recipient} failed: {self.error}"
