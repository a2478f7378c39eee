"""Delivery of run reports to an incoming webhook over httpx."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..models import NotificationResult
from .config import WebhookConfig
from .exceptions import (
    WebhookConfigError,
    WebhookRejectedError,
    WebhookUnreachableError,
)

logger = logging.getLogger(__name__)


class WebhookClient:
    def __init__(
        self,
        config: WebhookConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or WebhookConfig()
        if not self.config.url:
            raise WebhookConfigError("Webhook URL is required")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> WebhookClient:
        self._client = httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            headers=self.config.headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: Exception | None,
        exc_tb: Any,
    ) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError(
                "WebhookClient must be used as async context manager"
            )
        return self._client

    async def post(self, payload: dict[str, Any]) -> NotificationResult:
        """POST a JSON payload, retrying network errors, 429 and 5xx with backoff."""
        retry_count = 0
        last_error: str | None = None

        while retry_count < self.config.max_retries:
            try:
                response = await self.client.post(self.config.url, json=payload)
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Webhook request failed: {last_error}")
            else:
                if response.status_code == 429 or response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(f"Webhook sink answered {response.status_code}")
                elif response.status_code >= 400:
                    raise WebhookRejectedError(
                        f"Webhook rejected notification: HTTP {response.status_code} "
                        f"{response.text[:200]}",
                        status_code=response.status_code,
                    )
                else:
                    return NotificationResult(
                        success=True,
                        sink="webhook",
                        recipient=self.config.url,
                        retry_count=retry_count,
                    )

            retry_count += 1
            if retry_count < self.config.max_retries:
                wait_time = self.config.backoff_seconds * 2 ** (retry_count - 1)
                logger.warning(f"Retrying webhook in {wait_time:g}s...")
                await asyncio.sleep(wait_time)

        raise WebhookUnreachableError(
            f"Webhook unreachable after {self.config.max_retries} attempts: {last_error}"
        )
