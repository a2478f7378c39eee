"""Async HTTP client for a running Conveyor service."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from conveyor.exceptions import ConveyorError
from conveyor.pipeline.models import Run

logger = logging.getLogger(__name__)


class ConveyorAPIError(ConveyorError):
    """The service answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ServiceUnreachableError(ConveyorError):
    """No response from the service."""


class ConveyorClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> ConveyorClient:
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
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
                "ConveyorClient must be used as async context manager"
            )
        return self._client

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Any:
        retry_count = 0
        last_error: Exception | None = None

        while retry_count < self.max_retries:
            try:
                response = await self.client.request(
                    method=method, url=endpoint, params=params, json=json_data
                )
            except httpx.RequestError as e:
                last_error = e
                wait_time = 2 ** retry_count
                logger.warning(f"Request to {self.base_url} failed: {e}, retrying in {wait_time}s...")
                await asyncio.sleep(wait_time)
                retry_count += 1
                continue

            if response.status_code >= 500 and response.status_code != 503:
                wait_time = 2 ** retry_count
                logger.warning(
                    f"Server error {response.status_code}, retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)
                retry_count += 1
                continue

            if response.status_code >= 400:
                try:
                    body = response.json()
                except ValueError:
                    body = response.text
                detail = body.get("detail", body) if isinstance(body, dict) else body
                raise ConveyorAPIError(
                    f"{method} {endpoint} failed ({response.status_code}): {detail}",
                    status_code=response.status_code,
                    body=body,
                )

            return response.json()

        raise ServiceUnreachableError(
            f"Conveyor service at {self.base_url} unreachable after "
            f"{self.max_retries} attempts: {last_error}"
        )

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/health")

    async def trigger(
        self,
        pipeline: str,
        parameters: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"parameters": parameters or {}}
        if idempotency_key:
            payload["idempotencyKey"] = idempotency_key
        return await self._request("POST", f"/pipelines/{pipeline}/runs", json_data=payload)

    async def get_run(self, run_id: str) -> Run:
        return Run.model_validate(await self._request("GET", f"/runs/{run_id}"))

    async def approve(self, run_id: str, stage_name: str) -> dict[str, Any]:
        return await self._request("POST", f"/runs/{run_id}/stages/{stage_name}/approve")

    async def cancel(self, run_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/runs/{run_id}/cancel")

    async def wait_for_run(
        self,
        run_id: str,
        poll_interval: float = 2.0,
        timeout: float | None = None,
    ) -> Run:
        """Poll until the run reaches a terminal status."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        while True:
            run = await self.get_run(run_id)
            if run.is_terminal:
                return run
            if deadline is not None and loop.time() >= deadline:
                raise TimeoutError(f"Run {run_id} still {run.status} after {timeout:g}s")
            await asyncio.sleep(poll_interval)
