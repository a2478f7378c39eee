"""Terminal run notifications.

The engine calls ``notify`` exactly once per run, after the terminal status is
stored. A sink that cannot be reached raises DeliveryError; the engine logs it
and the run's outcome stays as recorded.
"""

import html
import logging
from typing import Any, Protocol

import httpx

from conveyor.config import Settings
from conveyor.exceptions import DeliveryError
from conveyor.pipeline.models import Run, RunStatus
from conveyor.services.telegram import TelegramClient, TelegramConfig
from conveyor.services.webhook import WebhookConfig, WebhookClient

logger = logging.getLogger(__name__)

_STATUS_ICONS = {
    RunStatus.SUCCEEDED: "✅",
    RunStatus.FAILED: "❌",
    RunStatus.CANCELLED: "⏹",
}


class Notifier(Protocol):
    async def notify(self, run: Run) -> None: ...


def format_run_summary(run: Run) -> str:
    """Plain-text summary: headline plus one line per stage."""
    icon = _STATUS_ICONS.get(run.status, "•")
    lines = [f"{icon} {run.pipeline} {run.id}: {run.status}"]
    if run.parameters:
        params = ", ".join(f"{k}={v}" for k, v in sorted(run.parameters.items()))
        lines.append(f"Parameters: {params}")
    for result in run.stage_results.values():
        line = f"  {result.stage_name}: {result.status}"
        if result.cause:
            line += f" ({result.cause})"
        lines.append(line)
    if run.error:
        lines.append(f"Error: {run.error}")
    return "\n".join(lines)


def run_payload(run: Run) -> dict[str, Any]:
    """Slack-compatible webhook body that also carries the run snapshot."""
    snapshot = run.model_dump(mode="json", by_alias=True)
    for result in snapshot["stageResults"].values():
        result.pop("output", None)
    return {"text": format_run_summary(run), "run": snapshot}


class LogNotifier:
    """Writes the run summary to the operational log."""

    async def notify(self, run: Run) -> None:
        level = logging.INFO if run.status == RunStatus.SUCCEEDED else logging.WARNING
        logger.log(level, format_run_summary(run))


class WebhookNotifier:
    """Posts the run summary to an incoming webhook."""

    def __init__(self, config: WebhookConfig, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport

    async def notify(self, run: Run) -> None:
        async with WebhookClient(self.config, transport=self._transport) as client:
            result = await client.post(run_payload(run))
        logger.info(f"Run {run.id}: {result}")


class TelegramNotifier:
    """Sends the run summary to a Telegram chat."""

    def __init__(self, config: TelegramConfig):
        self.config = config

    async def notify(self, run: Run) -> None:
        message = f"<pre>{html.escape(format_run_summary(run))}</pre>"
        async with TelegramClient(self.config) as client:
            result = await client.send_report(message)
        if not result.success:
            raise DeliveryError(str(result))
        logger.info(f"Run {run.id}: {result}")


class CompositeNotifier:
    """Delivers to every sink; one failing sink does not stop the others."""

    def __init__(self, notifiers: list[Notifier], notify_on_success: bool = True):
        self.notifiers = notifiers
        self.notify_on_success = notify_on_success

    async def notify(self, run: Run) -> None:
        if run.status == RunStatus.SUCCEEDED and not self.notify_on_success:
            logger.debug(f"Skipping success notification for run {run.id}")
            return

        failures: list[str] = []
        for notifier in self.notifiers:
            try:
                await notifier.notify(run)
            except DeliveryError as e:
                failures.append(f"{type(notifier).__name__}: {e}")

        if failures:
            raise DeliveryError("; ".join(failures))


def build_notifier(settings: Settings) -> CompositeNotifier:
    """Wire the sinks enabled in settings."""
    options = settings.notifications
    notifiers: list[Notifier] = []

    if options.log:
        notifiers.append(LogNotifier())
    if options.webhook and settings.webhook_url:
        notifiers.append(WebhookNotifier(WebhookConfig(url=settings.webhook_url)))
    if options.telegram and settings.telegram_bot_token:
        notifiers.append(
            TelegramNotifier(
                TelegramConfig(
                    bot_token=settings.telegram_bot_token,
                    default_chat_id=settings.telegram_chat_id,
                )
            )
        )

    logger.info(
        f"Notification sinks: {', '.join(type(n).__name__ for n in notifiers) or 'none'}"
    )
    return CompositeNotifier(notifiers, notify_on_success=options.notify_on_success)

