"""
Notifier
========
Delivers one RunNotification {run_id, state, finished_at} per terminal
transition to the configured sinks.

Sinks:
    LogSink      — structured log line (always enabled)
    WebhookSink  — JSON POST to NOTIFY_WEBHOOK_URL (httpx)
    ChannelSink  — asyncio.Queue for in-process consumers

The exactly-once guarantee comes from the Run Store: the engine only
notifies after a terminal transition the store accepted, and the store
refuses a second terminal transition. A failing sink is logged and never
fails the run.
"""
import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

import httpx

from app.core.config import NOTIFY_WEBHOOK_URL
from app.models.notification import RunNotification
from app.models.pipeline_run import PipelineRun

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    async def emit(self, notification: RunNotification) -> None:
        ...


class LogSink:
    async def emit(self, notification: RunNotification) -> None:
        logger.info(
            "[run:%s] Terminal state %s at %s (commit=%s, stopped_at=%s)",
            notification.run_id,
            notification.state.value,
            notification.finished_at.isoformat() if notification.finished_at else "-",
            notification.commit_ref[:12],
            notification.failed_stage or "-",
        )


class WebhookSink:
    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout

    async def emit(self, notification: RunNotification) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=notification.model_dump(mode="json"))
            response.raise_for_status()


class ChannelSink:
    def __init__(self, queue: Optional[asyncio.Queue] = None) -> None:
        self.queue: asyncio.Queue = queue if queue is not None else asyncio.Queue()

    async def emit(self, notification: RunNotification) -> None:
        await self.queue.put(notification)


class Notifier:
    def __init__(self, sinks: Optional[Sequence[NotificationSink]] = None) -> None:
        self.sinks: List[NotificationSink] = list(sinks) if sinks is not None else default_sinks()

    async def notify(self, run: PipelineRun) -> RunNotification:
        notification = RunNotification.of(run)
        for sink in self.sinks:
            try:
                await sink.emit(notification)
            except Exception as e:
                logger.error(
                    "[run:%s] Notification sink %s failed: %s",
                    run.id, type(sink).__name__, e, exc_info=True,
                )
        return notification


def default_sinks() -> List[NotificationSink]:
    sinks: List[NotificationSink] = [LogSink()]
    if NOTIFY_WEBHOOK_URL:
        sinks.append(WebhookSink(NOTIFY_WEBHOOK_URL))
    return sinks
