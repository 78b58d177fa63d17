from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any, Protocol

import structlog

from forumai.models import ProgressEvent

logger = structlog.get_logger(__name__)

Envelope = tuple[str, dict[str, Any]]


class ProgressPublisher(Protocol):
    async def publish(self, event_name: str, payload: dict[str, Any]) -> None: ...


async def publish_event(publisher: ProgressPublisher, event: ProgressEvent) -> None:
    await publisher.publish(event.event_name, event.payload())


class LoggingPublisher:
    """Writes every event to the structured log."""

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        logger.info("progress_event", event_name=event_name, **payload)


class _Subscription:
    def __init__(self, event_names: frozenset[str] | None, maxsize: int) -> None:
        self.event_names = event_names
        self.queue: asyncio.Queue[Envelope] = asyncio.Queue(maxsize=maxsize)

    def wants(self, event_name: str) -> bool:
        return self.event_names is None or event_name in self.event_names

    def offer(self, envelope: Envelope) -> None:
        if self.queue.full():
            # slow consumer: drop the oldest event
            self.queue.get_nowait()
            logger.warning("subscriber_event_dropped", event_name=envelope[0])
        self.queue.put_nowait(envelope)


class Broadcaster:
    """In-process fan-out of events to any number of subscribers."""

    def __init__(self, *, queue_size: int = 1000) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[_Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        for sub in list(self._subscriptions):
            if sub.wants(event_name):
                sub.offer((event_name, payload))

    @asynccontextmanager
    async def subscribe(
        self, event_names: Iterable[str] | None = None
    ) -> AsyncIterator[asyncio.Queue[Envelope]]:
        sub = _Subscription(
            frozenset(event_names) if event_names is not None else None, self._queue_size
        )
        self._subscriptions.append(sub)
        try:
            yield sub.queue
        finally:
            self._subscriptions.remove(sub)
