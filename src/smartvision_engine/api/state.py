"""
Live viewer membership and best-effort websocket broadcasting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set

from ..events import DetectionEvent
from ..telemetry import MetricsPublisher
from .schemas import event_to_json

LOGGER = logging.getLogger(__name__)


class SubscriberSendError(RuntimeError):
    """Raised when a message cannot be delivered to one live viewer."""


@dataclass(eq=False)
class Subscriber:
    """
    A connected live viewer.

    ``handle`` is the transport, any object exposing ``async send_text(str)``
    and ``async close(code=...)`` (a Starlette ``WebSocket`` in production).
    """

    handle: Any
    connected_at: float = field(default_factory=time.time)

    async def send(self, message: str, timeout: float) -> None:
        try:
            await asyncio.wait_for(self.handle.send_text(message), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise SubscriberSendError(f"send timed out after {timeout:.2f}s") from exc
        except Exception as exc:  # noqa: BLE001
            raise SubscriberSendError(str(exc) or exc.__class__.__name__) from exc

    async def close(self, code: int = 1011, timeout: float = 1.0) -> None:
        """Close the transport so the viewer sees the drop and can reconnect."""
        try:
            await asyncio.wait_for(self.handle.close(code=code), timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            LOGGER.debug("Closing dropped live viewer failed: %r", exc)


class LiveHub:
    """Tracks live viewers and fans detection events out to all of them."""

    def __init__(self, send_timeout: float = 1.0, metrics: Optional[MetricsPublisher] = None) -> None:
        self.send_timeout = send_timeout
        self.metrics = metrics
        self._subscribers: Set[Subscriber] = set()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._subscribers)

    async def register(self, subscriber: Subscriber) -> None:
        async with self._lock:
            self._subscribers.add(subscriber)
            count = len(self._subscribers)
        self._report(count)
        LOGGER.info("Live viewer connected (%d viewers)", count)

    async def unregister(self, subscriber: Subscriber) -> None:
        async with self._lock:
            if subscriber not in self._subscribers:
                return
            self._subscribers.discard(subscriber)
            count = len(self._subscribers)
        self._report(count)
        LOGGER.info("Live viewer disconnected (%d viewers)", count)

    async def broadcast(self, event: DetectionEvent) -> None:
        """
        Send ``event`` to every current viewer concurrently.

        A viewer whose send fails or times out is dropped and its connection
        closed; the others are unaffected. Nothing is buffered for viewers
        that join later.
        """
        async with self._lock:
            targets = list(self._subscribers)
        if not targets:
            return

        message = event_to_json(event)
        results = await asyncio.gather(
            *(subscriber.send(message, self.send_timeout) for subscriber in targets),
            return_exceptions=True,
        )
        dead: List[Subscriber] = []
        for subscriber, result in zip(targets, results):
            if isinstance(result, BaseException):
                LOGGER.warning("Live viewer send failed (%r), disconnecting", result)
                dead.append(subscriber)
        for subscriber in dead:
            if self.metrics is not None:
                self.metrics.record_send_failure()
            await self.unregister(subscriber)
            await subscriber.close()

    def _report(self, count: int) -> None:
        if self.metrics is not None:
            self.metrics.set_subscribers(count)
