"""
Kafka sink delivering one detection event per processed frame.

Publishing hands the event to the producer's batch buffer and returns; the
broker acknowledgement is observed asynchronously so a slow broker never
holds up frame processing. Retries belong to the producer client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Optional

from ..api.schemas import event_to_dict
from ..config import KafkaSinkConfig
from ..events import DetectionEvent

LOGGER = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """Raised when an event cannot be handed to the bus."""


class KafkaSink:
    """Publish detection events to Kafka using aiokafka."""

    def __init__(
        self,
        config: KafkaSinkConfig,
        producer_factory: Optional[Callable[..., Any]] = None,
        on_delivery_failure: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self._producer_factory = producer_factory
        self._on_delivery_failure = on_delivery_failure
        self._producer = None  # created lazily in connect()

    @property
    def connected(self) -> bool:
        return self._producer is not None

    async def connect(self) -> None:
        if not self.config.enabled:
            LOGGER.info("Kafka sink disabled; detection events stay in-process")
            return
        if self._producer:
            return

        factory = self._producer_factory
        if factory is None:
            try:
                from aiokafka import AIOKafkaProducer  # type: ignore
            except Exception as exc:  # noqa: BLE001
                raise RuntimeError(
                    "Kafka sink enabled but aiokafka is not installed. "
                    "Install it with `pip install aiokafka`."
                ) from exc
            factory = AIOKafkaProducer

        LOGGER.info(
            "Connecting Kafka producer to %s (topic=%s)",
            self.config.bootstrap_servers,
            self.config.topic,
        )
        producer = factory(
            bootstrap_servers=self.config.bootstrap_servers.split(","),
            client_id=self.config.client_id,
            acks=self.config.acks if self.config.acks == "all" else int(self.config.acks),
            linger_ms=self.config.linger_ms,
            max_batch_size=self.config.max_batch_size,
            key_serializer=lambda key: key.encode("utf-8"),
            value_serializer=lambda value: json.dumps(value).encode("utf-8"),
        )
        await producer.start()
        self._producer = producer

    async def publish(self, event: DetectionEvent) -> None:
        """Enqueue ``event``; raises ``PublishError`` if the producer rejects it."""
        if not self.config.enabled or not self._producer:
            return

        try:
            # Keyed by camera so one camera's events stay ordered on one partition.
            delivery = await self._producer.send(
                self.config.topic,
                value=event_to_dict(event),
                key=event.camera_id,
            )
        except Exception as exc:  # noqa: BLE001
            raise PublishError(
                f"Failed to publish event for camera '{event.camera_id}': {exc}"
            ) from exc

        delivery.add_done_callback(
            lambda future, camera_id=event.camera_id: self._delivery_done(camera_id, future)
        )

    def _delivery_done(self, camera_id: str, future: "asyncio.Future[Any]") -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        LOGGER.warning("Kafka delivery failed for camera '%s': %s", camera_id, exc)
        if self._on_delivery_failure is not None:
            self._on_delivery_failure(camera_id)

    async def close(self) -> None:
        if self._producer is None:
            return
        producer, self._producer = self._producer, None
        try:
            await producer.stop()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Error while stopping Kafka producer")
            return
        LOGGER.info("Kafka producer closed")
