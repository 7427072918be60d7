"""
Prometheus metrics helper utilities.

Counters are always kept in memory per camera so soft failures (publish,
viewer send, extraction) stay observable when Prometheus is disabled.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from ..config import PrometheusConfig

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PipelineCounters:
    """Aggregated counters for one camera."""

    frames_processed: int = 0
    frames_dropped: int = 0
    frame_errors: int = 0
    events_published: int = 0  # accepted by the producer, not yet acknowledged
    publish_failures: int = 0
    delivery_failures: int = 0
    detections_emitted: int = 0
    extraction_errors: int = 0


class MetricsPublisher:
    """Expose pipeline metrics via an HTTP endpoint and in-memory counters."""

    def __init__(self, config: Optional[PrometheusConfig] = None, stats_interval: float = 60.0):
        self.config = config or PrometheusConfig(enabled=False)
        self.stats_interval = stats_interval
        self.subscriber_send_failures = 0
        self._counters: Dict[str, PipelineCounters] = {}
        self._registry = None
        self._frame_counter = None
        self._dropped_counter = None
        self._detection_counter = None
        self._frame_error_counter = None
        self._extraction_error_counter = None
        self._published_counter = None
        self._publish_failure_counter = None
        self._delivery_failure_counter = None
        self._send_failure_counter = None
        self._subscribers_gauge = None
        self._active_cameras_gauge = None
        self._task: Optional[asyncio.Task] = None

    def _lazy_init(self) -> None:
        if self._registry is not None:
            return
        registry = self._build_registry()
        from prometheus_client import start_http_server

        start_http_server(port=self.config.port, addr=self.config.host, registry=registry)
        LOGGER.info(
            "Prometheus endpoint available at http://%s:%d/metrics",
            self.config.host,
            self.config.port,
        )

    def _build_registry(self):
        try:
            from prometheus_client import CollectorRegistry, Counter, Gauge
        except Exception as exc:  # noqa: BLE001
            raise RuntimeError(
                "Prometheus metrics enabled but prometheus_client is not installed. "
                "Install it with `pip install prometheus-client`."
            ) from exc

        self._registry = CollectorRegistry()
        self._frame_counter = Counter(
            "camera_frames_total",
            "Total frames processed per camera",
            ["camera"],
            registry=self._registry,
        )
        self._dropped_counter = Counter(
            "camera_frames_dropped_total",
            "Total frame reads that failed per camera",
            ["camera"],
            registry=self._registry,
        )
        self._detection_counter = Counter(
            "camera_detections_total",
            "Total detections emitted per camera and kind",
            ["camera", "kind"],
            registry=self._registry,
        )
        self._frame_error_counter = Counter(
            "camera_frame_errors_total",
            "Frames skipped because detection or tagging raised",
            ["camera"],
            registry=self._registry,
        )
        self._extraction_error_counter = Counter(
            "camera_extraction_errors_total",
            "Detections emitted without payload because extraction failed",
            ["camera"],
            registry=self._registry,
        )
        self._published_counter = Counter(
            "bus_events_enqueued_total",
            "Detection events accepted by the producer (delivery not yet acknowledged)",
            ["camera"],
            registry=self._registry,
        )
        self._publish_failure_counter = Counter(
            "bus_publish_failures_total",
            "Detection events that could not be handed to the bus",
            ["camera"],
            registry=self._registry,
        )
        self._delivery_failure_counter = Counter(
            "bus_delivery_failures_total",
            "Enqueued detection events the broker never acknowledged",
            ["camera"],
            registry=self._registry,
        )
        self._send_failure_counter = Counter(
            "live_send_failures_total",
            "Live viewer sends that failed and removed the viewer",
            registry=self._registry,
        )
        self._subscribers_gauge = Gauge(
            "live_subscribers",
            "Currently connected live viewers",
            registry=self._registry,
        )
        self._active_cameras_gauge = Gauge(
            "active_cameras",
            "Camera tasks still running",
            registry=self._registry,
        )
        return self._registry

    async def start(self) -> None:
        if self.config.enabled:
            self._lazy_init()
        if self._task:
            return
        self._task = asyncio.create_task(self._ticker(), name="metrics-ticker")

    async def _ticker(self) -> None:
        while True:
            await asyncio.sleep(self.stats_interval)
            self.log_summary()

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    def counters(self, camera_id: str) -> PipelineCounters:
        return self._counters.setdefault(camera_id, PipelineCounters())

    def log_summary(self) -> None:
        for camera_id, counters in sorted(self._counters.items()):
            LOGGER.info(
                "Camera '%s': frames=%d dropped=%d frame_errors=%d detections=%d "
                "extraction_errors=%d enqueued=%d publish_failures=%d delivery_failures=%d "
                "(enqueued counts producer acceptance; delivery_failures are broker rejections of enqueued events)",
                camera_id,
                counters.frames_processed,
                counters.frames_dropped,
                counters.frame_errors,
                counters.detections_emitted,
                counters.extraction_errors,
                counters.events_published,
                counters.publish_failures,
                counters.delivery_failures,
            )
        if self.subscriber_send_failures:
            LOGGER.info("Live viewer send failures: %d", self.subscriber_send_failures)

    def _prometheus_ready(self) -> bool:
        return self.config.enabled and self._registry is not None

    def record_frame(self, camera_id: str, detections_by_kind: Dict[str, int], extraction_errors: int = 0) -> None:
        counters = self.counters(camera_id)
        counters.frames_processed += 1
        counters.detections_emitted += sum(detections_by_kind.values())
        counters.extraction_errors += extraction_errors
        if not self._prometheus_ready():
            return
        assert self._frame_counter and self._detection_counter and self._extraction_error_counter
        self._frame_counter.labels(camera=camera_id).inc()
        for kind, count in detections_by_kind.items():
            if count:
                self._detection_counter.labels(camera=camera_id, kind=kind).inc(count)
        if extraction_errors:
            self._extraction_error_counter.labels(camera=camera_id).inc(extraction_errors)

    def record_dropped_frame(self, camera_id: str) -> None:
        self.counters(camera_id).frames_dropped += 1
        if self._prometheus_ready():
            assert self._dropped_counter
            self._dropped_counter.labels(camera=camera_id).inc()

    def record_frame_error(self, camera_id: str) -> None:
        self.counters(camera_id).frame_errors += 1
        if self._prometheus_ready():
            assert self._frame_error_counter
            self._frame_error_counter.labels(camera=camera_id).inc()

    def record_publish(self, camera_id: str, success: bool) -> None:
        """Count an event the producer accepted (``success``) or refused."""
        counters = self.counters(camera_id)
        if success:
            counters.events_published += 1
            if self._prometheus_ready():
                assert self._published_counter
                self._published_counter.labels(camera=camera_id).inc()
            return
        counters.publish_failures += 1
        if self._prometheus_ready():
            assert self._publish_failure_counter
            self._publish_failure_counter.labels(camera=camera_id).inc()

    def record_delivery_failure(self, camera_id: str) -> None:
        """Count an enqueued event the broker later failed to acknowledge."""
        self.counters(camera_id).delivery_failures += 1
        if self._prometheus_ready():
            assert self._delivery_failure_counter
            self._delivery_failure_counter.labels(camera=camera_id).inc()

    def record_send_failure(self) -> None:
        self.subscriber_send_failures += 1
        if self._prometheus_ready():
            assert self._send_failure_counter
            self._send_failure_counter.inc()

    def set_subscribers(self, count: int) -> None:
        if self._prometheus_ready():
            assert self._subscribers_gauge
            self._subscribers_gauge.set(count)

    def set_active_cameras(self, count: int) -> None:
        if self._prometheus_ready():
            assert self._active_cameras_gauge
            self._active_cameras_gauge.set(count)
