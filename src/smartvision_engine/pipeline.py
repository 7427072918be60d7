"""
High level orchestration of the analytics engine.

One ``StreamWorker`` task per camera runs source -> detection -> tagging ->
publish/broadcast. ``StreamSupervisor`` owns those tasks plus the live viewer
listener and returns once every camera has stopped or shutdown is requested.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Optional, Sequence

from .api import LiveHub, LiveViewerServer, create_app
from .config import CameraConfig, EngineConfig
from .detector import BaseDetector, DetectionKind, PayloadExtractor, create_detectors, run_detection
from .events import DetectionEvent
from .extractors import default_extractors
from .sinks import KafkaSink, PublishError
from .telemetry import MetricsPublisher
from .tracker import IdentityTagger, create_tagger
from .video_stream import CaptureFactory, Frame, SourceUnavailable, VideoStream

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class StreamWorkerContext:
    camera: CameraConfig
    detectors: Sequence[BaseDetector]
    extractors: Mapping[DetectionKind, PayloadExtractor]
    tagger: IdentityTagger
    publisher: KafkaSink
    hub: LiveHub
    metrics: MetricsPublisher
    capture_factory: Optional[CaptureFactory] = None


class StreamWorker:
    """Runs detection/tagging/fan-out for a single camera."""

    def __init__(self, context: StreamWorkerContext):
        self.ctx = context
        self._last_timestamp: Optional[datetime] = None
        self.events_emitted = 0

    async def run(self) -> None:
        camera = self.ctx.camera
        LOGGER.info("Starting worker for camera '%s'", camera.camera_id)
        while True:
            try:
                await self._stream_once()
            except asyncio.CancelledError:
                LOGGER.info("Camera worker '%s' cancelled", camera.camera_id)
                raise
            except SourceUnavailable as exc:
                LOGGER.error("Camera '%s' unavailable: %s", camera.camera_id, exc)
            except Exception:
                LOGGER.exception("Unhandled exception in camera worker '%s'", camera.camera_id)

            if not camera.respawn:
                break
            LOGGER.info(
                "Respawning camera '%s' in %.1fs",
                camera.camera_id,
                camera.reconnect_backoff,
            )
            await asyncio.sleep(camera.reconnect_backoff)

        LOGGER.info(
            "Camera worker '%s' shutting down after %d events",
            camera.camera_id,
            self.events_emitted,
        )

    async def _stream_once(self) -> None:
        stream = VideoStream(
            self.ctx.camera,
            capture_factory=self.ctx.capture_factory,
            on_drop=self.ctx.metrics.record_dropped_frame,
        )
        async with stream:
            async for frame in stream.frames():
                await self.process_frame(frame)

    async def process_frame(self, frame: Frame) -> Optional[DetectionEvent]:
        try:
            detections = run_detection(frame, self.ctx.detectors, self.ctx.extractors)
            tagged = self.ctx.tagger.tag_frame(frame.camera_id, detections)
        except Exception as exc:  # noqa: BLE001
            self.ctx.metrics.record_frame_error(frame.camera_id)
            LOGGER.error(
                "Error processing frame %d for camera '%s': %s",
                frame.frame_id,
                frame.camera_id,
                exc,
            )
            return None

        event = DetectionEvent(
            camera_id=frame.camera_id,
            timestamp=self._next_timestamp(),
            detections=tuple(tagged),
        )
        self.ctx.metrics.record_frame(
            frame.camera_id,
            dict(Counter(det.kind.value for det in tagged)),
            extraction_errors=sum(1 for det in tagged if det.payload_error),
        )

        try:
            await self.ctx.publisher.publish(event)
        except PublishError as exc:
            self.ctx.metrics.record_publish(frame.camera_id, success=False)
            LOGGER.warning("%s", exc)
        else:
            self.ctx.metrics.record_publish(frame.camera_id, success=True)

        await self.ctx.hub.broadcast(event)
        self.events_emitted += 1
        return event

    def _next_timestamp(self) -> datetime:
        # Wall clock can step backwards; keep this camera's events ordered.
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now < self._last_timestamp:
            now = self._last_timestamp
        self._last_timestamp = now
        return now


class StreamSupervisor:
    """
    Entry point for running the engine.

    Collaborators (detectors, publisher, hub, capture factory) can be injected;
    anything omitted is built from the configuration.
    """

    def __init__(
        self,
        config: EngineConfig,
        *,
        detectors: Optional[Sequence[BaseDetector]] = None,
        extractors: Optional[Mapping[DetectionKind, PayloadExtractor]] = None,
        publisher: Optional[KafkaSink] = None,
        hub: Optional[LiveHub] = None,
        metrics: Optional[MetricsPublisher] = None,
        capture_factory: Optional[CaptureFactory] = None,
    ):
        self.config = config
        self.metrics = metrics or MetricsPublisher(
            config.prometheus, stats_interval=config.stats_interval_seconds
        )
        self.detectors = list(detectors) if detectors is not None else None
        self.extractors = extractors if extractors is not None else default_extractors()
        self.publisher = publisher or KafkaSink(
            config.kafka,
            on_delivery_failure=lambda camera_id: self.metrics.record_delivery_failure(camera_id),
        )
        self.hub = hub or LiveHub(send_timeout=config.live.send_timeout, metrics=self.metrics)
        self.capture_factory = capture_factory
        self.listener: Optional[LiveViewerServer] = None
        self.workers: List[StreamWorker] = []
        self._camera_tasks: List[asyncio.Task] = []
        self._listener_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def active_cameras(self) -> int:
        return sum(1 for task in self._camera_tasks if not task.done())

    async def run(self, cameras: Optional[Iterable[CameraConfig]] = None) -> None:
        try:
            await self.start(cameras)
            await self._wait()
        finally:
            await self.wait_closed()

    async def start(self, cameras: Optional[Iterable[CameraConfig]] = None) -> None:
        LOGGER.info("Booting analytics engine")
        self._stop_event = asyncio.Event()
        camera_list = list(cameras) if cameras is not None else list(self.config.cameras)

        await self.metrics.start()
        await self.publisher.connect()

        if self.config.live.enabled:
            app = create_app(self.hub, active_cameras=self.active_cameras)
            self.listener = LiveViewerServer(self.config.live, app)
            self.listener.bind()
            self._listener_task = asyncio.create_task(self.listener.serve(), name="live-viewer-listener")

        if self.detectors is None:
            self.detectors = create_detectors(self.config.detectors)

        for camera in camera_list:
            if not camera.enabled:
                LOGGER.info("Skipping disabled camera '%s'", camera.camera_id)
                continue
            context = StreamWorkerContext(
                camera=camera,
                detectors=self.detectors,
                extractors=self.extractors,
                tagger=create_tagger(self.config.tracker),
                publisher=self.publisher,
                hub=self.hub,
                metrics=self.metrics,
                capture_factory=self.capture_factory,
            )
            worker = StreamWorker(context)
            self.workers.append(worker)
            task = asyncio.create_task(worker.run(), name=f"camera-{camera.camera_id}")
            task.add_done_callback(self._on_camera_done)
            self._camera_tasks.append(task)

        if not self._camera_tasks:
            raise RuntimeError("No camera workers started")

        LOGGER.info("Started %d camera workers", len(self._camera_tasks))
        self.metrics.set_active_cameras(len(self._camera_tasks))
        self._install_signal_handlers()

    async def _wait(self) -> None:
        assert self._stop_event is not None
        all_cameras = asyncio.gather(*self._camera_tasks, return_exceptions=True)
        stop_waiter = asyncio.create_task(self._stop_event.wait(), name="supervisor-stop")
        waiters = {all_cameras, stop_waiter}
        if self._listener_task is not None:
            waiters.add(self._listener_task)
        done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        if self._listener_task in done and not self._stop_event.is_set():
            LOGGER.error("Live viewer listener stopped unexpectedly")
        elif not self._stop_event.is_set():
            LOGGER.warning("All camera workers have stopped")
        stop_waiter.cancel()
        self.initiate_shutdown()

    def _on_camera_done(self, task: asyncio.Task) -> None:
        self.metrics.set_active_cameras(self.active_cameras())

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.initiate_shutdown)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                LOGGER.debug("Signal handler not supported on platform for %s", sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass

    def initiate_shutdown(self) -> None:
        if self._stop_event is None or self._stop_event.is_set():
            return
        LOGGER.info("Shutdown requested, cancelling camera workers")
        self._stop_event.set()
        for task in self._camera_tasks:
            task.cancel()
        if self.listener is not None:
            self.listener.stop()

    async def wait_closed(self) -> None:
        for task in self._camera_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                LOGGER.exception("Camera worker task raised")
        if self._listener_task is not None:
            if self.listener is not None:
                self.listener.stop()
            try:
                await asyncio.wait_for(self._listener_task, timeout=5.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception:
                LOGGER.exception("Live viewer listener raised")
        if self.listener is not None:
            self.listener.close()
        self._remove_signal_handlers()
        await self.publisher.close()
        await self.metrics.stop()
