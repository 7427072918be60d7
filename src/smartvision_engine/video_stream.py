"""
Asynchronous frame source for RTSP/RTMP camera streams via OpenCV.

A ``VideoStream`` turns one camera into a lazy, non-restartable sequence of
frames. Transient read failures are absorbed here (cooldown, reconnect) so
downstream code only ever sees good frames or the end of the sequence.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Optional

import cv2
import numpy as np

from .config import CameraConfig

LOGGER = logging.getLogger(__name__)


class FrameSourceError(RuntimeError):
    """Base class for frame source failures."""


class SourceUnavailable(FrameSourceError):
    """The camera could not be opened. Terminal for this source."""


class FrameDropped(FrameSourceError):
    """A single read failed; the caller retries after a cooldown."""


class SourceClosed(FrameSourceError):
    """The capture is gone and no more frames will arrive."""


class SourceState(str, enum.Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECOVERING = "recovering"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded image sampled from one camera."""

    camera_id: str
    image: np.ndarray
    timestamp: float
    frame_id: int


CaptureFactory = Callable[[str], Any]


def open_capture(uri: str) -> "cv2.VideoCapture":
    """Default capture factory using the FFmpeg backend with a minimal buffer."""
    capture = cv2.VideoCapture(uri, cv2.CAP_FFMPEG)
    # Keep the decoder close to live; stale buffered frames are useless here.
    capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
    return capture


class VideoStream:
    """
    Wrapper around an OpenCV style capture supporting async frame retrieval.

    The capture object only needs ``isOpened()``, ``read()`` and ``release()``
    so tests and alternative decoders can be injected via ``capture_factory``.
    """

    def __init__(
        self,
        camera: CameraConfig,
        capture_factory: Optional[CaptureFactory] = None,
        on_drop: Optional[Callable[[str], None]] = None,
    ):
        self.config = camera
        self._capture_factory = capture_factory or open_capture
        self._on_drop = on_drop
        self._capture: Any = None
        self._frame_id: int = 0
        self._consecutive_failures = 0
        self._last_successful_read: Optional[float] = None
        self.state = SourceState.CONNECTING

    @property
    def camera_id(self) -> str:
        return self.config.camera_id

    @property
    def uri(self) -> str:
        return self.config.uri

    async def __aenter__(self) -> "VideoStream":
        try:
            await self.open()
        except SourceUnavailable:
            self.state = SourceState.FAILED
            raise
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._capture is not None and self._capture.isOpened():
            return

        LOGGER.info("Opening camera '%s' (%s)", self.camera_id, self.uri)
        try:
            capture = await asyncio.to_thread(self._capture_factory, self.uri)
        except Exception as exc:  # noqa: BLE001
            raise SourceUnavailable(f"Unable to open camera {self.camera_id}: {exc}") from exc

        if capture is None or not capture.isOpened():
            if capture is not None:
                await asyncio.to_thread(capture.release)
            raise SourceUnavailable(f"Unable to open camera {self.camera_id}")

        self._capture = capture

        if self.config.warmup_seconds > 0:
            LOGGER.debug(
                "Warming up camera '%s' for %.2fs",
                self.camera_id,
                self.config.warmup_seconds,
            )
            await asyncio.sleep(self.config.warmup_seconds)

    async def close(self) -> None:
        if self._capture is not None:
            LOGGER.info("Releasing camera '%s'", self.camera_id)
            capture, self._capture = self._capture, None
            await asyncio.to_thread(capture.release)
        if self.state is not SourceState.FAILED:
            self.state = SourceState.CLOSED

    async def next_frame(self) -> Frame:
        """Read one frame, raising ``FrameDropped`` or ``SourceClosed`` on failure."""
        capture = self._capture
        if capture is None or not capture.isOpened():
            raise SourceClosed(f"Camera {self.camera_id} is closed")

        success, image = await asyncio.to_thread(capture.read)
        if not success or image is None:
            if not capture.isOpened():
                raise SourceClosed(f"Camera {self.camera_id} stopped delivering frames")
            raise FrameDropped(f"Frame lost on camera {self.camera_id}")

        self._last_successful_read = time.time()
        frame = Frame(
            camera_id=self.camera_id,
            image=image,
            timestamp=self._last_successful_read,
            frame_id=self._frame_id,
        )
        self._frame_id += 1
        return frame

    async def frames(self) -> AsyncGenerator[Frame, None]:
        """
        Yield frames until the source closes or its retry budget runs out.

        Dropped frames trigger a fixed cooldown before the next read; after
        ``reconnect_after_failures`` consecutive drops the capture is reopened.
        """
        if self._capture is None:
            await self.open()
        self.state = SourceState.STREAMING

        min_interval = 1.0 / self.config.target_fps if self.config.target_fps else 0.0

        while True:
            try:
                if self._capture is None:
                    raise FrameDropped(f"Camera {self.camera_id} is reconnecting")
                frame = await self.next_frame()
            except FrameDropped:
                self._consecutive_failures += 1
                self.state = SourceState.RECOVERING
                if self._on_drop is not None:
                    self._on_drop(self.camera_id)
                LOGGER.warning(
                    "Frame lost on camera '%s' (consecutive_failures=%d)",
                    self.camera_id,
                    self._consecutive_failures,
                )
                if (
                    self.config.max_retries is not None
                    and self._consecutive_failures >= self.config.max_retries
                ):
                    LOGGER.error(
                        "Giving up on camera '%s' after %d consecutive failures",
                        self.camera_id,
                        self._consecutive_failures,
                    )
                    self.state = SourceState.CLOSED
                    return
                reconnect_after = self.config.reconnect_after_failures
                if reconnect_after and self._consecutive_failures % reconnect_after == 0:
                    await self._reconnect()
                await asyncio.sleep(self.config.frame_drop_cooldown)
                continue
            except SourceClosed as exc:
                LOGGER.info("Camera '%s' closed: %s", self.camera_id, exc)
                self.state = SourceState.CLOSED
                return

            if self.state is SourceState.RECOVERING:
                LOGGER.info(
                    "Camera '%s' recovered after %d lost frames",
                    self.camera_id,
                    self._consecutive_failures,
                )
            self._consecutive_failures = 0
            self.state = SourceState.STREAMING
            yield frame

            if min_interval:
                await asyncio.sleep(min_interval)

    async def _reconnect(self) -> None:
        LOGGER.info("Attempting to reconnect camera '%s'", self.camera_id)
        if self._capture is not None:
            capture, self._capture = self._capture, None
            await asyncio.to_thread(capture.release)
        try:
            await self.open()
        except SourceUnavailable as exc:
            LOGGER.error("Failed to reconnect camera '%s': %s", self.camera_id, exc)
