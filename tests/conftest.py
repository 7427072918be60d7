"""
Pytest configuration and shared fakes.
"""

import asyncio
import os
import sys

import numpy as np
import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from smartvision_engine.config import (  # noqa: E402
    CameraConfig,
    DetectorConfig,
    EngineConfig,
    KafkaSinkConfig,
    LiveViewerConfig,
)
from smartvision_engine.detector import BaseDetector  # noqa: E402


class FakeCapture:
    """
    Scripted stand-in for ``cv2.VideoCapture``.

    ``script`` items are images (successful reads) or ``None`` (a dropped
    frame). Once the script is exhausted the capture reports itself closed.
    """

    def __init__(self, script=None, opened=True):
        self.script = list(script or [])
        self.opened = opened
        self.released = False
        self.reads = 0

    def isOpened(self):
        return self.opened and not self.released

    def read(self):
        self.reads += 1
        if not self.script:
            self.opened = False
            return False, None
        item = self.script.pop(0)
        if item is None:
            return False, None
        return True, item

    def release(self):
        self.released = True


def blank_image(width=64, height=48):
    return np.zeros((height, width, 3), dtype=np.uint8)


class StaticDetector(BaseDetector):
    """Returns the same boxes for every frame."""

    def __init__(self, kind="license_plate", threshold=0.7, boxes=None):
        super().__init__(DetectorConfig(kind=kind, confidence_threshold=threshold))
        self.boxes = list(boxes or [])
        self.calls = []

    def predict(self, image, confidence_threshold):
        self.calls.append(confidence_threshold)
        return list(self.boxes)


class FakeFuture:
    def __init__(self, exception=None):
        self._exception = exception
        self.callbacks = []

    def add_done_callback(self, callback):
        self.callbacks.append(callback)

    def cancelled(self):
        return False

    def exception(self):
        return self._exception

    def resolve(self):
        for callback in self.callbacks:
            callback(self)


class FakeProducer:
    """Minimal ``AIOKafkaProducer`` replacement recording sent messages."""

    def __init__(self, fail=False, **kwargs):
        self.kwargs = kwargs
        self.fail = fail
        self.sent = []
        self.futures = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def send(self, topic, value=None, key=None):
        if self.fail:
            raise RuntimeError("buffer full")
        self.sent.append((topic, key, value))
        future = FakeFuture()
        self.futures.append(future)
        return future


class RecordingPublisher:
    """Publisher double that keeps events in memory."""

    def __init__(self, fail_for=()):
        self.events = []
        self.fail_for = set(fail_for)

    async def connect(self):
        pass

    async def close(self):
        pass

    async def publish(self, event):
        from smartvision_engine.sinks import PublishError

        if event.camera_id in self.fail_for:
            raise PublishError(f"bus down for {event.camera_id}")
        self.events.append(event)

    def for_camera(self, camera_id):
        return [event for event in self.events if event.camera_id == camera_id]


class FakeSocket:
    """Transport handle for live hub tests."""

    def __init__(self, fail=False, delay=0.0):
        self.fail = fail
        self.delay = delay
        self.messages = []
        self.close_code = None

    async def send_text(self, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.messages.append(message)

    async def close(self, code=1000):
        self.close_code = code


@pytest.fixture
def fast_camera():
    def _make(camera_id="cam1", **overrides):
        params = dict(
            camera_id=camera_id,
            uri=f"fake://{camera_id}",
            target_fps=1000.0,
            frame_drop_cooldown=0.01,
            reconnect_after_failures=None,
        )
        params.update(overrides)
        return CameraConfig(**params)

    return _make


@pytest.fixture
def engine_config(fast_camera):
    return EngineConfig(
        cameras=[fast_camera("cam1")],
        kafka=KafkaSinkConfig(enabled=False),
        live=LiveViewerConfig(enabled=False),
    )
