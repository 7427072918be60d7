"""
Tests for the live viewer hub and its HTTP/websocket listener.
"""

import asyncio
import json
import socket
import time

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from conftest import FakeSocket
from smartvision_engine.api import (
    ListenerStartupError,
    LiveHub,
    LiveViewerServer,
    Subscriber,
    SubscriberSendError,
    create_app,
)
from smartvision_engine.config import LiveViewerConfig
from smartvision_engine.events import DetectionEvent
from smartvision_engine.telemetry import MetricsPublisher


class TestLiveHub:
    def test_broadcast_reaches_every_viewer(self):
        hub = LiveHub()
        sockets = [FakeSocket(), FakeSocket()]

        async def scenario():
            for handle in sockets:
                await hub.register(Subscriber(handle))
            await hub.broadcast(DetectionEvent(camera_id="cam1"))

        asyncio.run(scenario())
        for handle in sockets:
            (message,) = handle.messages
            assert json.loads(message)["camera_id"] == "cam1"

    def test_unregistered_viewer_receives_nothing(self):
        hub = LiveHub()
        handle = FakeSocket()

        async def scenario():
            subscriber = Subscriber(handle)
            await hub.register(subscriber)
            await hub.unregister(subscriber)
            await hub.unregister(subscriber)
            await hub.broadcast(DetectionEvent(camera_id="cam1"))

        asyncio.run(scenario())
        assert handle.messages == []
        assert len(hub) == 0

    def test_no_viewers_is_noop(self):
        asyncio.run(LiveHub().broadcast(DetectionEvent(camera_id="cam1")))

    def test_failing_viewer_is_removed_others_still_served(self):
        metrics = MetricsPublisher()
        hub = LiveHub(metrics=metrics)
        healthy, broken = FakeSocket(), FakeSocket(fail=True)

        async def scenario():
            await hub.register(Subscriber(healthy))
            await hub.register(Subscriber(broken))
            await hub.broadcast(DetectionEvent(camera_id="cam1"))
            await hub.broadcast(DetectionEvent(camera_id="cam2"))

        asyncio.run(scenario())
        assert len(hub) == 1
        assert [json.loads(m)["camera_id"] for m in healthy.messages] == ["cam1", "cam2"]
        assert metrics.subscriber_send_failures == 1
        assert broken.close_code == 1011
        assert healthy.close_code is None

    def test_slow_viewer_times_out(self):
        hub = LiveHub(send_timeout=0.05)
        fast, slow = FakeSocket(), FakeSocket(delay=1.0)

        async def scenario():
            await hub.register(Subscriber(fast))
            await hub.register(Subscriber(slow))
            await hub.broadcast(DetectionEvent(camera_id="cam1"))

        asyncio.run(scenario())
        assert len(hub) == 1
        assert len(fast.messages) == 1
        assert slow.messages == []
        assert slow.close_code == 1011


class TestListener:
    def test_healthz_reflects_active_cameras(self):
        running = {"count": 0}
        app = create_app(LiveHub(), active_cameras=lambda: running["count"])
        client = TestClient(app)

        response = client.get("/healthz")
        assert response.status_code == 503

        running["count"] = 2
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "active_cameras": 2, "viewers": 0}

    def test_bind_failure_raises_startup_error(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        try:
            server = LiveViewerServer(
                LiveViewerConfig(host="127.0.0.1", port=port), create_app(LiveHub())
            )
            with pytest.raises(ListenerStartupError, match=str(port)):
                server.bind()
        finally:
            blocker.close()

    def test_bind_ephemeral_port(self):
        server = LiveViewerServer(LiveViewerConfig(host="127.0.0.1", port=0), create_app(LiveHub()))
        server.bind()
        try:
            assert server.port != 0
        finally:
            server.close()


def wait_for_viewers(hub, count, timeout=2.0):
    """The endpoint registers after accepting, so poll briefly."""
    deadline = time.monotonic() + timeout
    while len(hub) != count and time.monotonic() < deadline:
        time.sleep(0.01)
    return len(hub)


class TestWebsocketEndpoint:
    @pytest.mark.parametrize("path", ["/ws", "/"])
    def test_viewer_receives_events_and_inbound_is_ignored(self, path):
        hub = LiveHub()
        with TestClient(create_app(hub)) as client:
            with client.websocket_connect(path) as websocket:
                websocket.send_text('{"command": "subscribe"}')
                assert wait_for_viewers(hub, 1) == 1

                client.portal.call(hub.broadcast, DetectionEvent(camera_id="cam1"))
                message = websocket.receive_json()
                assert set(message) == {"camera_id", "timestamp", "detections"}
                assert message["camera_id"] == "cam1"
                assert message["detections"] == []
            assert wait_for_viewers(hub, 0) == 0

    def test_dropped_viewer_connection_is_closed(self, monkeypatch):
        async def failing_send(self, message, timeout):
            raise SubscriberSendError("send timed out")

        hub = LiveHub()
        with TestClient(create_app(hub)) as client:
            with client.websocket_connect("/ws") as websocket:
                assert wait_for_viewers(hub, 1) == 1
                monkeypatch.setattr(Subscriber, "send", failing_send)

                client.portal.call(hub.broadcast, DetectionEvent(camera_id="cam1"))
                assert len(hub) == 0
                with pytest.raises(WebSocketDisconnect) as excinfo:
                    websocket.receive_text()
                assert excinfo.value.code == 1011
