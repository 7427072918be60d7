"""Live viewer fan-out: websocket app, subscriber hub and wire schemas."""

from .schemas import DetectionEventMessage, event_to_dict, event_to_json
from .server import ListenerStartupError, LiveViewerServer, create_app
from .state import LiveHub, Subscriber, SubscriberSendError

__all__ = [
    "DetectionEventMessage",
    "ListenerStartupError",
    "LiveHub",
    "LiveViewerServer",
    "Subscriber",
    "SubscriberSendError",
    "create_app",
    "event_to_dict",
    "event_to_json",
]
