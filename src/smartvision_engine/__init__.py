"""
Core package for the SmartVision real-time video analytics engine.

Modules expose the building blocks for ingesting camera streams, running
plate/face detection, tagging detections with tracking ids and fanning the
resulting events out to Kafka and live websocket viewers.
"""

from .config import EngineConfig, apply_env_overrides, default_config, load_config  # noqa: F401
from .detector import Detection, DetectionKind, create_detector  # noqa: F401
from .events import DetectionEvent  # noqa: F401
from .pipeline import StreamSupervisor  # noqa: F401
