"""Detection events, the unit published to the bus and to live viewers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Tuple

from .detector import Detection


@dataclass(frozen=True, slots=True)
class DetectionEvent:
    """All detections found in one frame of one camera."""

    camera_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    detections: Tuple[Detection, ...] = ()

    @property
    def is_heartbeat(self) -> bool:
        return not self.detections
