"""
Pydantic models for the wire format shared by the Kafka topic and websocket viewers.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

from ..detector import Detection
from ..events import DetectionEvent


class DetectionPayload(BaseModel):
    type: Literal["license_plate", "face"]
    data: Dict[str, Any] = Field(default_factory=dict)
    tracking_id: str


class DetectionEventMessage(BaseModel):
    camera_id: str
    timestamp: str  # ISO-8601
    detections: List[DetectionPayload] = Field(default_factory=list)

    @classmethod
    def from_event(cls, event: DetectionEvent) -> "DetectionEventMessage":
        timestamp = event.timestamp.isoformat()
        return cls(
            camera_id=event.camera_id,
            timestamp=timestamp,
            detections=[_detection_payload(det, timestamp) for det in event.detections],
        )


def _detection_payload(detection: Detection, timestamp: str) -> DetectionPayload:
    data: Dict[str, Any] = {
        "bbox": [float(v) for v in detection.bbox],
        "confidence": float(detection.confidence),
        "timestamp": timestamp,
    }
    data.update(detection.payload)
    if detection.payload_error:
        data["extraction_error"] = True
    return DetectionPayload(
        type=detection.kind.value,
        data=data,
        tracking_id=detection.tracking_id,
    )


def event_to_dict(event: DetectionEvent) -> Dict[str, Any]:
    return DetectionEventMessage.from_event(event).model_dump()


def event_to_json(event: DetectionEvent) -> str:
    return DetectionEventMessage.from_event(event).model_dump_json()
