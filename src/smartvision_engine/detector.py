"""
Detector backends and the per-frame detection pass.

A detector is an opaque capability: given an image and an acceptance
threshold it returns scored boxes. ``run_detection`` invokes every configured
detector on a frame and normalizes the output into ``Detection`` records,
attaching the kind-specific payload produced by the extractors.
"""

from __future__ import annotations

import abc
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import numpy as np

from .config import DetectorConfig
from .video_stream import Frame

LOGGER = logging.getLogger(__name__)

BBox = tuple[float, float, float, float]


class DetectionKind(str, enum.Enum):
    """Detection type, valued with its wire name."""

    PLATE = "license_plate"
    FACE = "face"


@dataclass(frozen=True, slots=True)
class RawBox:
    """A scored box as returned by a detector backend."""

    bbox: BBox
    confidence: float


@dataclass(frozen=True, slots=True)
class Detection:
    """One recognized object instance found in a frame."""

    kind: DetectionKind
    bbox: BBox
    confidence: float
    payload: Mapping[str, Any] = field(default_factory=dict)
    tracking_id: str = ""
    payload_error: bool = False


class PayloadExtractor(Protocol):
    def extract(self, kind: DetectionKind, bbox: BBox, image: np.ndarray) -> Dict[str, Any]:
        ...


class BaseDetector(abc.ABC):
    """Abstract detector interface."""

    def __init__(self, config: DetectorConfig):
        self.config = config
        self.kind = DetectionKind(config.kind)

    @property
    def threshold(self) -> float:
        return self.config.confidence_threshold

    def detect(self, image: np.ndarray, confidence_threshold: Optional[float] = None) -> List[RawBox]:
        """Run the backend and drop every box scoring under the threshold."""
        threshold = self.threshold if confidence_threshold is None else confidence_threshold
        return filter_boxes(self.predict(image, threshold), threshold)

    @abc.abstractmethod
    def predict(self, image: np.ndarray, confidence_threshold: float) -> List[RawBox]:
        raise NotImplementedError


def filter_boxes(boxes: Iterable[RawBox], min_confidence: float) -> List[RawBox]:
    """Utility helper to drop low confidence boxes."""
    return [box for box in boxes if box.confidence >= min_confidence]


def create_detector(config: DetectorConfig) -> BaseDetector:
    """Instantiate a detector backend based on configuration."""
    backend = config.backend.lower()
    if backend == "ultralytics":
        return UltralyticsDetector(config)
    raise ValueError(f"Unsupported detector backend '{config.backend}'")


def create_detectors(configs: Iterable[DetectorConfig]) -> List[BaseDetector]:
    return [create_detector(cfg) for cfg in configs if cfg.enabled]


class UltralyticsDetector(BaseDetector):
    """Thin wrapper that hides YOLO import details and user options."""

    def __init__(self, config: DetectorConfig):
        super().__init__(config)
        self._model = None

    def _load(self) -> None:
        if self._model is not None:
            return
        try:
            from ultralytics import YOLO  # type: ignore
        except Exception as exc:  # noqa: BLE001
            raise RuntimeError(
                "Ultralytics backend selected but 'ultralytics' package is not installed. "
                "Install with `pip install smartvision-engine[detector]` or `pip install ultralytics`."
            ) from exc

        LOGGER.info(
            "Loading %s model '%s' on device '%s'",
            self.kind.value,
            self.config.model_path,
            self.config.device,
        )
        self._model = YOLO(self.config.model_path)
        if self.config.warmup:
            LOGGER.debug("Running %s detector warmup on dummy tensor", self.kind.value)
            dummy = np.zeros((640, 640, 3), dtype=np.uint8)
            self._model.predict(
                source=dummy,
                device=self._device(),
                conf=self.threshold,
                iou=self.config.iou_threshold,
                verbose=False,
                half=self.config.half,
            )

    def _device(self) -> Optional[str]:
        return None if self.config.device == "auto" else self.config.device

    def predict(self, image: np.ndarray, confidence_threshold: float) -> List[RawBox]:
        self._load()
        if self._model is None:
            raise RuntimeError("Model failed to load")

        result_list = self._model.predict(
            source=image,
            device=self._device(),
            conf=confidence_threshold,
            iou=self.config.iou_threshold,
            half=self.config.half,
            verbose=False,
        )

        boxes: List[RawBox] = []
        if not result_list:
            return boxes

        result = result_list[0]
        result_boxes = getattr(result, "boxes", None)
        if result_boxes is None:
            return boxes

        for box in result_boxes:
            coordinates = box.xyxy.cpu().numpy().flatten().tolist()
            conf = float(box.conf.cpu().item())
            boxes.append(RawBox(bbox=tuple(float(v) for v in coordinates[:4]), confidence=conf))
        return boxes


def run_detection(
    frame: Frame,
    detectors: Sequence[BaseDetector],
    extractors: Optional[Mapping[DetectionKind, PayloadExtractor]] = None,
) -> List[Detection]:
    """
    Turn one frame into detections.

    Detectors are independent; the result keeps insertion order (detector
    order, then box order). An extractor failure never drops a detection:
    it is emitted with an empty payload and ``payload_error`` set.
    """
    extractors = extractors or {}
    detections: List[Detection] = []
    for detector in detectors:
        boxes = detector.detect(frame.image, detector.threshold)
        extractor = extractors.get(detector.kind)
        for box in boxes:
            x1, y1, x2, y2 = box.bbox
            if x1 >= x2 or y1 >= y2:
                LOGGER.debug(
                    "Skipping degenerate %s box %s on camera '%s'",
                    detector.kind.value,
                    box.bbox,
                    frame.camera_id,
                )
                continue
            payload: Dict[str, Any] = {}
            payload_error = False
            if extractor is not None:
                try:
                    payload = extractor.extract(detector.kind, box.bbox, frame.image)
                except Exception as exc:  # noqa: BLE001
                    LOGGER.warning(
                        "Payload extraction failed for %s on camera '%s': %s",
                        detector.kind.value,
                        frame.camera_id,
                        exc,
                    )
                    payload = {}
                    payload_error = True
            detections.append(
                Detection(
                    kind=detector.kind,
                    bbox=box.bbox,
                    confidence=box.confidence,
                    payload=payload,
                    payload_error=payload_error,
                )
            )
    return detections
