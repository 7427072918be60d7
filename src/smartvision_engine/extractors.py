"""
Kind-specific payload extraction for accepted boxes.

Text recognition and face embedding are pluggable callables; without them the
extractors still crop the region and emit placeholder fields.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np

from .detector import BBox, DetectionKind, PayloadExtractor


PlateReader = Callable[[np.ndarray], Optional[str]]
FaceEmbedder = Callable[[np.ndarray], Sequence[float]]


class ExtractionError(RuntimeError):
    """Raised when a payload cannot be extracted for a detection."""


def crop(image: np.ndarray, bbox: BBox) -> np.ndarray:
    """Return the sub-image under ``bbox`` clipped to the frame bounds."""
    height, width = image.shape[:2]
    x1, y1, x2, y2 = (int(round(v)) for v in bbox)
    x1, x2 = max(0, x1), min(width, x2)
    y1, y2 = max(0, y1), min(height, y2)
    if x2 <= x1 or y2 <= y1:
        raise ExtractionError(f"Box {bbox} lies outside the {width}x{height} frame")
    return image[y1:y2, x1:x2]


class PlateTextExtractor:
    """Crops the plate and hands it to an optional text reader."""

    def __init__(self, reader: Optional[PlateReader] = None):
        self.reader = reader

    def extract(self, kind: DetectionKind, bbox: BBox, image: np.ndarray) -> Dict[str, Any]:
        region = crop(image, bbox)
        text = None
        if self.reader is not None:
            try:
                text = self.reader(region)
            except Exception as exc:  # noqa: BLE001
                raise ExtractionError(f"Plate reader failed: {exc}") from exc
        return {"text": text}


class FaceEmbeddingExtractor:
    """Crops the face and hands it to an optional embedding model."""

    def __init__(self, embedder: Optional[FaceEmbedder] = None):
        self.embedder = embedder

    def extract(self, kind: DetectionKind, bbox: BBox, image: np.ndarray) -> Dict[str, Any]:
        region = crop(image, bbox)
        if self.embedder is None:
            return {"embedding": []}
        try:
            vector = self.embedder(region)
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"Face embedder failed: {exc}") from exc
        return {"embedding": [float(v) for v in vector]}


def default_extractors(
    plate_reader: Optional[PlateReader] = None,
    face_embedder: Optional[FaceEmbedder] = None,
) -> Dict[DetectionKind, PayloadExtractor]:
    return {
        DetectionKind.PLATE: PlateTextExtractor(plate_reader),
        DetectionKind.FACE: FaceEmbeddingExtractor(face_embedder),
    }
