"""
Identity taggers that attach a short-lived tracking id to each detection.

Both policies keep the ``tag(camera_id, bbox) -> str`` shape so a proper
multi-frame tracker (ByteTrack/DeepSORT) can replace them without touching
callers. State is bounded: stale entries age out and a hard cap evicts the
least recently seen.
"""

from __future__ import annotations

import abc
import hashlib
import itertools
import logging
import struct
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Dict, Iterable, Iterator, List, Optional, Set

from .config import TrackerConfig
from .detector import BBox, Detection, DetectionKind

LOGGER = logging.getLogger(__name__)


class IdentityTagger(abc.ABC):
    """Assigns tracking ids to detections of one or more cameras."""

    def __init__(self, config: TrackerConfig):
        self.config = config

    @abc.abstractmethod
    def tag(self, camera_id: str, bbox: BBox, kind: Optional[DetectionKind] = None) -> str:
        raise NotImplementedError

    def end_frame(self, camera_id: str) -> None:
        """Hook called once per processed frame, after all tags."""

    def tag_frame(self, camera_id: str, detections: Iterable[Detection]) -> List[Detection]:
        tagged = [
            replace(detection, tracking_id=self.tag(camera_id, detection.bbox, detection.kind))
            for detection in detections
        ]
        self.end_frame(camera_id)
        return tagged


@dataclass(slots=True)
class Track:
    """Track state that we propagate across frames."""

    track_id: str
    bbox: BBox
    kind: Optional[DetectionKind] = None
    age: int = 0
    hits: int = 1


class IouTagger(IdentityTagger):
    """
    IOU association against the recent tracks of the same camera.

    A box overlapping a known track of the same kind by at least
    ``iou_threshold`` inherits its id and position; anything else opens a new
    track. A track is claimed by at most one box per frame.
    """

    def __init__(self, config: TrackerConfig):
        super().__init__(config)
        self._counters: Dict[str, Iterator[int]] = {}
        self._tracks: Dict[str, "OrderedDict[str, Track]"] = {}
        self._claimed: Dict[str, Set[str]] = {}

    def tag(self, camera_id: str, bbox: BBox, kind: Optional[DetectionKind] = None) -> str:
        tracks = self._tracks.setdefault(camera_id, OrderedDict())
        claimed = self._claimed.setdefault(camera_id, set())
        match_id = self._match(tracks, bbox, kind, claimed)
        if match_id is None:
            counter = self._counters.setdefault(camera_id, itertools.count(1))
            track = Track(track_id=f"{camera_id}_track_{next(counter)}", bbox=bbox, kind=kind)
            tracks[track.track_id] = track
            claimed.add(track.track_id)
            self._enforce_cap(camera_id, tracks)
            return track.track_id

        track = tracks[match_id]
        track.bbox = bbox
        track.age = 0
        track.hits += 1
        tracks.move_to_end(match_id)
        claimed.add(match_id)
        return match_id

    def end_frame(self, camera_id: str) -> None:
        self._claimed.pop(camera_id, None)
        tracks = self._tracks.get(camera_id)
        if not tracks:
            return
        for track_id, track in list(tracks.items()):
            track.age += 1
            if track.age > self.config.max_age:
                LOGGER.debug(
                    "Dropping track %s on camera '%s' (age=%d hits=%d)",
                    track_id,
                    camera_id,
                    track.age,
                    track.hits,
                )
                tracks.pop(track_id, None)

    def active_tracks(self, camera_id: str) -> int:
        return len(self._tracks.get(camera_id, ()))

    def _match(
        self,
        tracks: "OrderedDict[str, Track]",
        bbox: BBox,
        kind: Optional[DetectionKind],
        claimed: Set[str],
    ) -> str | None:
        best_iou = 0.0
        best_track_id: str | None = None
        for track_id, track in tracks.items():
            if track.kind != kind or track_id in claimed:
                continue
            iou = _iou(track.bbox, bbox)
            if iou >= self.config.iou_threshold and iou > best_iou:
                best_iou = iou
                best_track_id = track_id
        return best_track_id

    def _enforce_cap(self, camera_id: str, tracks: "OrderedDict[str, Track]") -> None:
        while len(tracks) > self.config.max_tracks:
            evicted_id, _ = tracks.popitem(last=False)
            LOGGER.debug("Evicting track %s on camera '%s' (cap reached)", evicted_id, camera_id)


class FingerprintTagger(IdentityTagger):
    """
    Derives the id from a hash of the box coordinates.

    Stable for a static scene only: a moving object changes its id on every
    frame. Collisions modulo ``fingerprint_modulus`` are possible.
    """

    def __init__(self, config: TrackerConfig):
        super().__init__(config)
        self._cache: Dict[str, "OrderedDict[BBox, str]"] = {}

    def tag(self, camera_id: str, bbox: BBox, kind: Optional[DetectionKind] = None) -> str:
        cache = self._cache.setdefault(camera_id, OrderedDict())
        key = tuple(round(float(v), 1) for v in bbox)
        tracking_id = cache.get(key)
        if tracking_id is None:
            tracking_id = f"{camera_id}_track_{fingerprint(key) % self.config.fingerprint_modulus}"
            cache[key] = tracking_id
            while len(cache) > self.config.max_tracks:
                cache.popitem(last=False)
        else:
            cache.move_to_end(key)
        return tracking_id

    def active_tracks(self, camera_id: str) -> int:
        return len(self._cache.get(camera_id, ()))


def fingerprint(bbox: Iterable[float]) -> int:
    """Deterministic across processes, unlike ``hash()``."""
    packed = struct.pack("<4d", *bbox)
    return int.from_bytes(hashlib.blake2b(packed, digest_size=8).digest(), "little")


def create_tagger(config: TrackerConfig) -> IdentityTagger:
    if config.type == "iou":
        return IouTagger(config)
    if config.type == "fingerprint":
        return FingerprintTagger(config)
    raise ValueError(f"Unsupported tracker type '{config.type}'")


def _iou(a: BBox, b: BBox) -> float:
    ax1, ay1, ax2, ay2 = a
    bx1, by1, bx2, by2 = b

    inter_x1 = max(ax1, bx1)
    inter_y1 = max(ay1, by1)
    inter_x2 = min(ax2, bx2)
    inter_y2 = min(ay2, by2)

    inter_w = max(0.0, inter_x2 - inter_x1)
    inter_h = max(0.0, inter_y2 - inter_y1)
    inter_area = inter_w * inter_h

    area_a = max(0.0, (ax2 - ax1)) * max(0.0, (ay2 - ay1))
    area_b = max(0.0, (bx2 - bx1)) * max(0.0, (by2 - by1))
    union_area = area_a + area_b - inter_area
    if union_area <= 0:
        return 0.0
    return inter_area / union_area
