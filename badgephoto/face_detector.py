"""
Face Detection Adapter

Normalizes face-detector output into Detection objects with pixel-space
bounding boxes clamped to the image.

Contract:
- detector not initialized   -> NotReady (caller waits, no automatic retry)
- detector in VIDEO mode     -> switched to IMAGE mode before detecting
- zero faces                 -> empty list
- concurrent calls           -> serialized; the detector task is not reentrant
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import numpy as np

from .errors import NotReady
from .mediapipe_tasks import MediaPipeFaceDetector, RunningMode
from .types import BoundingBox, Detection, Keypoint

logger = logging.getLogger(__name__)


class FaceDetectorCapability(ABC):
    """Interface for the external face detector"""

    initialized: bool
    mode: RunningMode

    @abstractmethod
    def initialize(self):
        """Load the model"""
        pass

    @abstractmethod
    def set_mode(self, mode: RunningMode):
        """Switch running mode"""
        pass

    @abstractmethod
    def detect(self, image_rgb: np.ndarray) -> List[Any]:
        """Raw detections"""
        pass


FaceDetectorCapability.register(MediaPipeFaceDetector)


def _score(raw) -> float:
    categories = getattr(raw, "categories", None) or []
    if categories:
        score = getattr(categories[0], "score", None)
        if score is not None:
            return float(score)
    return float(getattr(raw, "score", 0.0) or 0.0)


def clamp_box(box: BoundingBox, image_width: int, image_height: int) -> Optional[BoundingBox]:
    """Intersect a box with the image; None if nothing is left"""
    x0 = max(0.0, float(box.origin_x))
    y0 = max(0.0, float(box.origin_y))
    x1 = min(float(image_width), float(box.origin_x + box.width))
    y1 = min(float(image_height), float(box.origin_y + box.height))

    if x1 - x0 <= 0 or y1 - y0 <= 0:
        return None
    return BoundingBox(origin_x=x0, origin_y=y0, width=x1 - x0, height=y1 - y0)


def detection_from_raw(raw, image_width: int, image_height: int) -> Optional[Detection]:
    """
    Convert one MediaPipe-style detection.

    Expects raw.bounding_box with origin_x/origin_y/width/height in pixels,
    raw.categories[0].score and raw.keypoints with normalized x/y.
    """
    bbox = raw.bounding_box
    box = clamp_box(
        BoundingBox(
            origin_x=float(bbox.origin_x),
            origin_y=float(bbox.origin_y),
            width=float(bbox.width),
            height=float(bbox.height),
        ),
        image_width,
        image_height,
    )
    if box is None:
        return None

    keypoints = [
        Keypoint(x=float(kp.x), y=float(kp.y))
        for kp in (getattr(raw, "keypoints", None) or [])
    ]

    score = min(1.0, max(0.0, _score(raw)))
    return Detection(bounding_box=box, score=score, keypoints=keypoints)


class FaceDetectionAdapter:
    """
    detect(image) -> List[Detection]

    Usage:
        adapter = FaceDetectionAdapter(MediaPipeFaceDetector(model_url))
        adapter.capability.initialize()
        detections = adapter.detect(image_rgb)
    """

    def __init__(self, capability: FaceDetectorCapability):
        self.capability = capability
        self._lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return bool(self.capability.initialized)

    def detect(self, image_rgb: np.ndarray) -> List[Detection]:
        """
        Raises:
            NotReady: Capability not initialized
        """
        height, width = image_rgb.shape[:2]

        # mode switch and inference happen under one lock so a switch never
        # closes a task another thread is still running
        with self._lock:
            if not self.capability.initialized:
                raise NotReady("Face detector is still loading")

            if self.capability.mode != RunningMode.IMAGE:
                self.capability.set_mode(RunningMode.IMAGE)

            raw_detections = self.capability.detect(image_rgb)

        detections = []
        for raw in raw_detections:
            detection = detection_from_raw(raw, width, height)
            if detection is not None:
                detections.append(detection)

        if detections:
            logger.info("[DETECT] %d face(s) found", len(detections))
        else:
            logger.info("[DETECT] No face detected")

        return detections
