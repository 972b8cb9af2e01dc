"""
MediaPipe Tasks Capabilities

Thin wrappers around the MediaPipe Tasks API:
- MediaPipeFaceDetector:  BlazeFace short-range face detector
- MediaPipeImageSegmenter: DeepLab v3 category-mask segmenter (15 = person)

Both load their model bytes through model_fetch, so a missing model is a
FetchFailure for that capability only. mediapipe is imported at
initialization time so the rest of the pipeline imports without it.
"""

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from .errors import NotReady
from .model_fetch import DEFAULT_TIMEOUT, fetch_model_bytes

logger = logging.getLogger(__name__)

MIN_DETECTION_CONFIDENCE = 0.5


class RunningMode(str, Enum):
    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


def _to_mp_image(image_rgb: np.ndarray):
    import mediapipe as mp

    if image_rgb.ndim == 3 and image_rgb.shape[2] == 4:
        return mp.Image(image_format=mp.ImageFormat.SRGBA, data=np.ascontiguousarray(image_rgb))
    return mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(image_rgb[:, :, :3]))


class _TaskCapability(ABC):
    """
    Shared initialize-once logic for MediaPipe tasks.

    One reentrant lock guards initialization, mode switches, close and every
    inference call, so a task is never closed while another thread uses it.
    """

    task_name = "task"

    def __init__(
        self,
        model_source: str,
        running_mode: RunningMode = RunningMode.IMAGE,
        fetcher: Callable[..., Tuple[bytes, dict]] = fetch_model_bytes,
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.model_source = model_source
        self.mode = running_mode
        self._fetcher = fetcher
        self._timeout = timeout
        self._model_bytes: Optional[bytes] = None
        self._task = None
        self._lock = threading.RLock()
        self.initialized = False

    @abstractmethod
    def _create(self, model_bytes: bytes, mode: RunningMode):
        """Build the MediaPipe task for mode"""
        pass

    def initialize(self):
        """
        Fetch the model and create the task. Concurrent callers wait for the
        same initialization.

        Raises:
            FetchFailure: Model bytes unavailable
        """
        with self._lock:
            if self.initialized:
                return
            model_bytes, _ = self._fetcher(self.model_source, timeout=self._timeout)
            self._task = self._create(model_bytes, self.mode)
            self._model_bytes = model_bytes
            self.initialized = True
            logger.info("[%s] Initialized in %s mode", self.task_name, self.mode.value)

    def set_mode(self, mode: RunningMode):
        """Switch running mode; the task is re-created before this returns"""
        with self._lock:
            if mode == self.mode:
                return
            if self.initialized:
                old_task = self._task
                self._task = self._create(self._model_bytes, mode)
                if old_task is not None and hasattr(old_task, "close"):
                    old_task.close()
            self.mode = mode
            logger.info("[%s] Running mode set to %s", self.task_name, mode.value)

    def _require_task(self):
        if not self.initialized or self._task is None:
            raise NotReady(f"{self.task_name} is not initialized yet")
        return self._task

    def close(self):
        with self._lock:
            if self._task is not None and hasattr(self._task, "close"):
                self._task.close()
            self._task = None
            self.initialized = False


class MediaPipeFaceDetector(_TaskCapability):
    """Face detector capability: initialize(), set_mode(), detect()"""

    task_name = "FaceDetector"

    def __init__(self, model_source: str, min_confidence: float = MIN_DETECTION_CONFIDENCE, **kwargs):
        super().__init__(model_source, **kwargs)
        self.min_confidence = min_confidence
        self._timestamp_ms = 0

    def _create(self, model_bytes: bytes, mode: RunningMode):
        from mediapipe.tasks import python as mp_python
        from mediapipe.tasks.python import vision

        options = vision.FaceDetectorOptions(
            base_options=mp_python.BaseOptions(model_asset_buffer=model_bytes),
            running_mode=getattr(vision.RunningMode, mode.value),
            min_detection_confidence=self.min_confidence,
        )
        return vision.FaceDetector.create_from_options(options)

    def detect(self, image_rgb: np.ndarray) -> List[Any]:
        """
        Raw MediaPipe detections (bounding_box in pixels, categories, keypoints).

        Raises:
            NotReady: initialize() has not completed
        """
        with self._lock:
            task = self._require_task()
            mp_image = _to_mp_image(image_rgb)
            if self.mode == RunningMode.VIDEO:
                self._timestamp_ms += 33
                result = task.detect_for_video(mp_image, self._timestamp_ms)
            else:
                result = task.detect(mp_image)

        return list(result.detections or [])


class MediaPipeImageSegmenter(_TaskCapability):
    """Category-mask segmenter capability: initialize(), segment()"""

    task_name = "ImageSegmenter"

    def _create(self, model_bytes: bytes, mode: RunningMode):
        from mediapipe.tasks import python as mp_python
        from mediapipe.tasks.python import vision

        options = vision.ImageSegmenterOptions(
            base_options=mp_python.BaseOptions(model_asset_buffer=model_bytes),
            running_mode=getattr(vision.RunningMode, mode.value),
            output_category_mask=True,
            output_confidence_masks=False,
        )
        return vision.ImageSegmenter.create_from_options(options)

    def segment(self, image_rgb: np.ndarray) -> np.ndarray:
        """
        Per-pixel category labels.

        Returns:
            uint8 array (height, width)

        Raises:
            NotReady: initialize() has not completed
        """
        with self._lock:
            if self.mode != RunningMode.IMAGE:
                self.set_mode(RunningMode.IMAGE)
            task = self._require_task()
            result = task.segment(_to_mp_image(image_rgb))

        if result.category_mask is None:
            raise RuntimeError("Segmenter returned no category mask")

        return np.array(result.category_mask.numpy_view(), dtype=np.uint8).reshape(
            result.category_mask.height, result.category_mask.width
        )
