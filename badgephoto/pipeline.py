"""
Pipeline Session

One user's working state: the current image, the last detections and a
generation counter bumped on every new image. Every user action re-runs the
full pipeline (detect -> geometry -> segment -> composite) on a snapshot of
the session; a result whose generation no longer matches the session is
discarded with StaleResult instead of being stored.

PipelineServices holds the process-wide capabilities (face detector,
segmentation orchestrator) shared by all sessions.

SessionRegistry maps session ids to sessions, bounded by count and idle time.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from .compositor import (
    DEFAULT_OUTPUT_SIZE,
    apply_mask,
    crop_circle,
    crop_rect,
    remove_background_and_crop_round as composite_round_cutout,
    round_crop_with_background as composite_round_with_background,
)
from .crop_geometry import compute_circle_crop, compute_rect_crop
from .env_config import Settings
from .errors import NoFaceDetected, NoImageLoaded, StaleResult
from .face_detector import FaceDetectionAdapter
from .mediapipe_tasks import MediaPipeFaceDetector
from .segmentation import CATEGORY_BACKEND_NAME, SegmentationOrchestrator, create_backends
from .types import CropShape, Detection, ProcessedImage

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Capabilities shared across sessions"""
    detector: FaceDetectionAdapter
    orchestrator: SegmentationOrchestrator
    output_size: int = DEFAULT_OUTPUT_SIZE
    default_backend: str = CATEGORY_BACKEND_NAME

    def warm_up(self) -> Dict[str, Optional[str]]:
        """
        Initialize the face detector and the category segmenter.

        Matte backends stay lazy. Failures are logged and reported per
        capability; they never stop the other capability from loading.

        Returns:
            Dict of capability name -> error message (None when loaded)
        """
        report: Dict[str, Optional[str]] = {}

        targets = [("face_detector", self.detector.capability.initialize)]
        if CATEGORY_BACKEND_NAME in self.orchestrator.names:
            targets.append((CATEGORY_BACKEND_NAME, self.orchestrator.get(CATEGORY_BACKEND_NAME).initialize))

        for name, initialize in targets:
            try:
                initialize()
                report[name] = None
            except Exception as e:
                logger.error("[STARTUP] %s failed to initialize: %s", name, e)
                report[name] = str(e)

        return report


def build_services(settings: Settings) -> PipelineServices:
    """Wire capabilities from settings"""
    detector = FaceDetectionAdapter(
        MediaPipeFaceDetector(settings.face_detector_model, timeout=settings.model_fetch_timeout)
    )
    orchestrator = SegmentationOrchestrator(create_backends(settings))

    matte_names = [name for name in orchestrator.names if name != CATEGORY_BACKEND_NAME]
    default_backend = matte_names[0] if matte_names else CATEGORY_BACKEND_NAME

    return PipelineServices(
        detector=detector,
        orchestrator=orchestrator,
        output_size=settings.output_size,
        default_backend=default_backend,
    )


def primary_detection(detections: List[Detection]) -> Detection:
    """
    Highest-scoring detection.

    Raises:
        NoFaceDetected: Empty list
    """
    if not detections:
        raise NoFaceDetected("No face detected in the current image")
    return max(detections, key=lambda d: d.score)


class PipelineSession:
    """
    Usage:
        session = PipelineSession(services)
        session.set_image(image_rgb)
        result = session.crop_face()
        png = encode_png(result.pixels)
    """

    def __init__(self, services: PipelineServices, session_id: Optional[str] = None):
        self.services = services
        self.session_id = session_id
        self._lock = threading.Lock()
        self._image: Optional[np.ndarray] = None
        self._generation = 0
        self._detections: List[Detection] = []
        self.latest: Optional[ProcessedImage] = None
        # stored upload backing the current image, if any
        self.source_path: Optional[str] = None

    # =========================================================================
    # State
    # =========================================================================

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def detections(self) -> List[Detection]:
        with self._lock:
            return list(self._detections)

    @property
    def has_image(self) -> bool:
        return self._image is not None

    def set_image(self, image: np.ndarray) -> int:
        """Replace the current image; returns the new generation"""
        with self._lock:
            self._image = image
            self._generation += 1
            self._detections = []
            self.latest = None
            generation = self._generation

        logger.info(
            "[SESSION] %s: new image %dx%d (generation %d)",
            self.session_id or "-", image.shape[1], image.shape[0], generation
        )
        return generation

    def release(self):
        """
        Drop the image and results. Work still running on the old image ends
        with StaleResult.
        """
        with self._lock:
            self._image = None
            self._generation += 1
            self._detections = []
            self.latest = None

    def is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def _snapshot(self) -> Tuple[np.ndarray, int]:
        with self._lock:
            if self._image is None:
                raise NoImageLoaded("Upload an image first")
            return self._image, self._generation

    def _check_current(self, generation: int):
        with self._lock:
            current = self._generation
        if generation != current:
            logger.info("[SESSION] %s: discarding result of generation %d", self.session_id or "-", generation)
            raise StaleResult(generation, current)

    def accept(self, result: ProcessedImage) -> ProcessedImage:
        """
        Store result as the session's latest output.

        Raises:
            StaleResult: result.generation is no longer current
        """
        with self._lock:
            current = self._generation
            if result.generation == current:
                self.latest = result
                return result

        logger.info("[SESSION] %s: discarding result of generation %d", self.session_id or "-", result.generation)
        raise StaleResult(result.generation, current)

    # =========================================================================
    # Actions
    # =========================================================================

    def _detect(self, image: np.ndarray, generation: int) -> List[Detection]:
        with self._lock:
            if generation == self._generation:
                self._detections = []

        detections = self.services.detector.detect(image)

        with self._lock:
            current = self._generation
            if generation == current:
                self._detections = list(detections)
                return detections

        logger.info("[SESSION] %s: discarding detections of generation %d", self.session_id or "-", generation)
        raise StaleResult(generation, current)

    def run_detection(self) -> Tuple[List[Detection], int]:
        """Run face detection; returns the detections and the generation they belong to"""
        image, generation = self._snapshot()
        return self._detect(image, generation), generation

    def detect_faces(self) -> List[Detection]:
        """Run face detection on the current image and store the result"""
        detections, _ = self.run_detection()
        return detections

    def _face(self, image: np.ndarray, generation: int) -> Detection:
        return primary_detection(self._detect(image, generation))

    def crop_face(self) -> ProcessedImage:
        """4:3 crop around the face"""
        image, generation = self._snapshot()
        face = self._face(image, generation)

        region = compute_rect_crop(face.bounding_box, image.shape[1], image.shape[0])
        return self.accept(ProcessedImage(
            pixels=crop_rect(image, region),
            kind="crop_rect",
            generation=generation,
            metadata={"region": region.to_dict(), "detection": face.to_dict()},
        ))

    def crop_round_face(self) -> ProcessedImage:
        """Circular crop around the face with a white ring"""
        image, generation = self._snapshot()
        face = self._face(image, generation)

        region = compute_circle_crop(face.bounding_box, image.shape[1], image.shape[0])
        return self.accept(ProcessedImage(
            pixels=crop_circle(image, region, ring=True),
            kind="crop_circle",
            generation=generation,
            metadata={"region": region.to_dict(), "detection": face.to_dict()},
        ))

    def crop(self, shape: CropShape) -> ProcessedImage:
        if shape == CropShape.CIRCLE:
            return self.crop_round_face()
        return self.crop_face()

    def remove_background(self, backend: Optional[str] = None) -> ProcessedImage:
        """Full-frame cutout; does not need a face"""
        image, generation = self._snapshot()
        backend = backend or self.services.default_backend

        segmentation = self.services.orchestrator.segment(image, backend)
        self._check_current(generation)
        segmentation.generation = generation

        return self.accept(ProcessedImage(
            pixels=apply_mask(image, segmentation.mask),
            kind="remove_background",
            generation=generation,
            metadata={"segmentation": segmentation.to_dict()},
        ))

    def remove_background_and_crop_round(self, backend: Optional[str] = None) -> ProcessedImage:
        """Cutout, then round portrait crop scaled to the output size"""
        image, generation = self._snapshot()
        backend = backend or self.services.default_backend

        # face first: no point segmenting an image without one
        face = self._face(image, generation)

        segmentation = self.services.orchestrator.segment(image, backend)
        self._check_current(generation)
        segmentation.generation = generation

        pixels = composite_round_cutout(image, segmentation.mask, face.bounding_box, self.services.output_size)
        return self.accept(ProcessedImage(
            pixels=pixels,
            kind="remove_background_round",
            generation=generation,
            metadata={"segmentation": segmentation.to_dict(), "detection": face.to_dict()},
        ))

    def round_crop_with_background(self) -> ProcessedImage:
        """Round portrait crop keeping the background"""
        image, generation = self._snapshot()
        face = self._face(image, generation)

        pixels = composite_round_with_background(image, face.bounding_box, self.services.output_size)
        return self.accept(ProcessedImage(
            pixels=pixels,
            kind="round_with_background",
            generation=generation,
            metadata={"detection": face.to_dict()},
        ))


# =============================================================================
# Session registry
# =============================================================================

DEFAULT_MAX_SESSIONS = 100
DEFAULT_SESSION_TTL = 3600


class SessionRegistry:
    """
    In-memory session_id -> PipelineSession map.

    Entries are kept in last-access order. Adding past max_sessions evicts the
    least recently used session; a session idle for longer than ttl_seconds
    is evicted on the next registry access. Evicted sessions are released
    and passed to on_evict (e.g. to delete their stored upload).

    Usage:
        registry = SessionRegistry(max_sessions=100, ttl_seconds=3600)
        registry.add(session)
        session = registry.get(session_id)   # None when unknown or evicted
    """

    def __init__(
        self,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
        ttl_seconds: float = DEFAULT_SESSION_TTL,
        on_evict: Optional[Callable[[PipelineSession], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if max_sessions <= 0:
            raise ValueError("max_sessions must be positive")
        self.max_sessions = max_sessions
        self.ttl_seconds = ttl_seconds
        self.on_evict = on_evict
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[PipelineSession, float]]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._entries

    def _expired(self, now: float) -> List[PipelineSession]:
        # oldest first; stop at the first entry still within its TTL
        expired = []
        while self._entries:
            session_id, (session, last_access) = next(iter(self._entries.items()))
            if now - last_access <= self.ttl_seconds:
                break
            del self._entries[session_id]
            expired.append(session)
        return expired

    def _evict(self, sessions: List[PipelineSession], reason: str):
        for session in sessions:
            session.release()
            logger.info("[SESSION] %s evicted (%s)", session.session_id or "-", reason)
            if self.on_evict is not None:
                self.on_evict(session)

    def add(self, session: PipelineSession) -> PipelineSession:
        """Register session as most recently used"""
        now = self._clock()
        with self._lock:
            expired = self._expired(now)
            self._entries[session.session_id] = (session, now)
            self._entries.move_to_end(session.session_id)

            overflow = []
            while len(self._entries) > self.max_sessions:
                _, (oldest, _) = self._entries.popitem(last=False)
                overflow.append(oldest)

        self._evict(expired, "idle")
        self._evict(overflow, "capacity")
        return session

    def get(self, session_id: str) -> Optional[PipelineSession]:
        """Session by id, refreshing its last access; None when unknown or evicted"""
        now = self._clock()
        with self._lock:
            expired = self._expired(now)
            entry = self._entries.get(session_id)
            if entry is not None:
                self._entries[session_id] = (entry[0], now)
                self._entries.move_to_end(session_id)

        self._evict(expired, "idle")
        return entry[0] if entry is not None else None
