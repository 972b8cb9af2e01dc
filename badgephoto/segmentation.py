"""
Segmentation Orchestrator

Drives heterogeneous background-removal backends behind one contract:

    orchestrator.segment(image, backend_name) -> SegmentationResult

Backends (closed set, see BackendKind):
- CategoryMaskBackend:  per-pixel labels from an image segmenter; label 15
                        ("person") becomes foreground
- MatteNetworkBackend:  single-tensor-output matting network (BiRefNet,
                        RMBG, MODNet style) run through ONNX Runtime

Matting networks disagree on input layout and nothing at the call site
says which one a model wants, so each call walks an ordered ladder of
TensorSpecs. Every rung is first VALIDATED with a zero placeholder tensor;
only a rung that validates gets the real (expensive) encode and run.

Per call state machine:

    IDLE -> PREPROCESSING -> INFERRING -> POSTPROCESSING -> DONE
                                |    ^
                                v    |
                             RECOVERING        (any failure -> FAILED)

Calls against the same backend are serialized (sessions are not assumed
reentrant); different backends run concurrently.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .env_config import Settings
from .errors import BackendIncompatible, NotReady, UnknownBackend
from .mediapipe_tasks import MediaPipeImageSegmenter
from .model_fetch import DEFAULT_TIMEOUT, fetch_model_bytes
from .tensor_codec import (
    DEFAULT_LADDER,
    build_ladder,
    decode_to_pixels,
    encode_image,
    placeholder_tensor,
    resample_mask,
)
from .types import (
    BackendKind,
    LadderAttempt,
    Mask,
    SegmentationResult,
    Tensor,
    TensorSpec,
)

logger = logging.getLogger(__name__)

PERSON_CATEGORY = 15  # DeepLab v3 / PASCAL VOC "person"
CATEGORY_BACKEND_NAME = "category"


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    PREPROCESSING = "PREPROCESSING"
    INFERRING = "INFERRING"
    RECOVERING = "RECOVERING"
    POSTPROCESSING = "POSTPROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class _StateTrace:
    """Records the state path of one call"""

    def __init__(self, backend_name: str):
        self.backend_name = backend_name
        self.state = OrchestratorState.IDLE
        self.history: List[str] = [self.state.value]

    def enter(self, state: OrchestratorState):
        self.state = state
        self.history.append(state.value)
        logger.debug("[SEGMENT] %s -> %s", self.backend_name, state.value)


# =============================================================================
# Backends
# =============================================================================

class SegmentationBackend(ABC):
    """Common surface of every backend"""

    kind: BackendKind
    name: str

    @property
    @abstractmethod
    def ready(self) -> bool:
        """True once the backend can serve requests"""
        pass

    @abstractmethod
    def initialize(self):
        """Load the model; safe to call more than once"""
        pass


class CategoryMaskBackend(SegmentationBackend):
    """Image segmenter producing a category mask"""

    kind = BackendKind.CATEGORY_MASK

    def __init__(self, segmenter, name: str = CATEGORY_BACKEND_NAME, person_category: int = PERSON_CATEGORY):
        self.segmenter = segmenter
        self.name = name
        self.person_category = person_category

    @property
    def ready(self) -> bool:
        return bool(self.segmenter.initialized)

    def initialize(self):
        self.segmenter.initialize()

    def categories(self, image_rgb: np.ndarray) -> np.ndarray:
        """
        Raises:
            NotReady: Segmenter not initialized
        """
        if not self.ready:
            raise NotReady(f"Segmenter '{self.name}' is still loading")
        return self.segmenter.segment(image_rgb)

    def foreground(self, categories: np.ndarray) -> Mask:
        """1.0 where the label is the person category, else 0.0"""
        return Mask((np.asarray(categories) == self.person_category).astype(np.float32))


def create_onnx_session(model_bytes: bytes, providers: Optional[Sequence[str]] = None):
    """ONNX Runtime session from in-memory model bytes"""
    import onnxruntime as ort

    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    return ort.InferenceSession(
        model_bytes,
        sess_options=options,
        providers=list(providers or ["CPUExecutionProvider"]),
    )


class MatteNetworkBackend(SegmentationBackend):
    """
    Matting network behind a tensor-inference session.

    The session is created lazily on first use. Concurrent first users wait
    for the same initialization instead of loading the model twice.
    Input/output names are read from the model, never assumed.
    """

    kind = BackendKind.MATTE_NETWORK

    def __init__(
        self,
        name: str,
        model_source: str,
        ladder: Optional[Sequence[TensorSpec]] = None,
        logits: Optional[bool] = None,
        providers: Optional[Sequence[str]] = None,
        session_factory: Optional[Callable[[bytes], Any]] = None,
        fetcher: Callable[..., Tuple[bytes, dict]] = fetch_model_bytes,
        timeout: int = DEFAULT_TIMEOUT
    ):
        self.name = name
        self.model_source = model_source
        self.ladder: List[TensorSpec] = list(ladder or DEFAULT_LADDER)
        self.logits = logits
        self.providers = list(providers or ["CPUExecutionProvider"])
        self._session_factory = session_factory or (lambda data: create_onnx_session(data, self.providers))
        self._fetcher = fetcher
        self._timeout = timeout
        self._init_lock = threading.Lock()
        self._session = None
        self.input_name: Optional[str] = None
        self.output_name: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self._session is not None

    def initialize(self):
        """
        Raises:
            FetchFailure: Model bytes unavailable (this backend only)
        """
        if self._session is not None:
            return

        with self._init_lock:
            if self._session is not None:
                return

            model_bytes, meta = self._fetcher(self.model_source, timeout=self._timeout)
            session = self._session_factory(model_bytes)

            inputs = session.get_inputs()
            outputs = session.get_outputs()
            if not inputs or not outputs:
                raise RuntimeError(f"Model '{self.name}' declares no inputs or outputs")

            self.input_name = inputs[0].name
            self.output_name = outputs[0].name
            self._session = session

            logger.info(
                "[SEGMENT] Model '%s' loaded (%d bytes) input=%s output=%s",
                self.name, meta.get("size_bytes", len(model_bytes)), self.input_name, self.output_name
            )

    def run(self, tensor: Tensor) -> Tensor:
        """
        One forward pass.

        Raises:
            NotReady: initialize() has not completed
            Exception: Whatever the inference runtime raises for a bad input
        """
        if self._session is None:
            raise NotReady(f"Model '{self.name}' is still loading")

        outputs = self._session.run([self.output_name], {self.input_name: tensor.as_array()})
        return Tensor.from_array(np.asarray(outputs[0], dtype=np.float32))


# =============================================================================
# Orchestrator
# =============================================================================

def _attempt(func: Callable[[], Any]) -> Tuple[Any, Optional[BaseException]]:
    """Run func, returning (value, None) or (None, error)"""
    try:
        return func(), None
    except NotReady:
        raise
    except Exception as e:
        return None, e


class SegmentationOrchestrator:
    """
    Usage:
        orchestrator = SegmentationOrchestrator([category_backend, birefnet_backend])
        result = orchestrator.segment(image_rgb, "birefnet")
        result.mask, result.input_layout_used
    """

    def __init__(self, backends: Iterable[SegmentationBackend]):
        self._backends: Dict[str, SegmentationBackend] = {}
        self._locks: Dict[str, threading.Lock] = {}
        for backend in backends:
            self._backends[backend.name] = backend
            self._locks[backend.name] = threading.Lock()

    @property
    def names(self) -> List[str]:
        return list(self._backends.keys())

    def get(self, name: str) -> SegmentationBackend:
        backend = self._backends.get(name)
        if backend is None:
            raise UnknownBackend(name, self.names)
        return backend

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {"kind": backend.kind.value, "ready": backend.ready}
            for name, backend in self._backends.items()
        }

    def segment(self, image_rgb: np.ndarray, backend_name: str) -> SegmentationResult:
        """
        Pixel-space foreground mask for image_rgb.

        Raises:
            UnknownBackend: No backend with that name
            NotReady: Backend capability not initialized
            FetchFailure: Backend model could not be loaded
            BackendIncompatible: Every ladder rung failed
            UnsupportedOutputShape: Model output rank not decodable
        """
        backend = self.get(backend_name)
        trace = _StateTrace(backend.name)
        start_time = time.time()

        with self._locks[backend.name]:
            try:
                if backend.kind == BackendKind.MATTE_NETWORK:
                    backend.initialize()
                    result = self._segment_matte(backend, image_rgb, trace)
                else:
                    result = self._segment_categories(backend, image_rgb, trace)
            except Exception:
                trace.enter(OrchestratorState.FAILED)
                raise

        result.states = trace.history
        result.processing_time_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "[SEGMENT] %s done in %dms (layout=%s, coverage=%.1f%%)",
            backend.name, result.processing_time_ms,
            result.input_layout_used.value if result.input_layout_used else "native",
            result.mask.coverage() * 100,
        )
        return result

    def segment_first(self, image_rgb: np.ndarray, backend_names: Sequence[str]) -> SegmentationResult:
        """
        Try backends in order and return the first success.

        Failures of one backend are logged and never stop the next one; if all
        fail the last error is raised.
        """
        last_error: Optional[BaseException] = None
        for name in backend_names:
            try:
                return self.segment(image_rgb, name)
            except UnknownBackend:
                raise
            except Exception as e:
                logger.warning("[SEGMENT] Backend '%s' failed: %s", name, e)
                last_error = e

        if last_error is None:
            raise UnknownBackend("<none>", self.names)
        raise last_error

    def _segment_categories(
        self,
        backend: CategoryMaskBackend,
        image_rgb: np.ndarray,
        trace: _StateTrace
    ) -> SegmentationResult:
        height, width = image_rgb.shape[:2]

        trace.enter(OrchestratorState.PREPROCESSING)
        trace.enter(OrchestratorState.INFERRING)
        categories = backend.categories(image_rgb)

        trace.enter(OrchestratorState.POSTPROCESSING)
        mask = resample_mask(backend.foreground(categories), width, height)

        trace.enter(OrchestratorState.DONE)
        return SegmentationResult(
            mask=mask,
            backend_used=backend.kind,
            backend_name=backend.name,
        )

    def _segment_matte(
        self,
        backend: MatteNetworkBackend,
        image_rgb: np.ndarray,
        trace: _StateTrace
    ) -> SegmentationResult:
        attempts: List[LadderAttempt] = []
        last_error: Optional[BaseException] = None

        for index, spec in enumerate(backend.ladder):
            if index > 0:
                trace.enter(OrchestratorState.RECOVERING)
                logger.info("[SEGMENT] %s: trying %s", backend.name, spec.describe())

            # Validation pass on a placeholder of the same shape
            trace.enter(OrchestratorState.PREPROCESSING)
            trace.enter(OrchestratorState.INFERRING)
            _, error = _attempt(lambda: backend.run(placeholder_tensor(spec)))
            if error is not None:
                attempts.append(LadderAttempt(spec=spec, phase="validate", ok=False, error=str(error)))
                last_error = error
                logger.warning("[SEGMENT] %s rejected %s: %s", backend.name, spec.describe(), error)
                continue

            # Real pass
            trace.enter(OrchestratorState.PREPROCESSING)
            encoded, error = _attempt(lambda: encode_image(image_rgb, spec))
            if error is None:
                tensor, info = encoded
                trace.enter(OrchestratorState.INFERRING)
                output, error = _attempt(lambda: backend.run(tensor))
            if error is not None:
                attempts.append(LadderAttempt(spec=spec, phase="run", ok=False, error=str(error)))
                last_error = error
                logger.warning("[SEGMENT] %s failed on %s: %s", backend.name, spec.describe(), error)
                continue

            attempts.append(LadderAttempt(spec=spec, phase="done", ok=True))

            trace.enter(OrchestratorState.POSTPROCESSING)
            mask = decode_to_pixels(output, info, logits=backend.logits)

            trace.enter(OrchestratorState.DONE)
            return SegmentationResult(
                mask=mask,
                backend_used=backend.kind,
                backend_name=backend.name,
                input_layout_used=spec.layout,
                input_size_used=spec.size,
                attempts=attempts,
            )

        raise BackendIncompatible(backend.name, attempts, last_error)


# =============================================================================
# Factory
# =============================================================================

def create_backends(settings: Settings) -> List[SegmentationBackend]:
    """Category-mask backend plus one matte backend per configured model"""
    backends: List[SegmentationBackend] = [
        CategoryMaskBackend(
            MediaPipeImageSegmenter(settings.segmenter_model, timeout=settings.model_fetch_timeout)
        )
    ]

    ladder = build_ladder(
        settings.matte_primary_size,
        settings.matte_fallback_size,
        settings.matte_normalization,
    )
    for name, source in settings.matte_models.items():
        if name == CATEGORY_BACKEND_NAME:
            logger.warning("[SEGMENT] Matte model name '%s' is reserved, skipped", name)
            continue
        backends.append(
            MatteNetworkBackend(
                name=name,
                model_source=source,
                ladder=ladder,
                providers=settings.onnx_providers,
                timeout=settings.model_fetch_timeout,
            )
        )

    return backends
