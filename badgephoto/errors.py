"""
Pipeline Errors

Every error carries a stable `code` so the HTTP layer can map it to a
response without string matching.

Zero faces found is NOT an error: detection returns an empty list.
"""

from typing import List, Optional


class PipelineError(Exception):
    """Base class for badge pipeline errors."""
    code = "pipeline_error"


class ConfigError(PipelineError):
    """Raised when a required configuration is missing or invalid."""
    code = "config_error"


class NotReady(PipelineError):
    """
    Capability not initialized yet.

    Callers must wait for initialization, not retry in a loop.
    """
    code = "not_ready"


class FetchFailure(PipelineError):
    """Model bytes could not be retrieved. Fatal to that backend only."""
    code = "fetch_failure"

    def __init__(self, source: str, reason: str, status_code: Optional[int] = None):
        self.source = source
        self.reason = reason
        self.status_code = status_code
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"Failed to fetch model from {source}{status}: {reason}")


class UnsupportedOutputShape(PipelineError):
    """Output tensor rank the decoder cannot interpret."""
    code = "unsupported_output_shape"

    def __init__(self, dims):
        self.dims = tuple(dims)
        super().__init__(f"Unexpected mask dimensions: {list(self.dims)} (rank {len(self.dims)})")


class BackendIncompatible(PipelineError):
    """Every rung of the input-format ladder failed for one backend."""
    code = "backend_incompatible"

    def __init__(self, backend: str, attempts: List, last_error: Optional[BaseException] = None):
        self.backend = backend
        self.attempts = list(attempts)
        self.last_error = last_error
        tried = ", ".join(a.spec.describe() for a in self.attempts) or "nothing"
        super().__init__(
            f"Model '{backend}' incompatible after {len(self.attempts)} attempt(s) [{tried}]: {last_error}"
        )


class InvalidGeometry(PipelineError):
    """Bounding box cannot produce a crop (empty or outside the image)."""
    code = "invalid_geometry"


class NoFaceDetected(PipelineError):
    """A face-anchored action was requested but the last detection run found nothing."""
    code = "no_face_detected"


class NoImageLoaded(PipelineError):
    """An action was requested before any image was set on the session."""
    code = "no_image_loaded"


class StaleResult(PipelineError):
    """Result belongs to an image generation that has since been replaced."""
    code = "stale_result"

    def __init__(self, generation: int, current: int):
        self.generation = generation
        self.current = current
        super().__init__(f"Result for generation {generation} discarded (current is {current})")


class UnknownBackend(PipelineError, KeyError):
    """No segmentation backend registered under that name."""
    code = "unknown_backend"

    def __init__(self, name: str, available: List[str]):
        self.name = name
        self.available = list(available)
        PipelineError.__init__(self, f"Unknown backend '{name}'. Available: {', '.join(self.available)}")

    def __str__(self):
        return self.args[0]
