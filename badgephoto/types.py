"""
Pipeline Data Types

Plain dataclasses shared by every stage of the badge photo pipeline:
detections, crop regions, tensors, masks and processed images.

Coordinate conventions:
- BoundingBox / CropRegion are in SOURCE-IMAGE PIXELS
- Keypoint coordinates are normalized [0..1] relative to the displayed frame
- Images are numpy arrays (H, W, C), uint8, RGB or RGBA
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np


# =============================================================================
# Enums
# =============================================================================

class CropShape(str, Enum):
    RECT = "rect"
    CIRCLE = "circle"


class TensorLayout(str, Enum):
    CHW = "CHW"   # planar, channel-major
    HWC = "HWC"   # interleaved


class Normalization(str, Enum):
    SIMPLE = "simple"       # v / 255
    IMAGENET = "imagenet"   # (v / 255 - mean) / std


class ResizeMode(str, Enum):
    LETTERBOX = "letterbox"
    STRETCH = "stretch"


class BackendKind(str, Enum):
    CATEGORY_MASK = "category_mask"
    MATTE_NETWORK = "matte_network"


class CoordinateSpace(str, Enum):
    PIXELS = "pixels"
    NORMALIZED = "normalized"
    AUTO = "auto"


# =============================================================================
# Detection
# =============================================================================

@dataclass(frozen=True)
class BoundingBox:
    """Face bounding box in source-image pixels"""
    origin_x: float
    origin_y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return (self.origin_x + self.width / 2, self.origin_y + self.height / 2)

    @property
    def face_size(self) -> float:
        """Larger side of the box, used as the reference size for every crop"""
        return max(self.width, self.height)

    def to_dict(self) -> Dict[str, float]:
        return {
            "origin_x": self.origin_x,
            "origin_y": self.origin_y,
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class Keypoint:
    x: float
    y: float


@dataclass(frozen=True)
class Detection:
    """One face-detector result"""
    bounding_box: BoundingBox
    score: float
    keypoints: List[Keypoint] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "bounding_box": self.bounding_box.to_dict(),
            "score": self.score,
            "keypoints": [{"x": kp.x, "y": kp.y} for kp in self.keypoints],
        }


# =============================================================================
# Crop
# =============================================================================

@dataclass(frozen=True)
class CropRegion:
    """
    Crop command in source-image pixels.

    For CIRCLE crops (x, y, width, height) is the square enclosing the circle
    and radius is half its side.
    """
    shape: CropShape
    x: float
    y: float
    width: float
    height: float
    radius: Optional[float] = None

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2, self.y + self.height / 2)

    def to_pixel_box(self, image_width: int, image_height: int) -> Tuple[int, int, int, int]:
        """
        Integer (x, y, w, h) box for array slicing.

        Rounds the size first, then clamps the origin so the box stays inside
        [0, image_width] x [0, image_height].
        """
        w = int(round(self.width))
        h = int(round(self.height))
        w = max(1, min(w, image_width))
        h = max(1, min(h, image_height))

        x = int(round(self.x))
        y = int(round(self.y))
        x = max(0, min(x, image_width - w))
        y = max(0, min(y, image_height - h))

        return (x, y, w, h)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "shape": self.shape.value,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }
        if self.radius is not None:
            data["radius"] = self.radius
        return data


# =============================================================================
# Tensor / Mask
# =============================================================================

@dataclass
class Tensor:
    """Flat float32 buffer plus its declared dims"""
    data: np.ndarray
    dims: Tuple[int, ...]
    layout: Optional[TensorLayout] = None

    def __post_init__(self):
        self.data = np.asarray(self.data, dtype=np.float32).reshape(-1)
        self.dims = tuple(int(d) for d in self.dims)
        expected = int(np.prod(self.dims)) if self.dims else 0
        if self.data.size != expected:
            raise ValueError(
                f"Tensor data length {self.data.size} does not match dims {self.dims} ({expected})"
            )

    @property
    def rank(self) -> int:
        return len(self.dims)

    def as_array(self) -> np.ndarray:
        """Reshaped (no copy) view of the data"""
        return self.data.reshape(self.dims)

    @classmethod
    def from_array(cls, array: np.ndarray, layout: Optional[TensorLayout] = None) -> "Tensor":
        array = np.asarray(array, dtype=np.float32)
        return cls(data=array.reshape(-1), dims=array.shape, layout=layout)


@dataclass(frozen=True)
class TensorSpec:
    """One rung of the input-format ladder"""
    layout: TensorLayout = TensorLayout.CHW
    size: int = 1024
    normalization: Normalization = Normalization.SIMPLE
    resize_mode: ResizeMode = ResizeMode.LETTERBOX

    @property
    def dims(self) -> Tuple[int, int, int, int]:
        if self.layout == TensorLayout.CHW:
            return (1, 3, self.size, self.size)
        return (1, self.size, self.size, 3)

    def describe(self) -> str:
        return f"{self.layout.value}/{self.size}/{self.resize_mode.value}/{self.normalization.value}"


@dataclass(frozen=True)
class LetterboxInfo:
    """How a source image was placed on a square model canvas"""
    source_width: int
    source_height: int
    target_size: int
    scale_x: float
    scale_y: float
    offset_x: int
    offset_y: int
    scaled_width: int
    scaled_height: int
    resize_mode: ResizeMode = ResizeMode.LETTERBOX

    def to_target(self, x: float, y: float) -> Tuple[float, float]:
        """Source pixel -> model canvas pixel"""
        return (x * self.scale_x + self.offset_x, y * self.scale_y + self.offset_y)

    def to_source(self, x: float, y: float) -> Tuple[float, float]:
        """Model canvas pixel -> source pixel"""
        return ((x - self.offset_x) / self.scale_x, (y - self.offset_y) / self.scale_y)

    def content_window(self, mask_width: int, mask_height: int) -> Tuple[int, int, int, int]:
        """
        Region of a mask grid that corresponds to real image content.

        The model canvas is target_size square; the mask grid may have a
        different resolution, so the window is rescaled to mask cells.
        Returns (x, y, w, h) in mask cells, never empty.
        """
        sx = mask_width / self.target_size
        sy = mask_height / self.target_size

        x0 = int(np.floor(self.offset_x * sx))
        y0 = int(np.floor(self.offset_y * sy))
        x1 = int(np.ceil((self.offset_x + self.scaled_width) * sx))
        y1 = int(np.ceil((self.offset_y + self.scaled_height) * sy))

        x0 = max(0, min(x0, mask_width - 1))
        y0 = max(0, min(y0, mask_height - 1))
        x1 = max(x0 + 1, min(x1, mask_width))
        y1 = max(y0 + 1, min(y1, mask_height))

        return (x0, y0, x1 - x0, y1 - y0)


@dataclass
class Mask:
    """Per-pixel foreground likelihood, shape (height, width)"""
    values: np.ndarray

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=np.float32)
        if self.values.ndim != 2:
            raise ValueError(f"Mask must be 2D, got shape {self.values.shape}")

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    def coverage(self, threshold: float = 0.5) -> float:
        """Fraction of cells at or above threshold"""
        if self.values.size == 0:
            return 0.0
        return float(np.mean(self.values >= threshold))


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class LadderAttempt:
    """Outcome of one ladder rung"""
    spec: TensorSpec
    phase: str               # "validate" | "run" | "done"
    ok: bool
    error: Optional[str] = None


@dataclass
class SegmentationResult:
    mask: Mask
    backend_used: BackendKind
    backend_name: str
    input_layout_used: Optional[TensorLayout] = None
    input_size_used: Optional[int] = None
    attempts: List[LadderAttempt] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    processing_time_ms: int = 0
    generation: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "backend_used": self.backend_used.value,
            "backend_name": self.backend_name,
            "input_layout_used": self.input_layout_used.value if self.input_layout_used else None,
            "input_size_used": self.input_size_used,
            "attempts": [
                {"spec": a.spec.describe(), "phase": a.phase, "ok": a.ok, "error": a.error}
                for a in self.attempts
            ],
            "mask_width": self.mask.width,
            "mask_height": self.mask.height,
            "processing_time_ms": self.processing_time_ms,
            "generation": self.generation,
        }


@dataclass
class ProcessedImage:
    """RGBA output of a user action"""
    pixels: np.ndarray
    kind: str
    generation: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])
