"""
Tensor Codec

Image -> model input tensor, and model output tensor -> alpha mask.

Encode:
1. Resize onto a square canvas (letterbox with mid-gray padding, or stretch)
2. Normalize (simple v/255 or ImageNet mean/std)
3. Lay out as planar CHW [1, 3, T, T] or interleaved HWC [1, T, T, 3]

Decode:
1. Recover mask height/width from the output rank (4, 3 or 2)
2. Detect logits by value range and apply a sigmoid
3. Nearest-neighbor resample the mask grid onto the source pixel grid,
   skipping the letterbox padding
"""

import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .errors import UnsupportedOutputShape
from .types import (
    LetterboxInfo,
    Mask,
    Normalization,
    ResizeMode,
    Tensor,
    TensorLayout,
    TensorSpec,
)

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

PAD_GRAY = 128  # #808080, 0.5 after simple normalization

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], dtype=np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], dtype=np.float32)

PRIMARY_SIZE = 1024
FALLBACK_SIZE = 512


def build_ladder(
    primary_size: int = PRIMARY_SIZE,
    fallback_size: int = FALLBACK_SIZE,
    normalization: Normalization = Normalization.SIMPLE
) -> List[TensorSpec]:
    """
    Ordered input-format candidates for a model with unknown input layout.

    1. CHW at the primary size, letterboxed
    2. HWC at the primary size, letterboxed
    3. CHW at the reduced size, stretched (last resort)
    """
    return [
        TensorSpec(TensorLayout.CHW, primary_size, normalization, ResizeMode.LETTERBOX),
        TensorSpec(TensorLayout.HWC, primary_size, normalization, ResizeMode.LETTERBOX),
        TensorSpec(TensorLayout.CHW, fallback_size, normalization, ResizeMode.STRETCH),
    ]


DEFAULT_LADDER = build_ladder()


# =============================================================================
# Resize
# =============================================================================

def _to_rgb(image: np.ndarray) -> np.ndarray:
    """
    RGB uint8 view of an image; RGBA is flattened over the pad gray so
    transparent pixels look like padding to the model.
    """
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGB)

    channels = image.shape[2]
    if channels == 3:
        return image
    if channels == 4:
        rgb = image[:, :, :3].astype(np.float32)
        alpha = image[:, :, 3:4].astype(np.float32) / 255.0
        flat = rgb * alpha + PAD_GRAY * (1.0 - alpha)
        return np.clip(np.round(flat), 0, 255).astype(np.uint8)

    raise ValueError(f"Unsupported channel count: {channels}")


def letterbox(image: np.ndarray, target_size: int) -> Tuple[np.ndarray, LetterboxInfo]:
    """
    Fit the image inside a target_size square, preserving aspect ratio.

    Args:
        image: (H, W, 3|4) uint8
        target_size: Side of the square canvas

    Returns:
        (canvas RGB uint8 (T, T, 3), LetterboxInfo)
    """
    rgb = _to_rgb(image)
    src_h, src_w = rgb.shape[:2]
    if src_w <= 0 or src_h <= 0:
        raise ValueError(f"Cannot letterbox an empty image ({src_w}x{src_h})")

    scale = min(target_size / src_w, target_size / src_h)
    scaled_w = max(1, min(target_size, int(round(src_w * scale))))
    scaled_h = max(1, min(target_size, int(round(src_h * scale))))
    offset_x = (target_size - scaled_w) // 2
    offset_y = (target_size - scaled_h) // 2

    resized = cv2.resize(rgb, (scaled_w, scaled_h), interpolation=cv2.INTER_LINEAR)

    canvas = np.full((target_size, target_size, 3), PAD_GRAY, dtype=np.uint8)
    canvas[offset_y:offset_y + scaled_h, offset_x:offset_x + scaled_w] = resized

    info = LetterboxInfo(
        source_width=src_w,
        source_height=src_h,
        target_size=target_size,
        scale_x=scaled_w / src_w,
        scale_y=scaled_h / src_h,
        offset_x=offset_x,
        offset_y=offset_y,
        scaled_width=scaled_w,
        scaled_height=scaled_h,
        resize_mode=ResizeMode.LETTERBOX,
    )
    return canvas, info


def stretch(image: np.ndarray, target_size: int) -> Tuple[np.ndarray, LetterboxInfo]:
    """Direct resize to target_size square, no padding"""
    rgb = _to_rgb(image)
    src_h, src_w = rgb.shape[:2]
    if src_w <= 0 or src_h <= 0:
        raise ValueError(f"Cannot resize an empty image ({src_w}x{src_h})")

    resized = cv2.resize(rgb, (target_size, target_size), interpolation=cv2.INTER_LINEAR)

    info = LetterboxInfo(
        source_width=src_w,
        source_height=src_h,
        target_size=target_size,
        scale_x=target_size / src_w,
        scale_y=target_size / src_h,
        offset_x=0,
        offset_y=0,
        scaled_width=target_size,
        scaled_height=target_size,
        resize_mode=ResizeMode.STRETCH,
    )
    return resized, info


# =============================================================================
# Normalize / layout
# =============================================================================

def normalize(pixels: np.ndarray, scheme: Normalization = Normalization.SIMPLE) -> np.ndarray:
    """
    Per-channel normalization of an RGB uint8 array.

    Returns:
        float32 array with the same shape
    """
    values = pixels.astype(np.float32) / 255.0
    if scheme == Normalization.IMAGENET:
        values = (values - IMAGENET_MEAN) / IMAGENET_STD
    return values.astype(np.float32)


def to_layout(values_hwc: np.ndarray, layout: TensorLayout) -> Tensor:
    """Interleaved (H, W, 3) float array -> batched tensor in the requested layout"""
    if values_hwc.ndim != 3 or values_hwc.shape[2] != 3:
        raise ValueError(f"Expected (H, W, 3) array, got {values_hwc.shape}")

    if layout == TensorLayout.CHW:
        batched = np.ascontiguousarray(values_hwc.transpose(2, 0, 1))[np.newaxis]
    else:
        batched = np.ascontiguousarray(values_hwc)[np.newaxis]

    return Tensor.from_array(batched, layout=layout)


def encode_image(image: np.ndarray, spec: TensorSpec) -> Tuple[Tensor, LetterboxInfo]:
    """
    Full encode for one ladder rung.

    Returns:
        (Tensor with spec.dims, LetterboxInfo for mapping the mask back)
    """
    if spec.resize_mode == ResizeMode.LETTERBOX:
        canvas, info = letterbox(image, spec.size)
    else:
        canvas, info = stretch(image, spec.size)

    tensor = to_layout(normalize(canvas, spec.normalization), spec.layout)
    return tensor, info


def placeholder_tensor(spec: TensorSpec) -> Tensor:
    """Zero tensor with the spec's shape, used for validation inference"""
    return Tensor(data=np.zeros(int(np.prod(spec.dims)), dtype=np.float32), dims=spec.dims, layout=spec.layout)


# =============================================================================
# Decode
# =============================================================================

def _sigmoid(x: np.ndarray) -> np.ndarray:
    # clip keeps exp() finite in float32
    x = np.clip(x.astype(np.float64), -60.0, 60.0)
    return (1.0 / (1.0 + np.exp(-x))).astype(np.float32)


def looks_like_logits(values: np.ndarray) -> bool:
    """
    True when any value falls outside [0, 1].

    Approximation: the model does not report whether it emits
    probabilities or logits.
    """
    if values.size == 0:
        return False
    return bool(values.min() < 0.0 or values.max() > 1.0)


def mask_grid(tensor: Tensor) -> np.ndarray:
    """
    (h, w) grid of the first batch / first channel.

    Accepted shapes:
        rank 4: [batch, channels, h, w] (or [batch, h, w, 1])
        rank 3: [batch, h, w]
        rank 2: [h, w]

    Raises:
        UnsupportedOutputShape: Any other rank
    """
    dims = tensor.dims
    array = tensor.as_array()

    if len(dims) == 4:
        if dims[3] == 1 and dims[1] != 1:
            return array[0, :, :, 0]
        return array[0, 0]
    if len(dims) == 3:
        return array[0]
    if len(dims) == 2:
        return array

    raise UnsupportedOutputShape(dims)


def mask_from_tensor(tensor: Tensor, logits: Optional[bool] = None) -> Mask:
    """
    Decode a model output into a [0..1] mask in mask-grid resolution.

    Args:
        tensor: Raw output tensor
        logits: None to detect logits by range, True/False when the model's
            output type is known

    Raises:
        UnsupportedOutputShape: Output rank not in (2, 3, 4)
    """
    grid = np.array(mask_grid(tensor), dtype=np.float32)

    apply_sigmoid = looks_like_logits(grid) if logits is None else logits
    if apply_sigmoid:
        grid = _sigmoid(grid)

    logger.debug(
        "[DECODE] dims=%s sigmoid=%s range=[%.3f, %.3f]",
        list(tensor.dims), apply_sigmoid,
        float(grid.min()) if grid.size else 0.0,
        float(grid.max()) if grid.size else 0.0,
    )
    return Mask(grid)


def resample_indices(dst_size: int, window_start: int, window_size: int, mask_size: int) -> np.ndarray:
    """
    Nearest-neighbor source index for each destination pixel:
    index = window_start + floor(p * window_size / dst_size), clamped to mask_size - 1
    """
    positions = np.arange(dst_size, dtype=np.int64)
    offsets = (positions * window_size) // max(1, dst_size)
    offsets = np.minimum(offsets, window_size - 1)
    return np.clip(window_start + offsets, 0, mask_size - 1)


def resample_mask(
    mask: Mask,
    width: int,
    height: int,
    window: Optional[Tuple[int, int, int, int]] = None
) -> Mask:
    """
    Map a mask grid onto a width x height pixel grid.

    Args:
        mask: Mask in grid resolution
        width: Destination width (source image pixels)
        height: Destination height
        window: (x, y, w, h) region of the grid holding real image content;
            defaults to the whole grid

    Returns:
        Mask with shape (height, width)
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid destination size {width}x{height}")
    if mask.width == 0 or mask.height == 0:
        raise ValueError("Cannot resample an empty mask")

    wx, wy, ww, wh = window if window is not None else (0, 0, mask.width, mask.height)

    xs = resample_indices(width, wx, ww, mask.width)
    ys = resample_indices(height, wy, wh, mask.height)

    return Mask(mask.values[ys[:, np.newaxis], xs[np.newaxis, :]])


def decode_to_pixels(
    tensor: Tensor,
    info: LetterboxInfo,
    logits: Optional[bool] = None
) -> Mask:
    """Decode an output tensor and map it onto the source image grid described by `info`"""
    grid = mask_from_tensor(tensor, logits=logits)
    window = info.content_window(grid.width, grid.height)
    return resample_mask(grid, info.source_width, info.source_height, window=window)
