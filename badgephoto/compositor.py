"""
Compositor

Applies masks and crop regions to RGBA images.

Inputs and outputs are numpy uint8 arrays; nothing here mutates its input.
Circle clips are anti-aliased; the optional ring is white, 4px wide,
drawn at radius - 2 so it stays inside the clip.
"""

import logging
from typing import Tuple

import cv2
import numpy as np

from .crop_geometry import BACKGROUND_SQUARE_SCALE, PORTRAIT_SQUARE_SCALE, compute_portrait_square
from .types import BoundingBox, CropRegion, Mask

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_SIZE = 400
MASK_THRESHOLD = 0.5

RING_COLOR = (255, 255, 255, 255)
RING_WIDTH = 4
RING_INSET = 2

# Sub-pixel precision for cv2 circle drawing (coordinates scaled by 2**SHIFT)
_SHIFT = 4


# =============================================================================
# Image I/O
# =============================================================================

def decode_image(content: bytes) -> np.ndarray:
    """
    Decode image bytes into an RGB or RGBA uint8 array.

    Images with an alpha channel keep it; everything else is decoded with
    EXIF orientation applied.

    Raises:
        ValueError: Bytes are not a decodable image
    """
    buffer = np.frombuffer(content, dtype=np.uint8)

    unchanged = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if unchanged is None:
        raise ValueError("Could not decode image")

    if unchanged.ndim == 3 and unchanged.shape[2] == 4:
        if unchanged.dtype != np.uint8:
            unchanged = (unchanged / 257).astype(np.uint8)
        return cv2.cvtColor(unchanged, cv2.COLOR_BGRA2RGBA)

    bgr = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if bgr is None:
        raise ValueError("Could not decode image")
    return cv2.cvtColor(bgr, cv2.COLOR_BGR2RGB)


def encode_png(pixels: np.ndarray) -> bytes:
    """RGBA / RGB array -> PNG bytes"""
    if pixels.ndim == 3 and pixels.shape[2] == 4:
        bgr = cv2.cvtColor(pixels, cv2.COLOR_RGBA2BGRA)
    elif pixels.ndim == 3:
        bgr = cv2.cvtColor(pixels, cv2.COLOR_RGB2BGR)
    else:
        bgr = pixels

    ok, encoded = cv2.imencode(".png", bgr)
    if not ok:
        raise ValueError("PNG encoding failed")
    return encoded.tobytes()


def to_rgba(image: np.ndarray) -> np.ndarray:
    """Copy of a gray, RGB or RGBA image as RGBA"""
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2RGBA)
    if image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2RGBA)
    if image.shape[2] == 4:
        return image.copy()
    raise ValueError(f"Unsupported channel count: {image.shape[2]}")


# =============================================================================
# Mask
# =============================================================================

def apply_mask(image: np.ndarray, mask: Mask, threshold: float = MASK_THRESHOLD) -> np.ndarray:
    """
    Write the mask into the alpha channel.

    alpha = 0 where mask < threshold, otherwise alpha * mask (soft edge).

    Args:
        image: (H, W, 3|4) uint8
        mask: Mask with the same (H, W) as the image

    Returns:
        New RGBA array
    """
    rgba = to_rgba(image)
    height, width = rgba.shape[:2]
    if mask.width != width or mask.height != height:
        raise ValueError(
            f"Mask size {mask.width}x{mask.height} does not match image {width}x{height}"
        )

    values = mask.values
    alpha = rgba[:, :, 3].astype(np.float32)
    alpha = np.where(values < threshold, 0.0, alpha * values)
    rgba[:, :, 3] = np.clip(np.round(alpha), 0, 255).astype(np.uint8)
    return rgba


# =============================================================================
# Crops
# =============================================================================

def _crop_box(image: np.ndarray, region: CropRegion) -> np.ndarray:
    height, width = image.shape[:2]
    x, y, w, h = region.to_pixel_box(width, height)
    return image[y:y + h, x:x + w].copy()


def crop_rect(image: np.ndarray, region: CropRegion) -> np.ndarray:
    """Rectangular crop as RGBA"""
    return to_rgba(_crop_box(image, region))


def circle_alpha(width: int, height: int, radius: float = None) -> np.ndarray:
    """
    Anti-aliased disc coverage (0..255) centered in a width x height canvas.
    """
    if radius is None:
        radius = min(width, height) / 2
    scale = 1 << _SHIFT
    center = (int(round(width / 2 * scale)), int(round(height / 2 * scale)))

    disc = np.zeros((height, width), dtype=np.uint8)
    cv2.circle(disc, center, int(round(radius * scale)), 255, -1, cv2.LINE_AA, _SHIFT)
    return disc


def clip_circle(rgba: np.ndarray, radius: float = None) -> np.ndarray:
    """Multiply alpha by a centered disc"""
    height, width = rgba.shape[:2]
    disc = circle_alpha(width, height, radius).astype(np.float32) / 255.0

    out = rgba.copy()
    out[:, :, 3] = np.clip(np.round(out[:, :, 3].astype(np.float32) * disc), 0, 255).astype(np.uint8)
    return out


def draw_ring(rgba: np.ndarray, radius: float = None) -> np.ndarray:
    """White ring just inside the circle edge"""
    height, width = rgba.shape[:2]
    if radius is None:
        radius = min(width, height) / 2

    ring_radius = radius - RING_INSET
    if ring_radius <= 0:
        return rgba

    scale = 1 << _SHIFT
    center = (int(round(width / 2 * scale)), int(round(height / 2 * scale)))

    out = rgba.copy()
    cv2.circle(out, center, int(round(ring_radius * scale)), RING_COLOR, RING_WIDTH, cv2.LINE_AA, _SHIFT)
    return out


def crop_circle(image: np.ndarray, region: CropRegion, ring: bool = True) -> np.ndarray:
    """
    Square crop around the circle, clipped to the disc.

    Returns:
        RGBA array, transparent outside the circle
    """
    square = crop_rect(image, region)
    out = clip_circle(square)
    if ring:
        out = draw_ring(out)
    return out


def _resize_square(rgba: np.ndarray, output_size: int) -> np.ndarray:
    height, width = rgba.shape[:2]
    interpolation = cv2.INTER_AREA if max(width, height) > output_size else cv2.INTER_LINEAR
    return cv2.resize(rgba, (output_size, output_size), interpolation=interpolation)


def crop_and_scale_circle(
    image: np.ndarray,
    region: CropRegion,
    output_size: int = DEFAULT_OUTPUT_SIZE
) -> np.ndarray:
    """Crop the region, scale it to output_size square, clip to the inscribed circle"""
    square = crop_rect(image, region)
    scaled = _resize_square(square, output_size)
    return clip_circle(scaled)


# =============================================================================
# Composite actions
# =============================================================================

def _image_size(image: np.ndarray) -> Tuple[int, int]:
    return int(image.shape[1]), int(image.shape[0])


def remove_background_and_crop_round(
    image: np.ndarray,
    mask: Mask,
    box: BoundingBox,
    output_size: int = DEFAULT_OUTPUT_SIZE
) -> np.ndarray:
    """
    Background removal followed by a round portrait crop.

    The mask is applied in source-pixel space before any crop so mask and
    image never disagree about coordinates.
    """
    width, height = _image_size(image)
    cutout = apply_mask(image, mask)
    region = compute_portrait_square(box, width, height, scale=PORTRAIT_SQUARE_SCALE)
    return crop_and_scale_circle(cutout, region, output_size)


def round_crop_with_background(
    image: np.ndarray,
    box: BoundingBox,
    output_size: int = DEFAULT_OUTPUT_SIZE
) -> np.ndarray:
    """Round portrait crop keeping the original background"""
    width, height = _image_size(image)
    region = compute_portrait_square(box, width, height, scale=BACKGROUND_SQUARE_SCALE)
    return crop_and_scale_circle(image, region, output_size)
