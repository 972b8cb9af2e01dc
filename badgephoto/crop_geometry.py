"""
Crop Geometry

Pure functions turning a detected face box into crop commands.

All crops are FACE-ANCHORED (centered on the box centroid) and
BOUNDARY-SAFE (never read outside the source bitmap). Sizes are derived
from face_size = max(box.width, box.height):

- Rectangular 4:3:     width = 1.8 * face_size, height = 0.75 * width
- Circular:            radius = 1.1 * face_size, clamped to the nearest edge
- Portrait square:     side = 2.5 * face_size (background removal + round)
                       side = 1.6 * face_size (round, background kept)
"""

from typing import Tuple

from .errors import InvalidGeometry
from .types import BoundingBox, CoordinateSpace, CropRegion, CropShape

# =============================================================================
# Configuration
# =============================================================================

RECT_PADDING_RATIO = 0.8         # 80% of face size added around the face
RECT_ASPECT = 0.75               # height / width (4:3)

CIRCLE_PADDING_RATIO = 1.2       # diameter = face_size + 120%

PORTRAIT_SQUARE_SCALE = 2.5      # combined background removal + round crop
BACKGROUND_SQUARE_SCALE = 1.6    # round crop keeping the background (30% margin each side)


def _validate_image_size(image_width: int, image_height: int):
    if image_width <= 0 or image_height <= 0:
        raise InvalidGeometry(f"Invalid image size {image_width}x{image_height}")


def normalize_box(
    box: BoundingBox,
    image_width: int,
    image_height: int,
    coordinate_space: CoordinateSpace = CoordinateSpace.PIXELS
) -> BoundingBox:
    """
    Return the box in source-image pixels.

    Args:
        box: Bounding box in pixels or normalized [0..1] coordinates
        image_width: Natural image width
        image_height: Natural image height
        coordinate_space: PIXELS, NORMALIZED, or AUTO. AUTO treats a box
            whose four values all lie in [0, 1] as normalized.

    Raises:
        InvalidGeometry: Empty box, or box whose centroid is outside the image
    """
    _validate_image_size(image_width, image_height)

    if coordinate_space == CoordinateSpace.AUTO:
        values = (box.origin_x, box.origin_y, box.width, box.height)
        is_normalized = all(0.0 <= v <= 1.0 for v in values) and (image_width > 1 or image_height > 1)
        coordinate_space = CoordinateSpace.NORMALIZED if is_normalized else CoordinateSpace.PIXELS

    if coordinate_space == CoordinateSpace.NORMALIZED:
        box = BoundingBox(
            origin_x=box.origin_x * image_width,
            origin_y=box.origin_y * image_height,
            width=box.width * image_width,
            height=box.height * image_height,
        )

    if box.width <= 0 or box.height <= 0:
        raise InvalidGeometry(f"Empty face box {box.width}x{box.height}")

    cx, cy = box.center
    if not (0 <= cx <= image_width and 0 <= cy <= image_height):
        raise InvalidGeometry(
            f"Face center ({cx:.1f}, {cy:.1f}) outside image {image_width}x{image_height}"
        )

    return box


def _clamp_origin(center: float, size: float, limit: float) -> float:
    """Top-left coordinate centered on `center`, clamped into [0, limit - size]"""
    origin = center - size / 2
    return max(0.0, min(origin, limit - size))


# =============================================================================
# Rectangular 4:3
# =============================================================================

def compute_rect_crop(
    box: BoundingBox,
    image_width: int,
    image_height: int,
    padding_ratio: float = RECT_PADDING_RATIO
) -> CropRegion:
    """
    Compute a 4:3 crop centered on the face.

    If the ideal crop is wider than the image it is shrunk to the image
    width; if it is then taller than the image it is shrunk to the image
    height. The ratio stays exactly 4:3 and the rectangle is finally
    translated to lie inside the image.

    Returns:
        CropRegion(shape=RECT) in source pixels
    """
    box = normalize_box(box, image_width, image_height)

    face_size = box.face_size
    crop_width = face_size + face_size * padding_ratio
    crop_height = crop_width * RECT_ASPECT

    if crop_width > image_width:
        crop_width = float(image_width)
        crop_height = crop_width * RECT_ASPECT
    if crop_height > image_height:
        crop_height = float(image_height)
        crop_width = crop_height / RECT_ASPECT

    cx, cy = box.center
    crop_x = _clamp_origin(cx, crop_width, image_width)
    crop_y = _clamp_origin(cy, crop_height, image_height)

    return CropRegion(
        shape=CropShape.RECT,
        x=crop_x,
        y=crop_y,
        width=crop_width,
        height=crop_height,
    )


# =============================================================================
# Circular
# =============================================================================

def max_inscribed_radius(center: Tuple[float, float], image_width: int, image_height: int) -> float:
    """Largest radius around `center` that keeps the whole circle inside the image"""
    cx, cy = center
    return max(0.0, min(cx, image_width - cx, cy, image_height - cy))


def compute_circle_crop(
    box: BoundingBox,
    image_width: int,
    image_height: int,
    padding_ratio: float = CIRCLE_PADDING_RATIO
) -> CropRegion:
    """
    Compute a circular crop centered on the face.

    radius = (face_size + padding_ratio * face_size) / 2, clamped to the
    distance from the face centroid to the nearest image edge.

    Returns:
        CropRegion(shape=CIRCLE); (x, y, width, height) is the enclosing square
    """
    box = normalize_box(box, image_width, image_height)

    face_size = box.face_size
    radius = (face_size + face_size * padding_ratio) / 2

    center = box.center
    radius = min(radius, max_inscribed_radius(center, image_width, image_height))
    if radius <= 0:
        raise InvalidGeometry(f"Face center {center} lies on the image edge, no room for a circle")

    side = radius * 2
    return CropRegion(
        shape=CropShape.CIRCLE,
        x=center[0] - radius,
        y=center[1] - radius,
        width=side,
        height=side,
        radius=radius,
    )


# =============================================================================
# Portrait square (scaled into a fixed output canvas)
# =============================================================================

def compute_portrait_square(
    box: BoundingBox,
    image_width: int,
    image_height: int,
    scale: float = PORTRAIT_SQUARE_SCALE
) -> CropRegion:
    """
    Square of side scale * face_size centered on the face.

    The side is clamped to the shorter image dimension and the square is
    translated inside the image, so scaling it into a square output never
    distorts the picture.

    Returns:
        CropRegion(shape=CIRCLE) whose radius is half the side
    """
    box = normalize_box(box, image_width, image_height)

    side = box.face_size * scale
    side = min(side, float(image_width), float(image_height))

    cx, cy = box.center
    x = _clamp_origin(cx, side, image_width)
    y = _clamp_origin(cy, side, image_height)

    return CropRegion(
        shape=CropShape.CIRCLE,
        x=x,
        y=y,
        width=side,
        height=side,
        radius=side / 2,
    )
