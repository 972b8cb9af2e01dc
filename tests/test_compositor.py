"""
Tests for the Compositor

Run with:
    pytest tests/test_compositor.py -v
"""

import pytest
import numpy as np
import cv2
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from badgephoto.compositor import (
    apply_mask,
    circle_alpha,
    crop_and_scale_circle,
    crop_circle,
    crop_rect,
    decode_image,
    encode_png,
    remove_background_and_crop_round,
    round_crop_with_background,
    to_rgba,
)
from badgephoto.crop_geometry import compute_circle_crop, compute_rect_crop
from badgephoto.types import BoundingBox, CropRegion, CropShape, Mask
from tests.fakes import make_face_image


@pytest.fixture
def image():
    return make_face_image(800, 600)


@pytest.fixture
def face_box():
    return BoundingBox(origin_x=300, origin_y=150, width=120, height=160)


class TestApplyMask:
    """Mask -> alpha channel"""

    def test_threshold_and_soft_edge(self):
        image = np.full((1, 4, 3), 100, dtype=np.uint8)
        mask = Mask(np.array([[0.0, 0.49, 0.5, 1.0]], dtype=np.float32))

        out = apply_mask(image, mask)

        assert out.shape == (1, 4, 4)
        assert list(out[0, :, 3]) == [0, 0, 128, 255]
        assert (out[:, :, :3] == 100).all()

    def test_input_not_mutated(self, image):
        before = image.copy()
        apply_mask(image, Mask(np.zeros(image.shape[:2], dtype=np.float32)))
        np.testing.assert_array_equal(image, before)

    def test_existing_alpha_multiplied(self):
        rgba = np.full((1, 1, 4), 200, dtype=np.uint8)
        out = apply_mask(rgba, Mask(np.array([[0.5]], dtype=np.float32)))
        assert out[0, 0, 3] == 100

    def test_size_mismatch_rejected(self, image):
        with pytest.raises(ValueError):
            apply_mask(image, Mask(np.ones((10, 10), dtype=np.float32)))


class TestCrops:
    """Rect and circle crops"""

    def test_rect_crop_size(self, image, face_box):
        region = compute_rect_crop(face_box, 800, 600)
        out = crop_rect(image, region)
        assert out.shape == (216, 288, 4)
        assert (out[:, :, 3] == 255).all()

    def test_rect_crop_clamped_region(self, image):
        region = CropRegion(CropShape.RECT, x=-50, y=550, width=200, height=100)
        out = crop_rect(image, region)
        assert out.shape == (100, 200, 4)

    def test_circle_crop_transparent_corners(self, image, face_box):
        region = compute_circle_crop(face_box, 800, 600)
        out = crop_circle(image, region, ring=False)

        assert out.shape == (352, 352, 4)
        assert out[0, 0, 3] == 0
        assert out[-1, -1, 3] == 0
        assert out[176, 176, 3] == 255

    def test_circle_ring_is_white(self, image, face_box):
        region = compute_circle_crop(face_box, 800, 600)
        out = crop_circle(image, region, ring=True)

        # ring centered 2px inside the edge, on the horizontal axis
        pixel = out[176, 2]
        assert (pixel[:3] > 200).all()
        # face color untouched at the center
        assert tuple(out[176, 176, :3]) == (220, 180, 150)

    def test_circle_alpha_antialiased(self):
        disc = circle_alpha(64, 64)
        values = set(np.unique(disc).tolist())
        assert 0 in values and 255 in values
        assert len(values) > 2


class TestRoundActions:
    """Fixed-size round portraits"""

    def test_crop_and_scale_circle(self, image):
        region = CropRegion(CropShape.CIRCLE, x=100, y=100, width=300, height=300, radius=150)
        out = crop_and_scale_circle(image, region, output_size=400)
        assert out.shape == (400, 400, 4)
        assert out[0, 0, 3] == 0

    def test_round_with_background_keeps_pixels(self, image, face_box):
        out = round_crop_with_background(image, face_box)

        assert out.shape == (400, 400, 4)
        assert out[200, 200, 3] == 255
        # corners outside the circle are transparent
        assert out[0, 399, 3] == 0

    def test_remove_background_and_crop_round(self, image, face_box):
        mask_values = np.zeros((600, 800), dtype=np.float32)
        mask_values[150:310, 300:420] = 1.0

        out = remove_background_and_crop_round(image, Mask(mask_values), face_box)

        assert out.shape == (400, 400, 4)
        assert out[200, 200, 3] == 255
        # background inside the circle was removed
        assert out[200, 20, 3] == 0

    def test_near_edge_face_not_distorted(self, image):
        """Square stays square when the face sits in a corner"""
        box = BoundingBox(0, 0, 200, 200)
        mask = Mask(np.ones((600, 800), dtype=np.float32))
        out = remove_background_and_crop_round(image, mask, box, output_size=100)
        assert out.shape == (100, 100, 4)


class TestImageIO:
    """Decode / encode helpers"""

    def test_png_round_trip_keeps_alpha(self):
        rgba = np.zeros((8, 8, 4), dtype=np.uint8)
        rgba[:, :, 0] = 255
        rgba[:4, :, 3] = 255

        decoded = decode_image(encode_png(rgba))

        np.testing.assert_array_equal(decoded, rgba)

    def test_jpeg_decodes_to_rgb(self, image):
        ok, encoded = cv2.imencode(".jpg", cv2.cvtColor(image, cv2.COLOR_RGB2BGR))
        assert ok

        decoded = decode_image(encoded.tobytes())

        assert decoded.shape == (600, 800, 3)
        # blue background stays blue in RGB order
        assert decoded[5, 5, 2] > decoded[5, 5, 0]

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            decode_image(b"not an image at all")

    def test_to_rgba_from_gray(self):
        gray = np.full((3, 3), 7, dtype=np.uint8)
        out = to_rgba(gray)
        assert out.shape == (3, 3, 4)
        assert (out[:, :, 3] == 255).all()
