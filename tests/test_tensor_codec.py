"""
Tests for Tensor Codec

Run with:
    pytest tests/test_tensor_codec.py -v
"""

import pytest
import numpy as np
import os
import sys

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from badgephoto.errors import UnsupportedOutputShape
from badgephoto.tensor_codec import (
    build_ladder,
    decode_to_pixels,
    encode_image,
    letterbox,
    looks_like_logits,
    mask_from_tensor,
    mask_grid,
    normalize,
    placeholder_tensor,
    resample_indices,
    resample_mask,
    stretch,
    IMAGENET_MEAN,
    IMAGENET_STD,
    PAD_GRAY,
)
from badgephoto.types import (
    Mask,
    Normalization,
    ResizeMode,
    Tensor,
    TensorLayout,
    TensorSpec,
)


@pytest.fixture
def landscape_image():
    """800x600 RGB with a gradient so resizes are not trivially uniform"""
    xs = np.linspace(0, 255, 800, dtype=np.float32)
    image = np.zeros((600, 800, 3), dtype=np.uint8)
    image[:, :, 0] = xs[np.newaxis, :].astype(np.uint8)
    image[:, :, 1] = 90
    image[:, :, 2] = 200
    return image


class TestLadder:
    """Input-format candidate ordering"""

    def test_default_order(self):
        ladder = build_ladder()
        assert [(s.layout, s.size, s.resize_mode) for s in ladder] == [
            (TensorLayout.CHW, 1024, ResizeMode.LETTERBOX),
            (TensorLayout.HWC, 1024, ResizeMode.LETTERBOX),
            (TensorLayout.CHW, 512, ResizeMode.STRETCH),
        ]

    def test_spec_dims(self):
        assert TensorSpec(TensorLayout.CHW, 64).dims == (1, 3, 64, 64)
        assert TensorSpec(TensorLayout.HWC, 64).dims == (1, 64, 64, 3)

    def test_placeholder_is_zeros_with_spec_shape(self):
        tensor = placeholder_tensor(TensorSpec(TensorLayout.HWC, 32))
        assert tensor.dims == (1, 32, 32, 3)
        assert not tensor.data.any()


class TestLetterbox:
    """Aspect-preserving resize with gray padding"""

    def test_landscape_metadata(self, landscape_image):
        canvas, info = letterbox(landscape_image, 64)

        assert canvas.shape == (64, 64, 3)
        assert (info.scaled_width, info.scaled_height) == (64, 48)
        assert (info.offset_x, info.offset_y) == (0, 8)
        assert info.scale_x == pytest.approx(0.08)

    def test_padding_is_mid_gray(self, landscape_image):
        canvas, info = letterbox(landscape_image, 64)
        assert (canvas[:info.offset_y] == PAD_GRAY).all()
        assert (canvas[info.offset_y + info.scaled_height:] == PAD_GRAY).all()

    def test_portrait_padding_is_horizontal(self):
        image = np.full((400, 200, 3), 10, dtype=np.uint8)
        canvas, info = letterbox(image, 100)
        assert (info.scaled_width, info.scaled_height) == (50, 100)
        assert info.offset_x == 25
        assert (canvas[:, :25] == PAD_GRAY).all()

    def test_coordinate_round_trip(self, landscape_image):
        _, info = letterbox(landscape_image, 64)
        for point in [(0, 0), (399.5, 300), (799, 599)]:
            assert info.to_source(*info.to_target(*point)) == pytest.approx(point)

    def test_transparent_pixels_flattened_to_pad_gray(self):
        rgba = np.zeros((10, 10, 4), dtype=np.uint8)
        rgba[:, :, :3] = 255
        canvas, _ = letterbox(rgba, 10)
        assert (canvas == PAD_GRAY).all()

    def test_stretch_fills_canvas(self, landscape_image):
        canvas, info = stretch(landscape_image, 32)
        assert canvas.shape == (32, 32, 3)
        assert info.resize_mode == ResizeMode.STRETCH
        assert (info.offset_x, info.offset_y) == (0, 0)


class TestEncode:
    """Normalization and layout"""

    def test_simple_normalization(self):
        pixels = np.array([[[0, 128, 255]]], dtype=np.uint8)
        values = normalize(pixels, Normalization.SIMPLE)
        assert values[0, 0] == pytest.approx([0.0, 128 / 255, 1.0])

    def test_imagenet_normalization(self):
        pixels = np.full((1, 1, 3), 255, dtype=np.uint8)
        values = normalize(pixels, Normalization.IMAGENET)
        assert values[0, 0] == pytest.approx((1.0 - IMAGENET_MEAN) / IMAGENET_STD, rel=1e-5)

    def test_chw_layout(self, landscape_image):
        tensor, _ = encode_image(landscape_image, TensorSpec(TensorLayout.CHW, 64))
        array = tensor.as_array()

        assert tensor.dims == (1, 3, 64, 64)
        assert tensor.layout == TensorLayout.CHW
        # blue channel plane is constant inside the content area
        assert array[0, 2, 30, 30] == pytest.approx(200 / 255, abs=1e-3)
        # padding row
        assert array[0, 1, 0, 0] == pytest.approx(PAD_GRAY / 255)

    def test_hwc_layout_matches_chw(self, landscape_image):
        chw, _ = encode_image(landscape_image, TensorSpec(TensorLayout.CHW, 64))
        hwc, _ = encode_image(landscape_image, TensorSpec(TensorLayout.HWC, 64))

        assert hwc.dims == (1, 64, 64, 3)
        np.testing.assert_allclose(hwc.as_array()[0], chw.as_array()[0].transpose(1, 2, 0))

    def test_tensor_length_must_match_dims(self):
        with pytest.raises(ValueError):
            Tensor(data=np.zeros(10, dtype=np.float32), dims=(1, 3, 2, 2))


class TestDecode:
    """Output tensor -> mask"""

    def test_sigmoid_not_applied_in_range(self):
        values = np.array([[0.0, 0.25], [0.75, 1.0]], dtype=np.float32)
        mask = mask_from_tensor(Tensor.from_array(values[np.newaxis, np.newaxis]))
        np.testing.assert_allclose(mask.values, values)

    def test_sigmoid_applied_out_of_range(self):
        values = np.linspace(-8, 8, 16, dtype=np.float32).reshape(1, 4, 4)
        mask = mask_from_tensor(Tensor.from_array(values))

        assert looks_like_logits(values)
        assert (mask.values > 0).all() and (mask.values < 1).all()
        assert mask.values[0, 0] < 0.01
        assert mask.values[3, 3] > 0.99

    def test_known_logits_override(self):
        values = np.zeros((1, 1, 2, 2), dtype=np.float32)
        mask = mask_from_tensor(Tensor.from_array(values), logits=True)
        np.testing.assert_allclose(mask.values, 0.5)

    def test_extreme_logits_stay_finite(self):
        values = np.array([[-1e4, 1e4]], dtype=np.float32)
        mask = mask_from_tensor(Tensor.from_array(values))
        assert np.isfinite(mask.values).all()

    @pytest.mark.parametrize("shape,expected", [
        ((1, 1, 3, 5), (3, 5)),
        ((1, 3, 5, 1), (3, 5)),
        ((1, 3, 5), (3, 5)),
        ((3, 5), (3, 5)),
    ])
    def test_supported_ranks(self, shape, expected):
        tensor = Tensor.from_array(np.zeros(shape, dtype=np.float32))
        assert mask_grid(tensor).shape == expected

    @pytest.mark.parametrize("shape", [(1, 1, 1, 4, 4), (16,)])
    def test_unsupported_rank(self, shape):
        with pytest.raises(UnsupportedOutputShape):
            mask_grid(Tensor.from_array(np.zeros(shape, dtype=np.float32)))


class TestResample:
    """Nearest-neighbor mapping back to source pixels"""

    @pytest.mark.parametrize("dst,start,window,size", [
        (800, 0, 64, 64),
        (7, 0, 1024, 1024),
        (1000, 3, 5, 8),
        (1, 0, 512, 512),
        (333, 10, 44, 64),
    ])
    def test_indices_in_bounds(self, dst, start, window, size):
        indices = resample_indices(dst, start, window, size)
        assert len(indices) == dst
        assert indices.min() >= 0
        assert indices.max() <= size - 1
        assert (np.diff(indices) >= 0).all()

    def test_resample_shape(self):
        mask = Mask(np.eye(4, dtype=np.float32))
        out = resample_mask(mask, 10, 6)
        assert (out.height, out.width) == (6, 10)

    def test_letterbox_padding_skipped(self, landscape_image):
        """Mask that is 1 on content and 0 on padding decodes to all-foreground"""
        _, info = letterbox(landscape_image, 64)
        grid = np.zeros((64, 64), dtype=np.float32)
        grid[info.offset_y:info.offset_y + info.scaled_height, :] = 1.0

        mask = decode_to_pixels(Tensor.from_array(grid[np.newaxis, np.newaxis]), info)

        assert (mask.height, mask.width) == (600, 800)
        assert (mask.values == 1.0).all()

    def test_round_trip_within_one_cell(self, landscape_image):
        """Step at canvas column 32 lands at source column 400"""
        _, info = letterbox(landscape_image, 64)
        grid = np.zeros((64, 64), dtype=np.float32)
        grid[:, 32:] = 1.0

        mask = decode_to_pixels(Tensor.from_array(grid[np.newaxis, np.newaxis]), info)
        edge = int(np.argmax(mask.values[300] > 0.5))
        cell = 800 / 64

        assert abs(edge - info.to_source(32, 0)[0]) <= cell

    def test_mask_grid_smaller_than_canvas(self, landscape_image):
        """Model output at half the input resolution still maps onto content"""
        _, info = letterbox(landscape_image, 64)
        grid = np.zeros((32, 32), dtype=np.float32)
        grid[4:28, :] = 1.0

        mask = decode_to_pixels(Tensor.from_array(grid[np.newaxis]), info)
        assert (mask.values == 1.0).all()
