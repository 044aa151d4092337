from __future__ import annotations

import numpy as np
import pytest
from PIL import Image

from _fakes import canvas, png_bytes
from digitscope.errors import AppError, ErrorCode
from digitscope.inference.types import INPUT_DIMS
from digitscope.preprocess import canvas_to_tensor, decode_canvas_png


def test_canvas_to_tensor_shape_and_range() -> None:
    t = canvas_to_tensor(canvas())
    assert t.dims == INPUT_DIMS
    assert t.data.size == 784
    assert float(t.data.min()) >= 0.0 and float(t.data.max()) <= 1.0
    assert float(t.data.max()) == 1.0


def test_blank_canvas_is_all_zeros() -> None:
    t = canvas_to_tensor(canvas(draw_stroke=False))
    assert not np.any(t.data)


def test_transparent_regions_read_as_zero() -> None:
    img = Image.new("RGBA", (56, 56), (255, 255, 255, 0))
    t = canvas_to_tensor(img)
    assert not np.any(t.data)


def test_nearest_neighbor_keeps_hard_edges() -> None:
    img = Image.new("RGBA", (280, 280), (0, 0, 0, 255))
    img.paste((255, 255, 255, 255), (0, 0, 140, 280))
    grid = canvas_to_tensor(img).as_array()[0, 0]
    assert set(np.unique(grid).tolist()) == {0.0, 1.0}
    assert np.all(grid[:, :14] == 1.0)
    assert not np.any(grid[:, 14:])


def test_only_red_channel_is_used() -> None:
    red = canvas_to_tensor(Image.new("RGB", (28, 28), (255, 0, 0)))
    green = canvas_to_tensor(Image.new("RGB", (28, 28), (0, 255, 0)))
    assert np.all(red.data == 1.0)
    assert not np.any(green.data)


def test_grayscale_surface_is_accepted() -> None:
    t = canvas_to_tensor(Image.new("L", (100, 60), 128))
    assert abs(float(t.data[0]) - 128.0 / 255.0) < 1e-6


def test_zero_sized_surface_is_unavailable() -> None:
    with pytest.raises(AppError) as ei:
        canvas_to_tensor(Image.new("RGBA", (0, 10)))
    assert ei.value.code is ErrorCode.surface_unavailable
    assert ei.value.http_status == 400


def test_decode_canvas_png_roundtrip_and_invalid() -> None:
    img = decode_canvas_png(png_bytes(canvas(64)))
    assert img.size == (64, 64)
    with pytest.raises(AppError) as ei:
        decode_canvas_png(b"not an image")
    assert ei.value.code is ErrorCode.invalid_image


def test_decode_canvas_png_truncated() -> None:
    raw = png_bytes(canvas(64))
    with pytest.raises(AppError) as ei:
        decode_canvas_png(raw[: len(raw) // 2])
    assert ei.value.code is ErrorCode.invalid_image
