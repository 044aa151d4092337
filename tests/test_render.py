from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from digitscope.errors import AppError, ErrorCode
from digitscope.inference.types import Tensor
from digitscope.visualize.render import (
    GridCell,
    GridContainer,
    GridNotice,
    Surface,
    render_channel,
    render_grid,
)

_BG = (0x11, 0x11, 0x11, 255)


def _pixels(s: Surface) -> np.ndarray:
    assert s.image is not None
    return np.asarray(s.image)


def test_constant_channel_renders_uniform_black() -> None:
    t = Tensor.from_array(np.full((1, 2, 5, 6), 3.5, dtype=np.float32))
    s = Surface()
    render_channel(t, s, 1)
    px = _pixels(s)
    assert s.size == (6, 5)
    assert np.all(px[:, :, :3] == 0)
    assert np.all(px[:, :, 3] == 255)


def test_channel_min_max_maps_to_gray_range() -> None:
    data = np.zeros((1, 2, 2, 2), dtype=np.float32)
    data[0, 1] = [[-1.0, 0.0], [0.5, 1.0]]
    s = Surface()
    render_channel(Tensor.from_array(data), s, 1)
    px = _pixels(s)
    assert px[0, 0, 0] == 0
    assert px[0, 1, 0] == 127  # floor(0.5 * 255)
    assert px[1, 1, 0] == 255
    assert np.all(px[:, :, 0] == px[:, :, 1]) and np.all(px[:, :, 1] == px[:, :, 2])


def test_invalid_channel_keeps_previous_image() -> None:
    t = Tensor.from_array(np.arange(2 * 3 * 3, dtype=np.float32).reshape(1, 2, 3, 3))
    s = Surface()
    render_channel(t, s, 0)
    before = s.image
    with pytest.raises(AppError) as ei:
        render_channel(t, s, 2)
    assert ei.value.code is ErrorCode.invalid_channel_index
    with pytest.raises(AppError):
        render_channel(t, s, -1)
    assert s.image is before


def test_bar_chart_width_is_capped() -> None:
    t = Tensor.from_array(np.linspace(-1.0, 1.0, 300, dtype=np.float32).reshape(1, 300))
    s = Surface()
    render_channel(t, s)
    assert s.size == (256, 100)
    px = _pixels(s)
    # the minimum value draws no bar
    assert tuple(px[99, 0]) == _BG
    assert tuple(px[0, 0]) == _BG


def test_bar_chart_heights_and_colors() -> None:
    t = Tensor.from_array(np.array([[0.0, 0.5, 1.0]], dtype=np.float32))
    s = Surface()
    render_channel(t, s)
    assert s.size == (3, 100)
    px = _pixels(s)
    assert tuple(px[99, 1]) == (0, 255, 0, 255)
    assert tuple(px[50, 1]) == (0, 255, 0, 255)
    assert tuple(px[49, 1]) == _BG
    assert tuple(px[0, 2]) == (255, 0, 0, 255)
    assert tuple(px[99, 0]) == _BG


def test_constant_vector_draws_no_bars() -> None:
    t = Tensor.from_array(np.full((1, 8), 2.0, dtype=np.float32))
    s = Surface()
    render_channel(t, s)
    assert np.all(_pixels(s) == np.array(_BG, dtype=np.uint8))


def test_other_ranks_draw_nothing() -> None:
    s = Surface()
    render_channel(Tensor.from_array(np.ones((1, 3, 3), dtype=np.float32)), s)
    assert s.image is None
    with pytest.raises(ValueError):
        s.to_png()


def test_grid_caps_channels_and_adds_notice() -> None:
    t = Tensor.from_array(np.random.default_rng(0).random((1, 20, 4, 4), dtype=np.float32))
    c = GridContainer()
    render_grid(t, c, 16)
    assert len(c.cells) == 16
    assert [cell.label for cell in c.cells[:3]] == ["Ch 0", "Ch 1", "Ch 2"]
    assert all(cell.surface.size == (4, 4) for cell in c.cells)
    notice = c.notice
    assert notice is not None and notice.text == "+4 more channels" and notice.omitted == 4
    assert isinstance(c.items[-1], GridNotice)


def test_grid_without_notice_and_clears_previous() -> None:
    c = GridContainer()
    c.append(GridNotice(text="stale", omitted=1))
    t = Tensor.from_array(np.ones((1, 3, 2, 2), dtype=np.float32))
    render_grid(t, c)
    assert len(c.items) == 3 and c.notice is None
    assert all(isinstance(it, GridCell) for it in c.items)


def test_grid_for_vector_and_unsupported() -> None:
    c = GridContainer()
    render_grid(Tensor.from_array(np.arange(10, dtype=np.float32).reshape(1, 10)), c)
    assert len(c.cells) == 1 and c.cells[0].surface.size == (10, 100)
    render_grid(Tensor.from_array(np.ones((2, 2, 2), dtype=np.float32)), c)
    assert c.items == []
    with pytest.raises(ValueError):
        render_grid(Tensor.from_array(np.ones((1, 4), dtype=np.float32)), c, -1)


def test_surface_png_roundtrip() -> None:
    s = Surface()
    render_channel(Tensor.from_array(np.ones((1, 1, 3, 2), dtype=np.float32)), s)
    img = Image.open(io.BytesIO(s.to_png()))
    assert img.size == (2, 3) and img.mode == "RGBA"
