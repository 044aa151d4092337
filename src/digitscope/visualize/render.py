from __future__ import annotations

import colorsys
import io
import logging
from dataclasses import dataclass
from typing import Final

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageDraw

from ..errors import ErrorCode, app_error
from ..inference.types import Tensor
from ..logging import log_event
from .shapes import FeatureMap, FeatureVector, activation_shape, dimensions_of

BAR_CHART_MAX_WIDTH: Final[int] = 256
BAR_CHART_HEIGHT: Final[int] = 100
_BAR_BACKGROUND: Final[tuple[int, int, int, int]] = (0x11, 0x11, 0x11, 255)


class Surface:
    """Render target holding the last image drawn into it (None before the first draw)."""

    def __init__(self) -> None:
        self.image: Image.Image | None = None

    @property
    def size(self) -> tuple[int, int]:
        return self.image.size if self.image is not None else (0, 0)

    def resize(
        self, width: int, height: int, fill: tuple[int, int, int, int] = (0, 0, 0, 0)
    ) -> Image.Image:
        # Like a canvas, resizing discards whatever was drawn before
        self.image = Image.new("RGBA", (width, height), fill)
        return self.image

    def to_png(self) -> bytes:
        if self.image is None:
            raise ValueError("surface has not been drawn")
        buf = io.BytesIO()
        self.image.save(buf, format="PNG")
        return buf.getvalue()


@dataclass(frozen=True)
class GridCell:
    channel: int
    label: str
    surface: Surface


@dataclass(frozen=True)
class GridNotice:
    text: str
    omitted: int


class GridContainer:
    def __init__(self) -> None:
        self.items: list[GridCell | GridNotice] = []

    def clear(self) -> None:
        self.items.clear()

    def append(self, item: GridCell | GridNotice) -> None:
        self.items.append(item)

    @property
    def cells(self) -> list[GridCell]:
        return [it for it in self.items if isinstance(it, GridCell)]

    @property
    def notice(self) -> GridNotice | None:
        for it in self.items:
            if isinstance(it, GridNotice):
                return it
        return None


def render_channel(
    tensor: Tensor,
    target: Surface,
    channel_index: int = 0,
    *,
    bar_max_width: int = BAR_CHART_MAX_WIDTH,
    bar_height: int = BAR_CHART_HEIGHT,
) -> None:
    """Draw one channel of an activation into `target`.

    Feature maps render one grayscale pixel per value; feature vectors render
    as a bar chart. An out-of-range channel raises before `target` is touched,
    so whatever it showed before stays in place. Other ranks draw nothing.
    """
    shape = activation_shape(tensor)
    if isinstance(shape, FeatureMap):
        _render_feature_map(tensor, shape, target, channel_index)
    elif isinstance(shape, FeatureVector):
        _render_bar_chart(tensor, shape, target, bar_max_width, bar_height)


def render_grid(
    tensor: Tensor,
    container: GridContainer,
    max_channels: int = 16,
    *,
    bar_max_width: int = BAR_CHART_MAX_WIDTH,
    bar_height: int = BAR_CHART_HEIGHT,
) -> None:
    if max_channels < 0:
        raise ValueError("max_channels must be >= 0")
    container.clear()
    channels = dimensions_of(tensor).channels
    for c in range(min(channels, max_channels)):
        surface = Surface()
        render_channel(tensor, surface, c, bar_max_width=bar_max_width, bar_height=bar_height)
        container.append(GridCell(channel=c, label=f"Ch {c}", surface=surface))
    if channels > max_channels:
        omitted = channels - max_channels
        container.append(GridNotice(text=f"+{omitted} more channels", omitted=omitted))


def _render_feature_map(
    tensor: Tensor, shape: FeatureMap, target: Surface, channel_index: int
) -> None:
    if not 0 <= channel_index < shape.channels:
        log_event(
            "invalid_channel_index",
            {"channel": channel_index, "channels": shape.channels},
            level=logging.WARNING,
        )
        raise app_error(
            ErrorCode.invalid_channel_index,
            f"Invalid channel index {channel_index}, max is {shape.channels - 1}",
        )
    img = target.resize(shape.width, shape.height)
    if shape.plane == 0:
        return
    offset = channel_index * shape.plane
    values = tensor.data[offset : offset + shape.plane].astype(np.float64)
    gray = np.floor(_min_max_normalize(values) * 255.0).astype(np.uint8)

    rgba = np.empty((shape.height, shape.width, 4), dtype=np.uint8)
    rgba[:, :, :3] = gray.reshape(shape.height, shape.width, 1)
    rgba[:, :, 3] = 255
    img.paste(Image.fromarray(rgba))


def _render_bar_chart(
    tensor: Tensor, shape: FeatureVector, target: Surface, max_width: int, height: int
) -> None:
    # Wider vectors are cut off at max_width, not resampled
    width = min(shape.length, max_width)
    img = target.resize(width, height, fill=_BAR_BACKGROUND)
    if shape.length == 0:
        return
    norm = _min_max_normalize(tensor.data[: shape.length].astype(np.float64))

    draw = ImageDraw.Draw(img)
    for x in range(width):
        v = float(norm[x])
        bar = int(round(v * height))
        if bar <= 0:
            continue
        draw.rectangle((x, height - bar, x, height - 1), fill=_hue_color(240.0 * (1.0 - v)))


def _min_max_normalize(values: NDArray[np.float64]) -> NDArray[np.float64]:
    lo = float(values.min())
    rng = float(values.max()) - lo
    if rng == 0.0:
        # a quiescent channel renders flat instead of dividing by zero
        rng = 1.0
    return (values - lo) / rng


def _hue_color(hue_deg: float) -> tuple[int, int, int, int]:
    # hsl(hue, 100%, 50%)
    r, g, b = colorsys.hls_to_rgb(hue_deg / 360.0, 0.5, 1.0)
    return (int(round(r * 255)), int(round(g * 255)), int(round(b * 255)), 255)
