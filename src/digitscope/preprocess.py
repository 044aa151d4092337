from __future__ import annotations

import io

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import ErrorCode, app_error
from .inference.types import INPUT_DIMS, INPUT_SIDE, Tensor


def canvas_to_tensor(surface: Image.Image) -> Tensor:
    """Rasterize a drawing surface into the model's 1x1x28x28 input.

    The surface is resampled with nearest-neighbor (hard digit edges survive)
    and composited over an opaque black 28x28 buffer, so transparent regions
    read as 0. Only the red channel is kept: strokes are achromatic.
    """
    try:
        src = surface.convert("RGBA")
    except (ValueError, OSError) as exc:
        raise app_error(ErrorCode.surface_unavailable, f"cannot rasterize surface: {exc}") from None
    width, height = src.size
    if width == 0 or height == 0:
        raise app_error(ErrorCode.surface_unavailable, "surface has a zero-sized side")

    off = Image.new("RGBA", (INPUT_SIDE, INPUT_SIDE), (0, 0, 0, 255))
    small = src.resize((INPUT_SIDE, INPUT_SIDE), resample=Image.Resampling.NEAREST)
    off.alpha_composite(small)

    rgba = np.asarray(off, dtype=np.uint8)
    red = rgba[:, :, 0].astype(np.float32) / np.float32(255.0)
    return Tensor(red, INPUT_DIMS)


def decode_canvas_png(raw: bytes) -> Image.Image:
    """Open an uploaded canvas export as a surface."""
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except UnidentifiedImageError:
        raise app_error(ErrorCode.invalid_image, "Failed to decode image") from None
    except Image.DecompressionBombError:
        raise app_error(ErrorCode.too_large, "Decompression bomb triggered") from None
    except OSError:
        # truncated streams surface here after a successful header read
        raise app_error(ErrorCode.invalid_image, "Truncated image data") from None
    return img
