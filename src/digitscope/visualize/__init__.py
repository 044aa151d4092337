from __future__ import annotations

from .layers import LAYER_GROUPS, available_layers, navigate_channel, navigate_layer
from .render import GridCell, GridContainer, GridNotice, Surface, render_channel, render_grid
from .shapes import (
    Dimensions,
    FeatureMap,
    FeatureVector,
    Unsupported,
    activation_shape,
    describe_dimensions,
    dimensions_of,
)

__all__ = [
    "LAYER_GROUPS",
    "Dimensions",
    "FeatureMap",
    "FeatureVector",
    "GridCell",
    "GridContainer",
    "GridNotice",
    "Surface",
    "Unsupported",
    "activation_shape",
    "available_layers",
    "describe_dimensions",
    "dimensions_of",
    "navigate_channel",
    "navigate_layer",
    "render_channel",
    "render_grid",
]
