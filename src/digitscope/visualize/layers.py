from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final, Literal

from ..inference.types import Tensor

Direction = Literal["prev", "next"]


@dataclass(frozen=True)
class LayerGroup:
    name: str
    layers: tuple[str, ...]


# Batch-norm outputs are produced by the model but not browsed
LAYER_GROUPS: Final[tuple[LayerGroup, ...]] = (
    LayerGroup("Convolution Layer 1", ("conv1", "conv1_act", "conv1_pool")),
    LayerGroup("Convolution Layer 2", ("conv2", "conv2_act", "conv2_pool")),
    LayerGroup("Convolution Layer 3", ("conv3", "conv3_act")),
)

LAYER_DESCRIPTIONS: Final[dict[str, str]] = {
    "conv1": "First convolutional layer (16 filters, 3x3)",
    "conv1_act": "ReLU activation after first conv layer",
    "conv1_pool": "Max pooling after first conv (2x2)",
    "conv2": "Second convolutional layer (32 filters, 3x3)",
    "conv2_act": "ReLU activation after second conv layer",
    "conv2_pool": "Max pooling after second conv (2x2)",
    "conv3": "Third convolutional layer (64 filters, 3x3)",
    "conv3_act": "ReLU activation after third conv layer",
}


def describe_layer(name: str) -> str:
    return LAYER_DESCRIPTIONS.get(name, "Layer visualization")


def display_name(name: str) -> str:
    return name.replace("_", " ")


def group_of(name: str) -> LayerGroup | None:
    for group in LAYER_GROUPS:
        if name in group.layers:
            return group
    return None


def available_layers(activations: Mapping[str, Tensor]) -> list[str]:
    """Grouped layer names present in `activations`, in group order."""
    return [layer for group in LAYER_GROUPS for layer in group.layers if layer in activations]


def navigate_layer(
    current: str, direction: Direction, activations: Mapping[str, Tensor]
) -> str | None:
    layers = available_layers(activations)
    if current not in layers:
        return None
    idx = layers.index(current)
    step = -1 if direction == "prev" else 1
    return layers[(idx + step) % len(layers)]


def navigate_channel(index: int, total: int, direction: Direction) -> int:
    """Previous/next channel index, wrapping at both ends."""
    if total <= 0:
        raise ValueError("total must be > 0")
    if not 0 <= index < total:
        raise ValueError(f"channel index {index} outside [0, {total})")
    step = -1 if direction == "prev" else 1
    return (index + step) % total
