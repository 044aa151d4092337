from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from ..inference.types import Tensor


@dataclass(frozen=True)
class FeatureMap:
    """Rank-4 activation laid out as [batch, channels, height, width]."""

    channels: int
    height: int
    width: int

    @property
    def plane(self) -> int:
        return self.height * self.width


@dataclass(frozen=True)
class FeatureVector:
    """Rank-2 flattened features [batch, length]."""

    length: int


@dataclass(frozen=True)
class Unsupported:
    rank: int


ActivationShape = FeatureMap | FeatureVector | Unsupported


class Dimensions(NamedTuple):
    width: int
    height: int
    channels: int


def activation_shape(tensor: Tensor) -> ActivationShape:
    dims = tensor.dims
    if len(dims) == 4:
        _, channels, height, width = dims
        return FeatureMap(channels=channels, height=height, width=width)
    if len(dims) == 2:
        return FeatureVector(length=dims[1])
    return Unsupported(rank=len(dims))


def dimensions_of(tensor: Tensor) -> Dimensions:
    """Width, height and channel count of an activation.

    A feature vector counts as a single channel of `length` x 1. Other ranks
    report all zeros; callers check for zero channels before rendering.
    """
    shape = activation_shape(tensor)
    if isinstance(shape, FeatureMap):
        return Dimensions(width=shape.width, height=shape.height, channels=shape.channels)
    if isinstance(shape, FeatureVector):
        return Dimensions(width=shape.length, height=1, channels=1)
    return Dimensions(width=0, height=0, channels=0)


def describe_dimensions(tensor: Tensor) -> str:
    shape = activation_shape(tensor)
    if isinstance(shape, FeatureMap):
        return f"{shape.width}×{shape.height} × {shape.channels} channels"
    if isinstance(shape, FeatureVector):
        return f"{shape.length} features"
    return ""
