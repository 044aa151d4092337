from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final

import numpy as np
from numpy.typing import ArrayLike, NDArray

INPUT_SIDE: Final[int] = 28
INPUT_DIMS: Final[tuple[int, int, int, int]] = (1, 1, INPUT_SIDE, INPUT_SIDE)
N_CLASSES: Final[int] = 10


@dataclass(frozen=True, eq=False)
class Tensor:
    """Flat float32 values in C order plus their dimension sizes.

    The backing array is copied on construction and marked read-only, so a
    Tensor never changes after the engine hands it out.
    """

    data: NDArray[np.float32]
    dims: tuple[int, ...]

    def __init__(self, data: ArrayLike, dims: Sequence[int]) -> None:
        flat = np.array(data, dtype=np.float32).reshape(-1)
        shape = tuple(int(d) for d in dims)
        if any(d < 0 for d in shape):
            raise ValueError(f"negative dimension in {shape}")
        if flat.size != math.prod(shape):
            raise ValueError(f"{flat.size} values do not fill dims {shape}")
        flat.flags.writeable = False
        object.__setattr__(self, "data", flat)
        object.__setattr__(self, "dims", shape)

    @staticmethod
    def from_array(arr: ArrayLike) -> Tensor:
        a = np.asarray(arr, dtype=np.float32)
        return Tensor(a, a.shape)

    @property
    def rank(self) -> int:
        return len(self.dims)

    def as_array(self) -> NDArray[np.float32]:
        """Read-only view shaped by `dims`."""
        return self.data.reshape(self.dims)


NamedOutputs = dict[str, Tensor]


@dataclass(frozen=True)
class Classification:
    prediction: int
    probs: tuple[float, ...]

    @property
    def confidence(self) -> float:
        return self.probs[self.prediction]


@dataclass(frozen=True)
class PredictionResult:
    prediction: int
    probs: tuple[float, ...]  # length 10
    activations: Mapping[str, Tensor] = field(default_factory=lambda: MappingProxyType({}))

    @property
    def confidence(self) -> float:
        return self.probs[self.prediction]
