from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np

from .inference.types import Classification


def softmax(logits: Sequence[float]) -> tuple[float, ...]:
    """Max-shifted softmax; identical to the plain form but never overflows."""
    if len(logits) == 0:
        raise ValueError("softmax of an empty vector")
    x = np.asarray(logits, dtype=np.float64)
    exp = np.exp(x - x.max())
    probs = exp / exp.sum()
    return tuple(float(p) for p in probs)


def argmax(values: Sequence[float]) -> int:
    """Index of the largest value; the lowest index wins ties."""
    if len(values) == 0:
        raise ValueError("argmax of an empty vector")
    top_idx = 0
    best = values[0]
    for i in range(1, len(values)):
        if values[i] > best:
            best = values[i]
            top_idx = i
    return top_idx


def classify(logits: Sequence[float]) -> Classification:
    probs = softmax(logits)
    return Classification(prediction=argmax(probs), probs=probs)


def confidence_percentages(probs: Sequence[float]) -> list[int]:
    # Chart display values, half-up rounding; non-finite entries show as 0%
    return [math.floor(p * 100 + 0.5) if math.isfinite(p) else 0 for p in probs]
