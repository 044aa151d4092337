from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ActivationInfo:
    dims: list[int]
    width: int
    height: int
    channels: int
    description: str


@pydantic_dataclass(frozen=True)
class PredictResponse:
    digit: int
    confidence: float
    probs: list[float]
    percentages: list[int]
    activations: dict[str, ActivationInfo]
    latency_ms: int


@pydantic_dataclass(frozen=True)
class GridCellOut:
    channel: int
    label: str
    width: int
    height: int
    png_b64: str


@pydantic_dataclass(frozen=True)
class GridResponse:
    layer: str
    description: str
    cells: list[GridCellOut]
    notice: str | None
