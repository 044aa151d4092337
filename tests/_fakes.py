from __future__ import annotations

import io
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageDraw

from digitscope.config import AppConfig, ModelConfig, SecurityConfig, Settings, VisualizeConfig
from digitscope.inference.engine import InferenceEngine
from digitscope.inference.session import EngineSession, SessionManager

LOGITS_ZERO_WINS: tuple[float, ...] = (5.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0, 1.0)


@dataclass(frozen=True)
class _Node:
    name: str


class FakeSession:
    """Deterministic stand-in for onnxruntime.InferenceSession."""

    def __init__(self, outputs: Mapping[str, NDArray[np.float32]]) -> None:
        self._outputs = dict(outputs)
        self.feeds: list[dict[str, NDArray[np.float32]]] = []

    def get_outputs(self) -> list[_Node]:
        return [_Node(n) for n in self._outputs]

    def run(
        self, output_names: list[str] | None, input_feed: Mapping[str, NDArray[np.float32]]
    ) -> list[NDArray[np.float32]]:
        self.feeds.append(dict(input_feed))
        names = output_names if output_names is not None else list(self._outputs)
        return [self._outputs[n] for n in names]


class CountingFactory:
    """Session factory that counts builds and can fail the first `fail_times` of them."""

    def __init__(self, session: EngineSession, fail_times: int = 0) -> None:
        self._session = session
        self._fail_times = fail_times
        self._lock = threading.Lock()
        self.calls = 0
        self.seen_bytes: list[bytes] = []

    def __call__(self, raw: bytes) -> EngineSession:
        with self._lock:
            self.calls += 1
            self.seen_bytes.append(raw)
            if self.calls <= self._fail_times:
                raise RuntimeError("corrupt model graph")
        return self._session


def default_outputs() -> dict[str, NDArray[np.float32]]:
    return {
        "output": np.array([LOGITS_ZERO_WINS], dtype=np.float32),
        "conv1": np.arange(1 * 20 * 4 * 4, dtype=np.float32).reshape(1, 20, 4, 4),
        "conv2_pool": np.ones((1, 2, 3, 3), dtype=np.float32),
        "features_flat": np.linspace(-1.0, 1.0, 300, dtype=np.float32).reshape(1, 300),
        "logits_debug": np.zeros((1, 10), dtype=np.float32),
    }


def make_settings(model_url: str, **model_kw: object) -> Settings:
    return Settings(
        app=AppConfig(threads=1),
        model=ModelConfig(url=model_url, **model_kw),  # type: ignore[arg-type]
        visualize=VisualizeConfig(),
        security=SecurityConfig(),
    )


def write_model(tmp_path: Path, content: bytes = b"onnx-bytes") -> Path:
    p = tmp_path / "model.onnx"
    p.write_bytes(content)
    return p


def make_engine(
    tmp_path: Path,
    outputs: Mapping[str, NDArray[np.float32]] | None = None,
    factory: Callable[[bytes], EngineSession] | None = None,
) -> tuple[InferenceEngine, FakeSession]:
    session = FakeSession(outputs if outputs is not None else default_outputs())
    settings = make_settings(write_model(tmp_path).as_uri())
    manager = SessionManager(settings, session_factory=factory or (lambda _raw: session))
    return InferenceEngine(settings, manager=manager), session


def canvas(size: int = 280, draw_stroke: bool = True) -> Image.Image:
    img = Image.new("RGBA", (size, size), (0, 0, 0, 255))
    if draw_stroke:
        d = ImageDraw.Draw(img)
        d.line((size // 2, size // 6, size // 2, size - size // 6), fill=(255, 255, 255, 255), width=30)
    return img


def png_bytes(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
