from __future__ import annotations

import asyncio
import os
import time
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType

import numpy as np
from PIL import Image

from ..config import Settings
from ..errors import ErrorCode, app_error
from ..logging import log_event
from ..postprocess import classify
from ..preprocess import canvas_to_tensor
from .session import SessionManager, get_session_manager
from .types import INPUT_DIMS, NamedOutputs, PredictionResult, Tensor


class InferenceEngine:
    """Runs the shared session on a bounded thread pool and assembles predictions."""

    def __init__(self, settings: Settings, manager: SessionManager | None = None) -> None:
        self._settings = settings
        self._manager = manager if manager is not None else get_session_manager(settings)
        self._pool = _make_pool(settings)

    @property
    def manager(self) -> SessionManager:
        return self._manager

    @property
    def ready(self) -> bool:
        return self._manager.ready

    async def warm(self) -> bool:
        return await self._manager.ensure_ready(self._settings.model.url)

    async def ensure_ready(self) -> None:
        if not await self.warm():
            err = self._manager.last_error
            detail = err.message if err is not None else "session failed to initialize"
            raise app_error(ErrorCode.session_not_ready, f"Model not loaded: {detail}")

    async def run(self, input_tensor: Tensor) -> NamedOutputs:
        """Feed one input tensor and return every bound output by name."""
        if input_tensor.dims != INPUT_DIMS:
            raise ValueError(f"input dims {input_tensor.dims} != {INPUT_DIMS}")
        await self.ensure_ready()
        session = self._manager.session
        cfg = self._settings.model

        names = [o.name for o in session.get_outputs()]
        feeds = {cfg.input_name: np.array(input_tensor.as_array(), dtype=np.float32)}
        loop = asyncio.get_running_loop()
        values = await loop.run_in_executor(self._pool, session.run, names, feeds)

        outputs: NamedOutputs = {}
        for name, value in zip(names, values, strict=True):
            outputs[name] = Tensor.from_array(np.asarray(value, dtype=np.float32))
        if cfg.output_name not in outputs:
            raise app_error(
                ErrorCode.missing_output,
                f"Output tensor '{cfg.output_name}' not found in results: {sorted(outputs)}",
            )
        return outputs

    async def predict(self, surface: Image.Image) -> PredictionResult:
        t0 = time.perf_counter()
        await self.ensure_ready()
        outputs = await self.run(canvas_to_tensor(surface))

        cfg = self._settings.model
        cls = classify(outputs[cfg.output_name].data.tolist())
        activations = {name: outputs[name] for name in cfg.activation_layers if name in outputs}

        log_event(
            "predict_finished",
            {
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
                "digit": cls.prediction,
                "confidence": round(cls.confidence, 4),
                "activations": len(activations),
            },
        )
        return PredictionResult(
            prediction=cls.prediction,
            probs=cls.probs,
            activations=MappingProxyType(activations),
        )

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")
