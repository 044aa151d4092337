from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from pathlib import Path
from typing import Final, Protocol
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx
import numpy as np
import onnxruntime as ort
from numpy.typing import NDArray
from onnxruntime.capi.onnxruntime_pybind11_state import (
    EPFail,
    EngineError,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    ModelLoaded,
    NoModel,
    NoSuchFile,
    RuntimeException,
)
from onnxruntime.capi.onnxruntime_pybind11_state import (
    NotImplemented as OrtNotImplemented,
)

from ..config import Settings
from ..errors import AppError, ErrorCode, app_error
from ..logging import log_event

_PROVIDERS: Final[tuple[str, ...]] = ("CPUExecutionProvider",)
# onnxruntime raises these from both session construction and run(); none of
# them derive from RuntimeError
ORT_ERRORS: Final[tuple[type[Exception], ...]] = (
    EPFail,
    EngineError,
    Fail,
    InvalidArgument,
    InvalidGraph,
    InvalidProtobuf,
    ModelLoaded,
    NoModel,
    NoSuchFile,
    OrtNotImplemented,
    RuntimeException,
)
_LOAD_ERRORS: Final[tuple[type[Exception], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    httpx.HTTPError,
    *ORT_ERRORS,
)


class SessionState(str, Enum):
    uninitialized = "uninitialized"
    loading = "loading"
    ready = "ready"
    failed = "failed"


class NodeArg(Protocol):
    @property
    def name(self) -> str: ...


class EngineSession(Protocol):
    """The slice of `onnxruntime.InferenceSession` the pipeline relies on."""

    def get_outputs(self) -> Sequence[NodeArg]: ...

    def run(
        self, output_names: list[str] | None, input_feed: Mapping[str, NDArray[np.float32]]
    ) -> Sequence[object]: ...


SessionFactory = Callable[[bytes], EngineSession]


def create_onnx_session(model_bytes: bytes) -> EngineSession:
    opts = ort.SessionOptions()
    opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    session: EngineSession = ort.InferenceSession(
        model_bytes, sess_options=opts, providers=list(_PROVIDERS)
    )
    return session


def resolve_model_path(url: str, static_root: Path) -> Path:
    """Map a non-HTTP model URL to a file on disk.

    `file://` URLs map directly; site-relative paths such as `/model.onnx`
    resolve under `static_root`; anything else is a path relative to the CWD.
    """
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(url2pathname(parsed.path))
    if parsed.scheme:
        raise ValueError(f"unsupported model URL scheme: {parsed.scheme}")
    if url.startswith("/"):
        return static_root / url.lstrip("/")
    return Path(url)


async def fetch_model_bytes(url: str, static_root: Path, timeout_s: float) -> bytes:
    if urlparse(url).scheme in ("http", "https"):
        async with httpx.AsyncClient(timeout=timeout_s) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content
    path = resolve_model_path(url, static_root)
    return await asyncio.to_thread(path.read_bytes)


class SessionManager:
    """Lazily loads the inference session once and shares it process-wide.

    The first `ensure_ready` call starts a load task; callers arriving while
    it runs await that same task instead of starting another. A successful
    load is cached for good. A failed load is dropped entirely (no handle, no
    task) so the next call starts over.
    """

    def __init__(self, settings: Settings, session_factory: SessionFactory | None = None) -> None:
        self._settings = settings
        self._factory: SessionFactory = session_factory or create_onnx_session
        self._state = SessionState.uninitialized
        self._session: EngineSession | None = None
        self._pending: asyncio.Task[EngineSession] | None = None
        self._model_url: str | None = None
        self._last_error: AppError | None = None
        self._load_count = 0

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def ready(self) -> bool:
        return self._session is not None

    @property
    def model_url(self) -> str | None:
        return self._model_url

    @property
    def last_error(self) -> AppError | None:
        return self._last_error

    @property
    def load_count(self) -> int:
        return self._load_count

    @property
    def session(self) -> EngineSession:
        sess = self._session
        if sess is None:
            raise app_error(ErrorCode.session_not_ready)
        return sess

    async def ensure_ready(self, model_url: str | None = None) -> bool:
        if self._session is not None:
            return True
        pending = self._pending
        if pending is None:
            url = model_url or self._settings.model.url
            pending = asyncio.ensure_future(self._load(url))
            self._pending = pending
        try:
            # shield: a cancelled caller must not cancel the shared load
            await asyncio.shield(pending)
        except AppError:
            return False
        return True

    async def _load(self, url: str) -> EngineSession:
        self._state = SessionState.loading
        self._model_url = url
        self._load_count += 1
        log_event("session_load_started", {"model_url": url})
        t0 = time.perf_counter()
        try:
            raw = await fetch_model_bytes(
                url, self._settings.app.static_root, self._settings.model.fetch_timeout_seconds
            )
            session = await asyncio.to_thread(self._factory, raw)
        except _LOAD_ERRORS as exc:
            err = app_error(ErrorCode.session_load_failed, f"{type(exc).__name__}: {exc}")
            self._state = SessionState.failed
            self._last_error = err
            log_event(
                "session_load_failed",
                {"model_url": url, "error": type(exc).__name__},
                level=logging.ERROR,
            )
            raise err from exc
        finally:
            self._pending = None
        self._session = session
        self._state = SessionState.ready
        self._last_error = None
        log_event(
            "session_ready",
            {
                "model_url": url,
                "size_bytes": len(raw),
                "elapsed_s": round(time.perf_counter() - t0, 3),
            },
        )
        return session


_MANAGER: SessionManager | None = None


def get_session_manager(settings: Settings | None = None) -> SessionManager:
    """Process-wide SessionManager, created on first use."""
    global _MANAGER
    if _MANAGER is None:
        _MANAGER = SessionManager(settings if settings is not None else Settings.load())
    return _MANAGER


def reset_session_manager() -> None:
    global _MANAGER
    _MANAGER = None
