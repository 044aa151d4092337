from __future__ import annotations

import asyncio
import base64
import time
from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse, Response
from PIL import Image
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, app_error, new_error
from ..inference.engine import InferenceEngine
from ..inference.types import PredictionResult, Tensor
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..postprocess import confidence_percentages
from ..preprocess import decode_canvas_png
from ..request_context import request_id_var
from ..version import get_version
from ..visualize.layers import describe_layer
from ..visualize.render import GridContainer, Surface, render_channel, render_grid
from ..visualize.shapes import describe_dimensions, dimensions_of
from .schemas import GridResponse, PredictResponse

_SUPPORTED_TYPES = ("image/png", "image/jpeg", "image/jpg")


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__, exc_info=exc)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise app_error(ErrorCode.malformed_multipart, "Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise app_error(
            ErrorCode.malformed_multipart,
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


async def _read_surface(
    request: Request, file: UploadFile, content_length: int | None, limits: Limits
) -> Image.Image:
    form = await request.form()
    _strict_validate_multipart(form)
    if (file.content_type or "").lower() not in _SUPPORTED_TYPES:
        raise app_error(ErrorCode.unsupported_media_type, "Only PNG and JPEG are supported")
    if content_length is not None and content_length > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "Request body too large")
    raw = await file.read()
    if len(raw) > limits.max_bytes:
        raise app_error(ErrorCode.too_large, "File exceeds size limit")
    img = decode_canvas_png(raw)
    if max(img.size) > limits.max_side_px:
        raise app_error(ErrorCode.bad_dimensions, "Image dimensions too large")
    return img


async def _predict(
    engine: InferenceEngine, settings: Settings, img: Image.Image
) -> PredictionResult:
    try:
        return await asyncio.wait_for(
            engine.predict(img), timeout=float(settings.model.predict_timeout_seconds)
        )
    except TimeoutError:
        # the engine call keeps running in its worker thread; only its result is dropped
        raise app_error(ErrorCode.timeout, "Prediction timed out") from None


def _layer_tensor(result: PredictionResult, layer: str) -> Tensor:
    tensor = result.activations.get(layer)
    if tensor is None:
        raise app_error(ErrorCode.layer_not_found, f"Layer '{layer}' not in model outputs")
    return tensor


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        manager = engine.manager
        if manager.ready:
            return {"status": "ready", "model_url": manager.model_url}
        err = manager.last_error
        return {
            "status": "not_ready",
            "session_state": manager.state.value,
            "model_url": manager.model_url,
            "last_error": err.message if err is not None else None,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_predict(
    app: FastAPI,
    api_dep: DependsParamType,
    provide_engine: Callable[[], InferenceEngine],
    provide_settings: Callable[[], Settings],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _predict_digit(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        t0 = time.perf_counter()
        img = await _read_surface(request, file, content_length, provide_limits())
        result = await _predict(provide_engine(), provide_settings(), img)
        activations: dict[str, object] = {}
        for name, tensor in result.activations.items():
            width, height, channels = dimensions_of(tensor)
            activations[name] = {
                "dims": list(tensor.dims),
                "width": width,
                "height": height,
                "channels": channels,
                "description": describe_dimensions(tensor),
            }
        return {
            "digit": result.prediction,
            "confidence": result.confidence,
            "probs": list(result.probs),
            "percentages": confidence_percentages(result.probs),
            "activations": activations,
            "latency_ms": int((time.perf_counter() - t0) * 1000.0),
        }

    app.add_api_route(
        "/v1/predict",
        _predict_digit,
        methods=["POST"],
        response_model=PredictResponse,
        dependencies=[api_dep],
    )


def _register_activations(
    app: FastAPI,
    api_dep: DependsParamType,
    provide_engine: Callable[[], InferenceEngine],
    provide_settings: Callable[[], Settings],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _grid(
        layer: str,
        request: Request,
        file: Annotated[UploadFile, File(...)],
        max_channels: Annotated[int | None, Query(ge=1)] = None,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        settings = provide_settings()
        img = await _read_surface(request, file, content_length, provide_limits())
        result = await _predict(provide_engine(), settings, img)
        tensor = _layer_tensor(result, layer)

        vis = settings.visualize
        container = GridContainer()
        render_grid(
            tensor,
            container,
            vis.max_channels if max_channels is None else max_channels,
            bar_max_width=vis.bar_chart_max_width,
            bar_height=vis.bar_chart_height,
        )
        cells: list[dict[str, object]] = []
        for cell in container.cells:
            width, height = cell.surface.size
            cells.append(
                {
                    "channel": cell.channel,
                    "label": cell.label,
                    "width": width,
                    "height": height,
                    "png_b64": base64.b64encode(cell.surface.to_png()).decode("ascii"),
                }
            )
        notice = container.notice
        return {
            "layer": layer,
            "description": describe_layer(layer),
            "cells": cells,
            "notice": notice.text if notice is not None else None,
        }

    async def _channel(
        layer: str,
        index: int,
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> Response:
        settings = provide_settings()
        img = await _read_surface(request, file, content_length, provide_limits())
        result = await _predict(provide_engine(), settings, img)
        tensor = _layer_tensor(result, layer)

        channels = dimensions_of(tensor).channels
        if not 0 <= index < channels:
            raise app_error(
                ErrorCode.invalid_channel_index,
                f"Invalid channel index {index} for layer '{layer}' with {channels} channels",
            )
        surface = Surface()
        render_channel(
            tensor,
            surface,
            index,
            bar_max_width=settings.visualize.bar_chart_max_width,
            bar_height=settings.visualize.bar_chart_height,
        )
        return Response(
            content=surface.to_png(),
            media_type="image/png",
            headers={"X-Channel-Count": str(channels)},
        )

    app.add_api_route(
        "/v1/activations/{layer}/grid",
        _grid,
        methods=["POST"],
        response_model=GridResponse,
        dependencies=[api_dep],
    )
    app.add_api_route(
        "/v1/activations/{layer}/channels/{index}",
        _channel,
        methods=["POST"],
        dependencies=[api_dep],
    )


def _make_lifespan(
    engine: InferenceEngine,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        # Start loading at boot; a failure is logged and retried on the first request
        ready = await engine.warm()
        get_logger().info("session_warmup ready=%s", "true" if ready else "false")
        try:
            yield
        finally:
            engine.shutdown()

    return _lifespan


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env/TOML.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).
    """
    s = settings or Settings.load()
    init_logging()
    engine = engine_provider() if engine_provider is not None else InferenceEngine(s)
    app = FastAPI(
        title="digitscope", version=get_version().version, lifespan=_make_lifespan(engine)
    )
    app.add_middleware(RequestIdMiddleware)
    limits = Limits.from_settings(s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_engine() -> InferenceEngine:
        return engine

    def _provide_settings() -> Settings:
        return s

    def _provide_limits() -> Limits:
        return limits

    app.state.provide_engine = _provide_engine
    app.state.provide_settings = _provide_settings
    app.state.provide_limits = _provide_limits

    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, engine)
    _register_predict(app, api_dep, _provide_engine, _provide_settings, _provide_limits)
    _register_activations(app, api_dep, _provide_engine, _provide_settings, _provide_limits)
    return app
