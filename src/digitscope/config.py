from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digitscope.toml")

ACTIVATION_LAYERS: Final[tuple[str, ...]] = (
    "conv1",
    "conv1_bn",
    "conv1_act",
    "conv1_pool",
    "conv2",
    "conv2_bn",
    "conv2_act",
    "conv2_pool",
    "conv3",
    "conv3_bn",
    "conv3_act",
    "features_flat",
)


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081
    # Site-relative model URLs ("/model.onnx") resolve against this directory
    static_root: Path = Path("public")
    max_image_mb: int = 2
    max_image_side_px: int = 2048


@dataclass(frozen=True)
class ModelConfig:
    url: str = "/model.onnx"
    input_name: str = "input"
    output_name: str = "output"
    activation_layers: tuple[str, ...] = ACTIVATION_LAYERS
    fetch_timeout_seconds: float = 30.0
    predict_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class VisualizeConfig:
    max_channels: int = 16
    bar_chart_max_width: int = 256
    bar_chart_height: int = 100


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the API key check
    api_key: str = ""


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    model: ModelConfig
    visualize: VisualizeConfig
    security: SecurityConfig

    @classmethod
    def default(cls) -> Settings:
        return cls(
            app=AppConfig(),
            model=ModelConfig(),
            visualize=VisualizeConfig(),
            security=SecurityConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGITSCOPE_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Environment first, TOML overrides when present.
        base = cls(
            app=_load_app_from_env(),
            model=_load_model_from_env(),
            visualize=_load_visualize_from_env(),
            security=_load_security_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            model=_merge_model(base.model, _toml_table(raw, "model")),
            visualize=_merge_visualize(base.visualize, _toml_table(raw, "visualize")),
            security=_merge_security(base.security, _toml_table(raw, "security")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    pt = os.getenv("APP__PORT")
    sr = os.getenv("APP__STATIC_ROOT")
    mb = os.getenv("APP__MAX_IMAGE_MB")
    mx = os.getenv("APP__MAX_IMAGE_SIDE_PX")
    if th is not None and th.isdigit():
        a = replace(a, threads=int(th))
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt), "APP__PORT"))
    if sr:
        a = replace(a, static_root=Path(sr))
    if mb is not None:
        a = replace(a, max_image_mb=_check_limit(mb, "APP__MAX_IMAGE_MB"))
    if mx is not None:
        a = replace(a, max_image_side_px=_check_limit(mx, "APP__MAX_IMAGE_SIDE_PX"))
    return a


def _load_model_from_env() -> ModelConfig:
    m = ModelConfig()
    url = os.getenv("MODEL__URL")
    layers = os.getenv("MODEL__ACTIVATION_LAYERS")
    ft = os.getenv("MODEL__FETCH_TIMEOUT_SECONDS")
    pt = os.getenv("MODEL__PREDICT_TIMEOUT_SECONDS")
    if url:
        m = replace(m, url=url)
    if layers is not None:
        m = replace(m, activation_layers=_split_layers(layers))
    if ft is not None:
        m = replace(m, fetch_timeout_seconds=_check_positive(float(ft), "fetch timeout"))
    if pt is not None:
        m = replace(m, predict_timeout_seconds=_check_positive(float(pt), "predict timeout"))
    return m


def _load_visualize_from_env() -> VisualizeConfig:
    v = VisualizeConfig()
    mc = os.getenv("VISUALIZE__MAX_CHANNELS")
    if mc is not None:
        v = replace(v, max_channels=_check_max_channels(int(mc)))
    return v


def _load_security_from_env() -> SecurityConfig:
    s = SecurityConfig()
    key = os.getenv("SECURITY__API_KEY")
    if key is not None:
        s = replace(s, api_key=key)
    return s


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        out = replace(out, threads=int(str(data["threads"])))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"])), "port"))
    if "static_root" in data:
        out = replace(out, static_root=Path(str(data["static_root"])))
    if "max_image_mb" in data:
        out = replace(out, max_image_mb=_check_limit(data["max_image_mb"], "max_image_mb"))
    if "max_image_side_px" in data:
        mx = _check_limit(data["max_image_side_px"], "max_image_side_px")
        out = replace(out, max_image_side_px=mx)
    return out


def _merge_model(base: ModelConfig, data: dict[str, object]) -> ModelConfig:
    out = base
    if "url" in data:
        out = replace(out, url=str(data["url"]))
    if "input_name" in data:
        out = replace(out, input_name=str(data["input_name"]))
    if "output_name" in data:
        out = replace(out, output_name=str(data["output_name"]))
    if "activation_layers" in data:
        layers = data["activation_layers"]
        if isinstance(layers, list):
            out = replace(out, activation_layers=tuple(str(x) for x in layers))
        else:
            out = replace(out, activation_layers=_split_layers(str(layers)))
    if "fetch_timeout_seconds" in data:
        ft = float(str(data["fetch_timeout_seconds"]))
        out = replace(out, fetch_timeout_seconds=_check_positive(ft, "fetch timeout"))
    if "predict_timeout_seconds" in data:
        pt = float(str(data["predict_timeout_seconds"]))
        out = replace(out, predict_timeout_seconds=_check_positive(pt, "predict timeout"))
    return out


def _merge_visualize(base: VisualizeConfig, data: dict[str, object]) -> VisualizeConfig:
    out = base
    if "max_channels" in data:
        out = replace(out, max_channels=_check_max_channels(int(str(data["max_channels"]))))
    if "bar_chart_max_width" in data:
        out = replace(out, bar_chart_max_width=int(str(data["bar_chart_max_width"])))
    if "bar_chart_height" in data:
        out = replace(out, bar_chart_height=int(str(data["bar_chart_height"])))
    return out


def _merge_security(base: SecurityConfig, data: dict[str, object]) -> SecurityConfig:
    out = base
    api_key_val = data.get("api_key")
    if isinstance(api_key_val, str):
        out = replace(out, api_key=api_key_val)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}


def _split_layers(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _check_port(port: int, name: str) -> int:
    if not (1 <= port <= 65535):
        raise RuntimeError(f"{name} out of range")
    return port


def _check_positive(value: float, name: str) -> float:
    if value <= 0.0:
        raise RuntimeError(f"{name} must be > 0")
    return value


def _check_limit(raw: object, name: str) -> int:
    try:
        value = int(str(raw))
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer") from exc
    if value < 1:
        raise RuntimeError(f"{name} must be >= 1")
    return value


def _check_max_channels(value: int) -> int:
    if value < 1:
        raise RuntimeError("max_channels must be >= 1")
    return value


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.app.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.app.max_image_side_px),
        )
