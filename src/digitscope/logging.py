from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "digitscope"
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"latency_ms", "digit", "activations", "channel", "channels", "seq", "size_bytes", "status"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence", "elapsed_s"})


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = request_id_var.get()
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(msg)
        if extra:
            if "event" in extra:
                payload["message"] = str(extra.pop("event"))
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_RESET: Final[str] = "\x1b[0m"
_BOLD: Final[str] = "\x1b[1m"
_DIM: Final[str] = "\x1b[2m"
_GRAY: Final[str] = "\x1b[90m"
_RED: Final[str] = "\x1b[91m"
_GREEN: Final[str] = "\x1b[92m"
_BLUE: Final[str] = "\x1b[94m"
_MAGENTA: Final[str] = "\x1b[95m"
_CYAN: Final[str] = "\x1b[36m"

# (threshold, color, tag), highest first
_LEVEL_TAGS: Final[tuple[tuple[int, str, str], ...]] = (
    (logging.CRITICAL, _MAGENTA, "CRIT"),
    (logging.ERROR, _RED, "ERROR"),
    (logging.WARNING, "\x1b[93m", "WARN"),
    (logging.INFO, _CYAN, "INFO"),
)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals.

    Renders `[HH:MM:SS] [LEVEL] event key=value ...`; EVT lines are decoded
    first so the event name stands out and the fields follow it.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        out = [f"{_DIM}[{ts}]{_RESET}", _level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            out.append(f"{_DIM}{_GRAY}{record.name}{_RESET}")

        event, fields, rest = _split_console_message(record.getMessage())
        if event:
            out.append(f"{_BOLD}{_BLUE}{event}{_RESET}")
        out.extend(f"{_DIM}{_CYAN}{k}{_RESET}={_paint_value(k, v)}" for k, v in fields)
        if rest:
            out.append(rest)
        if record.exc_info:
            out.append(f"\n{_RED}{self.formatException(record.exc_info)}{_RESET}")

        line = " ".join(out)
        rid = request_id_var.get()
        return f"{line} {_DIM}{_GRAY}rid={rid}{_RESET}" if rid else line


def _level_tag(level: int) -> str:
    for threshold, color, tag in _LEVEL_TAGS:
        if level >= threshold:
            return f"{_BOLD}{color}[{tag}]{_RESET}"
    return f"{_BOLD}{_GRAY}[DEBUG]{_RESET}"


def _split_console_message(msg: str) -> tuple[str | None, list[tuple[str, str]], str]:
    if msg.startswith("EVT "):
        evt = _parse_evt_fields(msg)
        name = str(evt.pop("event", "event"))
        return name, [(k, _format_value(v)) for k, v in evt.items()], ""
    words = msg.split()
    event = words.pop(0) if words and "=" not in words[0] else None
    fields: list[tuple[str, str]] = []
    loose: list[str] = []
    for w in words:
        k, sep, v = w.partition("=")
        if sep and k:
            fields.append((k, v))
        else:
            loose.append(w)
    return event, fields, " ".join(loose)


def _paint_value(key: str, value: str) -> str:
    if key.endswith(("_ms", "_s")):
        color = _MAGENTA
    elif value in ("true", "false"):
        color = _CYAN
    elif _is_float_str(value):
        color = _GREEN
    else:
        color = "\x1b[97m"
    return f"{color}{value}{_RESET}"


def log_event(
    event: str, fields: Mapping[str, object] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit a structured `EVT event=<name> k=v ...` line.

    Only scalar values are encoded; whitespace inside string values is
    replaced with underscores so the line stays splittable.
    """
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key, value in fields.items():
            if isinstance(value, bool):
                parts.append(f"{key}={'true' if value else 'false'}")
            elif isinstance(value, int | float):
                parts.append(f"{key}={value}")
            elif isinstance(value, str):
                parts.append(f"{key}={'_'.join(value.split()) or '-'}")
    get_logger().log(level, "EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.lstrip("-").isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS and _is_float_str(v):
            val = float(v)
        elif v in {"true", "false"}:
            val = v == "true"
        out[key] = val
    return out


def _format_value(v: object) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _is_float_str(s: str) -> bool:
    body = s[1:] if s.startswith("-") else s
    if not body:
        return False
    return body.count(".") <= 1 and body.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]

_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


@runtime_checkable
class _Terminal(Protocol):
    def isatty(self) -> bool: ...


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the `digitscope` logger.

    Any previous StreamHandler is swapped for one bound to the current
    sys.stdout, so calling this again (or under pytest's capsys) never
    duplicates output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    level = _LEVELS.get(os.environ.get("DIGITSCOPE_LOG_LEVEL", "").strip().upper(), logging.INFO)
    logger.setLevel(level)
    logger.propagate = _env_flag("DIGITSCOPE_LOG_PROPAGATE")

    for h in [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]:
        logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in {"1", "true", "yes", "on", "y"}


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "auto":
        if _env_flag("DIGITSCOPE_LOG_JSON"):
            style = "json"
        elif _env_flag("DIGITSCOPE_LOG_PRETTY"):
            style = "pretty"
        else:
            out = sys.stdout
            style = "pretty" if isinstance(out, _Terminal) and out.isatty() else "json"
    return _ConsoleFormatter() if style == "pretty" else _JsonFormatter()
