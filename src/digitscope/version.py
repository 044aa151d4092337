from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version

_DIST_NAME = "digitscope"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service=_DIST_NAME,
        version=_dist_version(),
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )


@lru_cache(maxsize=1)
def _dist_version() -> str:
    try:
        return version(_DIST_NAME)
    except PackageNotFoundError as exc:
        from .logging import get_logger

        # only happens when running from a source tree that was never installed
        get_logger().warning("pkg_version_missing dist=%s", _DIST_NAME)
        raise RuntimeError(f"{_DIST_NAME} is not installed; run `pip install -e .`") from exc
