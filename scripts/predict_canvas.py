from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from digitscope.config import Settings
from digitscope.errors import AppError
from digitscope.inference.engine import InferenceEngine
from digitscope.inference.sequence import RequestSequencer
from digitscope.inference.session import ORT_ERRORS
from digitscope.inference.types import PredictionResult
from digitscope.logging import get_logger
from digitscope.postprocess import confidence_percentages
from digitscope.preprocess import decode_canvas_png
from digitscope.visualize.render import GridContainer, render_grid
from digitscope.visualize.shapes import describe_dimensions

_PREDICT_ERRORS: Final[tuple[type[Exception], ...]] = (AppError, *ORT_ERRORS)


@dataclass(frozen=True)
class PredictArgs:
    image: Path
    model_url: str | None
    layer: str | None
    out_dir: Path
    max_channels: int
    watch: bool
    interval_s: float


def parse_args(argv: list[str] | None = None) -> PredictArgs:
    ap = argparse.ArgumentParser(description="Predict the digit drawn in a canvas PNG")
    ap.add_argument("image", help="Canvas export (white strokes on black)")
    ap.add_argument("--model-url", default=None, help="Overrides model.url from config")
    ap.add_argument("--layer", default=None, help="Write this layer's channel grid as PNGs")
    ap.add_argument("--out-dir", default="./activations", help="Directory for grid PNGs")
    ap.add_argument("--max-channels", type=int, default=16)
    ap.add_argument("--watch", action="store_true", help="Re-predict whenever the file changes")
    ap.add_argument("--interval", type=float, default=0.25, help="Watch poll interval (s)")
    a = ap.parse_args(argv)
    return PredictArgs(
        image=Path(str(a.image)),
        model_url=str(a.model_url) if a.model_url else None,
        layer=str(a.layer) if a.layer else None,
        out_dir=Path(str(a.out_dir)),
        max_channels=int(a.max_channels),
        watch=bool(a.watch),
        interval_s=float(a.interval),
    )


def write_grid(
    result: PredictionResult, layer: str, out_dir: Path, max_channels: int
) -> list[Path]:
    tensor = result.activations.get(layer)
    if tensor is None:
        raise SystemExit(f"Layer '{layer}' not produced; available: {sorted(result.activations)}")
    container = GridContainer()
    render_grid(tensor, container, max_channels)
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for cell in container.cells:
        path = out_dir / f"{layer}_ch{cell.channel:03d}.png"
        path.write_bytes(cell.surface.to_png())
        written.append(path)
    notice = container.notice
    get_logger().info(
        "grid_written layer=%s dims=%s files=%d%s",
        layer,
        describe_dimensions(tensor).replace(" ", ""),
        len(written),
        f" notice={notice.text.replace(' ', '_')}" if notice is not None else "",
    )
    return written


def report(result: PredictionResult, seq: int | None = None) -> None:
    pct = confidence_percentages(result.probs)
    get_logger().info(
        "prediction digit=%d confidence=%d%%%s",
        result.prediction,
        pct[result.prediction],
        f" seq={seq}" if seq is not None else "",
    )


async def predict_once(engine: InferenceEngine, args: PredictArgs) -> PredictionResult:
    img = decode_canvas_png(args.image.read_bytes())
    result = await engine.predict(img)
    report(result)
    if args.layer is not None:
        write_grid(result, args.layer, args.out_dir, args.max_channels)
    return result


async def watch(
    engine: InferenceEngine,
    args: PredictArgs,
    sequencer: RequestSequencer,
    iterations: int | None = None,
) -> list[PredictionResult]:
    """Poll the canvas file and predict each new version.

    Predictions overlap freely; results overtaken by a newer file version are
    dropped via `sequencer`. Returns the results that were reported.
    """
    reported: list[PredictionResult] = []
    inflight: set[asyncio.Task[None]] = set()

    async def _one(seq: int, raw: bytes) -> None:
        try:
            result = await sequencer.resolve(seq, engine.predict(decode_canvas_png(raw)))
        except _PREDICT_ERRORS as exc:
            # no prediction for this version; the next file change tries again
            code = exc.code.value if isinstance(exc, AppError) else type(exc).__name__
            get_logger().warning("prediction_failed seq=%d code=%s", seq, code)
            return
        if result is not None:
            reported.append(result)
            report(result, seq)

    def _reap(task: asyncio.Task[None]) -> None:
        inflight.discard(task)
        if not task.cancelled() and (exc := task.exception()) is not None:
            get_logger().error("prediction_crashed error=%s", type(exc).__name__, exc_info=exc)

    last_mtime: float | None = None
    n = 0
    while iterations is None or n < iterations:
        n += 1
        mtime = args.image.stat().st_mtime
        if mtime != last_mtime:
            last_mtime = mtime
            task = asyncio.create_task(_one(sequencer.issue(), args.image.read_bytes()))
            inflight.add(task)
            task.add_done_callback(_reap)
        await asyncio.sleep(args.interval_s)
    if inflight:
        await asyncio.gather(*inflight)
    return reported


async def run(args: PredictArgs, settings: Settings) -> None:
    if args.model_url is not None:
        settings = replace(settings, model=replace(settings.model, url=args.model_url))
    engine = InferenceEngine(settings)
    try:
        if args.watch:
            await watch(engine, args, RequestSequencer())
        else:
            await predict_once(engine, args)
    finally:
        engine.shutdown()


def main() -> None:  # pragma: no cover - tiny glue
    from digitscope.logging import init_logging

    init_logging()
    asyncio.run(run(parse_args(), Settings.load()))


if __name__ == "__main__":
    main()
