"""Tiled 4x inference with feathered, quantized blending.

A pass splits its input into a grid of tiles, pads every tile by the overlap
on the sides that face another tile, runs the engine on each padded crop and
accumulates the results into integer sums weighted by a linear ramp that
fades towards the padded edges. Normalizing the sums yields a seam-free
output exactly ``scale`` times the input.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from framefit.exceptions import InferenceFailure, ResourceExhausted, UpscaleCancelled
from framefit.inference_backends import TileInferenceEngine
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions

logger = setup_logger(__name__)

WEIGHT_SCALE = 256
WEIGHT_MAX = np.iinfo(np.int16).max
BACKGROUND_VALUE = 0
# 12 bytes of channel sums + 2 bytes of weight + 4 bytes of output per pixel
BYTES_PER_OUTPUT_PIXEL = 18
TILE_BUDGET_MB = 32
TILE_SHRINK_STEP = 32
TILE_FALLBACK_STEPS = (192, 160)

_MB = 1024 * 1024


@dataclass(frozen=True)
class TileJob:
    """One tile in input pixels: the inner rect plus its clipped padding."""

    x: int
    y: int
    width: int
    height: int
    pad_left: int = 0
    pad_top: int = 0
    pad_right: int = 0
    pad_bottom: int = 0

    @property
    def inner_rect(self) -> Tuple[int, int, int, int]:
        return self.x, self.y, self.width, self.height

    @property
    def source_rect(self) -> Tuple[int, int, int, int]:
        return (
            self.x - self.pad_left,
            self.y - self.pad_top,
            self.width + self.pad_left + self.pad_right,
            self.height + self.pad_top + self.pad_bottom,
        )


def plan_tiles(width: int, height: int, tile_size: int, overlap: int) -> List[TileJob]:
    """Grid of ``tile_size`` tiles covering the image, padded on interior sides."""
    if tile_size <= 0:
        raise ValueError("tile_size must be positive")
    jobs = []
    for y0 in range(0, height, tile_size):
        tile_h = min(tile_size, height - y0)
        for x0 in range(0, width, tile_size):
            tile_w = min(tile_size, width - x0)
            jobs.append(
                TileJob(
                    x=x0,
                    y=y0,
                    width=tile_w,
                    height=tile_h,
                    pad_left=min(overlap, x0),
                    pad_top=min(overlap, y0),
                    pad_right=min(overlap, width - (x0 + tile_w)),
                    pad_bottom=min(overlap, height - (y0 + tile_h)),
                )
            )
    return jobs


def _ramp(length: int, fade_start: bool, fade_end: bool, ramp: int) -> np.ndarray:
    weights = np.ones(length, dtype=np.float32)
    if ramp <= 0:
        return weights
    distance = np.arange(length, dtype=np.float32)
    if fade_start:
        weights = np.minimum(weights, distance / ramp)
    if fade_end:
        weights = np.minimum(weights, distance[::-1] / ramp)
    return weights


def edge_weights(job: TileJob, scale: int, overlap: int) -> np.ndarray:
    """Quantized feather weights for a tile's full (padded) output."""
    _, _, src_w, src_h = job.source_rect
    ramp = overlap * scale
    wx = _ramp(src_w * scale, job.pad_left > 0, job.pad_right > 0, ramp)
    wy = _ramp(src_h * scale, job.pad_top > 0, job.pad_bottom > 0, ramp)
    weights = np.minimum.outer(wy, wx)
    return np.maximum(1, np.round(weights * WEIGHT_SCALE)).astype(np.int32)


class AccumulatorBuffer:
    """Per-pixel int32 channel sums and a saturating int16 weight."""

    def __init__(self, width: int, height: int, channels: int = 3) -> None:
        self.width = width
        self.height = height
        self.sums = np.zeros((height, width, channels), dtype=np.int32)
        self.weights = np.zeros((height, width), dtype=np.int16)

    def add(self, x: int, y: int, values: np.ndarray, weights: np.ndarray) -> None:
        h, w = weights.shape
        region = self.weights[y : y + h, x : x + w]
        current = region.astype(np.int32)
        # Sums only take the share of weight that still fits under WEIGHT_MAX
        accepted = np.minimum(weights, WEIGHT_MAX - current)
        self.sums[y : y + h, x : x + w] += values.astype(np.int32) * accepted[..., None]
        region[...] = current + accepted

    def normalize(self, background: int = BACKGROUND_VALUE) -> np.ndarray:
        weights = self.weights.astype(np.int32)
        safe = np.maximum(weights, 1)[..., None]
        blended = (self.sums + safe // 2) // safe
        blended[weights == 0] = background
        return np.clip(blended, 0, 255).astype(np.uint8)

    @property
    def nbytes(self) -> int:
        return self.sums.nbytes + self.weights.nbytes


def estimate_pass_megabytes(width: int, height: int, scale: int = 4) -> float:
    """Projected footprint of blending one pass over a ``width x height`` input."""
    return (width * scale) * (height * scale) * BYTES_PER_OUTPUT_PIXEL / float(_MB)


def fit_tile_to_budget(
    tile_size: int,
    overlap: int,
    min_tile_size: int,
    scale: int = 4,
    budget_mb: int = TILE_BUDGET_MB,
) -> int:
    """Shrink ``tile_size`` until one tile's float in/out buffers fit the budget."""
    tile = tile_size
    while tile > min_tile_size:
        crop = tile + 2 * overlap
        in_floats = crop * crop * 3
        out_floats = (crop * scale) * (crop * scale) * 3
        if 4 * (in_floats + out_floats) // _MB < budget_mb:
            break
        tile -= TILE_SHRINK_STEP
    return max(tile, min_tile_size)


def reduce_tile_size(current: int, min_tile_size: int) -> int:
    for step in TILE_FALLBACK_STEPS:
        if current > step >= min_tile_size:
            return step
    return min_tile_size


def is_memory_error(exc: BaseException) -> bool:
    if isinstance(exc, MemoryError):
        return True
    name = exc.__class__.__name__.lower()
    if "memory" in name:
        return True
    message = str(exc).lower()
    return "out of memory" in message or "cuda oom" in message


class TiledUpscalePass:
    """Runs one 4x pass of ``engine`` over an image, tile by tile."""

    def __init__(
        self,
        engine: TileInferenceEngine,
        lock: threading.RLock,
        options: UpscaleOptions,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.engine = engine
        self.lock = lock
        self.options = options
        self.cancel_event = cancel_event
        self.scale = int(getattr(engine, "scale", 4))
        self.stats: dict = {}

    def run(self, image: np.ndarray) -> np.ndarray:
        """
        Upscale a BGR uint8 image by exactly ``scale``

        Raises:
            ResourceExhausted: when every attempt ran out of memory
            InferenceFailure: when the engine fails for another reason
            UpscaleCancelled: when the cancel event is set between tiles
        """
        options = self.options
        tile_size = fit_tile_to_budget(
            min(options.initial_tile_size, options.tile_size),
            options.tile_overlap,
            options.min_tile_size,
            scale=self.scale,
        )

        height, width = image.shape[:2]
        for attempt in range(options.max_retries):
            try:
                return self._run_once(image, tile_size, attempt)
            except MemoryError as exc:
                tile_size = reduce_tile_size(tile_size, options.min_tile_size)
                logger.warning(
                    "Out of memory on attempt %d; retrying with tile size %d (%s)",
                    attempt + 1,
                    tile_size,
                    exc,
                )

        raise ResourceExhausted(
            "tiled_pass",
            estimate_pass_megabytes(width, height, self.scale),
            float(options.max_output_megabytes),
            f"gave up after {options.max_retries} attempts",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _run_once(self, image: np.ndarray, tile_size: int, attempt: int) -> np.ndarray:
        height, width = image.shape[:2]
        overlap = self.options.tile_overlap
        jobs = plan_tiles(width, height, tile_size, overlap)
        buffer = AccumulatorBuffer(width * self.scale, height * self.scale)

        started = time.perf_counter()
        for job in jobs:
            self._check_cancelled()
            output = self._infer_tile(image, job)
            buffer.add(
                (job.x - job.pad_left) * self.scale,
                (job.y - job.pad_top) * self.scale,
                output,
                edge_weights(job, self.scale, overlap),
            )
        result = buffer.normalize()
        elapsed_ms = (time.perf_counter() - started) * 1000.0

        self.stats = {
            "tiles": len(jobs),
            "elapsed_ms": elapsed_ms,
            "tile_size": tile_size,
            "overlap": overlap,
            "attempts": attempt + 1,
        }
        logger.debug(
            "phase=tiled_pass tiles=%d ms=%.0f tileSize=%d overlap=%d",
            len(jobs),
            elapsed_ms,
            tile_size,
            overlap,
        )
        return result

    def _infer_tile(self, image: np.ndarray, job: TileJob) -> np.ndarray:
        sx, sy, sw, sh = job.source_rect
        crop = image[sy : sy + sh, sx : sx + sw, :3]
        rgb = crop[:, :, ::-1].astype(np.float32) / 255.0

        try:
            with self.lock:
                output = self.engine.infer(rgb)
        except Exception as exc:
            if is_memory_error(exc):
                raise MemoryError(str(exc)) from exc
            raise InferenceFailure(self.engine.name, str(exc)) from exc

        expected = (sh * self.scale, sw * self.scale, 3)
        if output is None or tuple(output.shape) != expected:
            raise InferenceFailure(
                self.engine.name,
                f"expected tile of shape {expected}, got "
                f"{None if output is None else tuple(output.shape)}",
            )
        bgr = np.clip(output[:, :, ::-1] * 255.0 + 0.5, 0, 255)
        return bgr.astype(np.uint8)

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.info("Tiled pass cancelled; discarding partial output")
            raise UpscaleCancelled()
