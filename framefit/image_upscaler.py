"""Super-resolution orchestration for FrameFit.

``ImageUpscaler.upscale_to_match`` brings an image up to (at least) a target
size while bounding memory:

1. Already large enough -> returned untouched
2. Small enlargement or no inference backend -> deterministic resize + sharpen
3. Otherwise optional pre-scale, tiled 4x passes, a final exact resize and
   artifact suppression

Failures inside the neural path degrade to the best image produced so far or
to the deterministic resize; only bad input and cancellation reach callers.
"""

from __future__ import annotations

import gc
import math
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import cv2
import numpy as np

from framefit.artifact_suppression import ArtifactSuppressor
from framefit.backend_manager import InferenceBackendManager
from framefit.config import get_config
from framefit.exceptions import (
    BackendUnavailable,
    ConfigurationError,
    InferenceFailure,
    ResourceExhausted,
    UpscaleCancelled,
)
from framefit.image_utils import ImageProcessor
from framefit.inference_backends import ENGINE_SCALE, TileInferenceEngine
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions
from framefit.tiling import TiledUpscalePass, estimate_pass_megabytes

logger = setup_logger(__name__)
config = get_config()

MIN_PRESCALE_EDGE = 8
# Final downscales smaller than this ratio are not sharpened
SHARPEN_DOWNSCALE_RATIO = 1.05


@dataclass
class UpscaleReport:
    """What one ``upscale`` call did; owned by that call alone."""

    backend: str = "uninitialized"
    stage: str = "idle"
    passes: int = 0
    pass_stats: List[dict] = field(default_factory=list)

    def mark(self, backend: str, stage: str) -> None:
        self.backend = backend
        self.stage = stage
        logger.debug("phase=upscale_stage backend=%s stage=%s", backend, stage)


class ImageUpscaler:
    """Upscales images to a requested size through one managed engine.

    The upscaler owns (or borrows) an :class:`InferenceBackendManager`; engine
    selection and the whole neural section of a call run under the manager's
    inference lock, so concurrent calls on a shared upscaler are serialized.
    """

    def __init__(
        self,
        manager: Optional[InferenceBackendManager] = None,
        options: Optional[UpscaleOptions] = None,
        suppressor: Optional[ArtifactSuppressor] = None,
    ) -> None:
        self._owns_manager = manager is None
        self.manager = manager or InferenceBackendManager()
        self.options = options or UpscaleOptions.from_config()
        self.suppressor = suppressor or ArtifactSuppressor()
        self.max_passes = max(1, int(getattr(config, "UPSCALE_MAX_PASSES", 5)))
        self.last_report = UpscaleReport()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def upscale_to_match(
        self,
        source: np.ndarray,
        target_w: int,
        target_h: int,
        options: Optional[UpscaleOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """
        Upscale ``source`` so it covers ``target_w x target_h``

        Args:
            source: BGR or BGRA uint8 image
            target_w: Requested width in pixels
            target_h: Requested height in pixels
            options: Per-call options (defaults to the upscaler's options)
            cancel_event: Set it from another thread to abort between tiles

        Returns:
            The source itself when it already covers the target, otherwise an
            image of exactly ``target_w x target_h``

        Raises:
            ConfigurationError: for non-positive targets
            DecodeError: for malformed source buffers
            UpscaleCancelled: when ``cancel_event`` is set mid-pass
        """
        image, _ = self.upscale(source, target_w, target_h, options, cancel_event)
        return image

    def upscale(
        self,
        source: np.ndarray,
        target_w: int,
        target_h: int,
        options: Optional[UpscaleOptions] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[np.ndarray, UpscaleReport]:
        """Same as :meth:`upscale_to_match`, also returning this call's report."""
        report = UpscaleReport()
        try:
            image = self._upscale(
                source, target_w, target_h, options or self.options, cancel_event, report
            )
        finally:
            self.last_report = report
        return image, report

    def close(self) -> None:
        """Release the inference engine when this upscaler owns the manager."""
        if self._owns_manager:
            self.manager.close()

    def __enter__(self) -> "ImageUpscaler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def last_backend(self) -> str:
        return self.last_report.backend

    @property
    def last_stage(self) -> str:
        return self.last_report.stage

    @property
    def last_passes(self) -> int:
        return self.last_report.passes

    @property
    def last_pass_stats(self) -> List[dict]:
        return self.last_report.pass_stats

    # ------------------------------------------------------------------
    # Decision ladder
    # ------------------------------------------------------------------
    def _upscale(
        self,
        source: np.ndarray,
        target_w: int,
        target_h: int,
        options: UpscaleOptions,
        cancel_event: Optional[threading.Event],
        report: UpscaleReport,
    ) -> np.ndarray:
        if target_w <= 0 or target_h <= 0:
            raise ConfigurationError(
                f"Target dimensions must be positive, got {target_w}x{target_h}"
            )
        image = ImageProcessor.ensure_image(source)

        src_h, src_w = image.shape[:2]
        required_scale = max(target_w / float(src_w), target_h / float(src_h))
        logger.debug(
            "phase=upscale_entry src=%sx%s target=%sx%s requiredScale=%.3f threshold=%.2f",
            src_w,
            src_h,
            target_w,
            target_h,
            required_scale,
            options.min_scale_threshold,
        )

        if src_w >= target_w and src_h >= target_h:
            report.mark("none", "already_large")
            return image

        if required_scale < options.min_scale_threshold:
            report.mark("deterministic", "below_threshold")
            return ImageProcessor.deterministic_resize(image, target_w, target_h)

        # The engine may only be closed by a reconfiguration while nobody
        # holds the inference lock
        with self.manager.inference_lock:
            engine = self.manager.ensure_ready(options)
            if engine is not None:
                return self._run_neural(
                    image,
                    engine,
                    target_w,
                    target_h,
                    required_scale,
                    options,
                    cancel_event,
                    report,
                )
            probe_result = self.manager.last_result

        if probe_result is not None:
            logger.info(
                "%s", BackendUnavailable(probe_result.backend, probe_result.reason)
            )
        report.mark("deterministic", "backend_unavailable")
        return ImageProcessor.deterministic_resize(image, target_w, target_h)

    def _run_neural(
        self,
        image: np.ndarray,
        engine: TileInferenceEngine,
        target_w: int,
        target_h: int,
        required_scale: float,
        options: UpscaleOptions,
        cancel_event: Optional[threading.Event],
        report: UpscaleReport,
    ) -> np.ndarray:
        try:
            return self._neural_upscale(
                image,
                engine,
                target_w,
                target_h,
                required_scale,
                options,
                cancel_event,
                report,
            )
        except UpscaleCancelled:
            report.mark(engine.name, "cancelled")
            raise
        except Exception as exc:
            logger.error(
                "Neural upscale failed; using deterministic resize: %s",
                exc,
                exc_info=True,
            )
            report.mark("deterministic", "fallback")
            return ImageProcessor.deterministic_resize(image, target_w, target_h)
        finally:
            self._cleanup_memory()

    # ------------------------------------------------------------------
    # Neural path
    # ------------------------------------------------------------------
    def _neural_upscale(
        self,
        image: np.ndarray,
        engine: TileInferenceEngine,
        target_w: int,
        target_h: int,
        required_scale: float,
        options: UpscaleOptions,
        cancel_event: Optional[threading.Event],
        report: UpscaleReport,
    ) -> np.ndarray:
        started = time.perf_counter()
        colour, alpha = self._split_alpha(image)

        current = self._maybe_prescale(colour, required_scale, options)
        passes = self._compute_passes(required_scale)
        tiled_pass = TiledUpscalePass(
            engine, self.manager.inference_lock, options, cancel_event
        )

        for index in range(passes):
            height, width = current.shape[:2]
            if width >= target_w and height >= target_h:
                break
            if not self._memory_safe(width, height, options):
                break
            try:
                current = tiled_pass.run(current)
            except (ResourceExhausted, InferenceFailure) as exc:
                logger.warning(
                    "Pass %d/%d failed, keeping best image so far: %s",
                    index + 1,
                    passes,
                    exc,
                )
                break
            report.passes += 1
            report.pass_stats.append(dict(tiled_pass.stats))
            logger.debug(
                "phase=upscale_pass idx=%d/%d out=%sx%s",
                index + 1,
                passes,
                current.shape[1],
                current.shape[0],
            )

        if report.passes == 0:
            logger.warning("No super-resolution pass completed; resizing deterministically")
            report.mark("deterministic", "degraded")
            return ImageProcessor.deterministic_resize(image, target_w, target_h)

        current = self._finalize_resolution(current, target_w, target_h)

        if options.swirl_suppression > 0 or options.enable_artifact_denoise:
            current = self.suppressor.suppress(
                colour,
                current,
                options.swirl_suppression,
                apply_low_gradient_median=options.enable_artifact_denoise,
            )

        if alpha is not None:
            alpha = cv2.resize(alpha, (target_w, target_h), interpolation=cv2.INTER_CUBIC)
            current = np.dstack([current, alpha])

        report.mark(engine.name, "complete")
        logger.info(
            "phase=upscale_complete backend=%s final=%sx%s passes=%d ms=%.0f",
            engine.name,
            target_w,
            target_h,
            report.passes,
            (time.perf_counter() - started) * 1000.0,
        )
        return current

    def _maybe_prescale(
        self, image: np.ndarray, required_scale: float, options: UpscaleOptions
    ) -> np.ndarray:
        if required_scale >= ENGINE_SCALE:
            return image
        if ENGINE_SCALE / required_scale <= options.pre_scale_headroom:
            return image

        factor = required_scale / ENGINE_SCALE
        height, width = image.shape[:2]
        new_w = max(MIN_PRESCALE_EDGE, int(math.ceil(width * factor)))
        new_h = max(MIN_PRESCALE_EDGE, int(math.ceil(height * factor)))
        if new_w >= width and new_h >= height:
            logger.debug("phase=prescale skipped factor=%.3f", factor)
            return image

        logger.debug(
            "phase=prescale applied factor=%.3f prescaled=%sx%s", factor, new_w, new_h
        )
        return ImageProcessor.resize_to(image, new_w, new_h)

    def _compute_passes(self, required_scale: float) -> int:
        passes = max(1, int(math.floor(math.log(required_scale, ENGINE_SCALE) + 1e-9)))
        return min(passes, self.max_passes)

    def _memory_safe(self, width: int, height: int, options: UpscaleOptions) -> bool:
        if not options.adaptive_memory_guard:
            return True
        projected = estimate_pass_megabytes(width, height, ENGINE_SCALE)
        safe = projected <= options.max_output_megabytes
        logger.debug(
            "phase=memory_estimate out=%sx%s estMB=%.1f limit=%s safe=%s",
            width * ENGINE_SCALE,
            height * ENGINE_SCALE,
            projected,
            options.max_output_megabytes,
            safe,
        )
        if not safe:
            logger.warning(
                "%s",
                ResourceExhausted(
                    "upscale_pass", projected, float(options.max_output_megabytes)
                ),
            )
        return safe

    def _finalize_resolution(
        self, image: np.ndarray, target_w: int, target_h: int
    ) -> np.ndarray:
        height, width = image.shape[:2]
        if (width, height) == (target_w, target_h):
            return image

        resized = ImageProcessor.resize_to(image, target_w, target_h)
        if (
            width > target_w * SHARPEN_DOWNSCALE_RATIO
            or height > target_h * SHARPEN_DOWNSCALE_RATIO
        ):
            resized = ImageProcessor.unsharp(resized)
        logger.debug(
            "phase=fractional_resize from=%sx%s to=%sx%s", width, height, target_w, target_h
        )
        return resized

    # ------------------------------------------------------------------
    # Utility helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _split_alpha(image: np.ndarray) -> Tuple[np.ndarray, Optional[np.ndarray]]:
        if image.shape[2] == 4:
            return np.ascontiguousarray(image[:, :, :3]), image[:, :, 3].copy()
        return image, None

    def _cleanup_memory(self) -> None:
        gc.collect()
