"""Recovering the original geometry from an edited canonical canvas."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from framefit.canonical_frame import PreparedFrameMeta
from framefit.exceptions import ConfigurationError
from framefit.image_upscaler import ImageUpscaler
from framefit.image_utils import ImageProcessor
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions

logger = setup_logger(__name__)


def crop_content(canvas: np.ndarray, meta: PreparedFrameMeta) -> np.ndarray:
    """Cut the content rectangle out of ``canvas``, whatever size it came back at."""
    canvas = ImageProcessor.ensure_image(canvas)
    height, width = canvas.shape[:2]

    rect = meta.content_rect
    if (width, height) != meta.target_size:
        rect = rect.scaled(width / float(meta.target_w), height / float(meta.target_h))
    rect = rect.clamped(width, height)
    if rect.is_empty:
        raise ConfigurationError(
            f"Content rect {meta.content_rect} does not intersect a "
            f"{width}x{height} canvas"
        )
    return canvas[rect.top : rect.bottom, rect.left : rect.right].copy()


def fit_to_size(
    image: np.ndarray,
    width: int,
    height: int,
    upscaler: Optional[ImageUpscaler] = None,
    options: Optional[UpscaleOptions] = None,
) -> np.ndarray:
    """Bring ``image`` to exactly ``width x height``.

    Images covering the size on both axes are area-downscaled; anything
    smaller goes through ``ImageUpscaler.upscale_to_match``.
    """
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Invalid target size {width}x{height}")
    src_h, src_w = image.shape[:2]
    if (src_w, src_h) == (width, height):
        return image

    if src_w >= width and src_h >= height:
        logger.debug(
            "phase=restore from=%sx%s downscale=%sx%s", src_w, src_h, width, height
        )
        return ImageProcessor.resize_to(image, width, height)

    logger.debug("phase=restore from=%sx%s upscale=%sx%s", src_w, src_h, width, height)
    if upscaler is not None:
        return upscaler.upscale_to_match(image, width, height, options=options)
    with ImageUpscaler() as temporary:
        return temporary.upscale_to_match(image, width, height, options=options)


def restore(
    canvas: np.ndarray,
    meta: PreparedFrameMeta,
    scale_to_original: bool = False,
    target_size: Optional[Tuple[int, int]] = None,
    upscaler: Optional[ImageUpscaler] = None,
    options: Optional[UpscaleOptions] = None,
) -> np.ndarray:
    """
    Crop the content of an edited canvas and optionally bring it to a size

    Args:
        canvas: Canvas returned by the editing service (any size)
        meta: Metadata produced by ``prepare`` for this canvas
        scale_to_original: Resize the crop to the original photo size
        target_size: Explicit ``(width, height)``; wins over ``scale_to_original``
        upscaler: Upscaler to reuse; a temporary one is built when omitted
        options: Options forwarded to the upscaler

    Raises:
        ConfigurationError: when the content rect misses the canvas or the
            requested size is not positive
    """
    if target_size is not None and (target_size[0] <= 0 or target_size[1] <= 0):
        raise ConfigurationError(f"Invalid restore target {target_size}")

    crop = crop_content(canvas, meta)
    desired = target_size
    if desired is None and scale_to_original:
        desired = meta.original_size
    if desired is None:
        logger.debug("phase=restore crop=%sx%s resize=none", crop.shape[1], crop.shape[0])
        return crop
    return fit_to_size(
        crop, int(desired[0]), int(desired[1]), upscaler=upscaler, options=options
    )


class FrameRestorer:
    """Restores canvases through one shared upscaler so the engine is built once."""

    def __init__(
        self,
        upscaler: Optional[ImageUpscaler] = None,
        options: Optional[UpscaleOptions] = None,
    ) -> None:
        self._owns_upscaler = upscaler is None
        self.upscaler = upscaler or ImageUpscaler()
        self.options = options

    def restore(
        self,
        canvas: np.ndarray,
        meta: PreparedFrameMeta,
        scale_to_original: bool = False,
        target_size: Optional[Tuple[int, int]] = None,
    ) -> np.ndarray:
        return restore(
            canvas,
            meta,
            scale_to_original=scale_to_original,
            target_size=target_size,
            upscaler=self.upscaler,
            options=self.options,
        )

    def fit_to_size(self, image: np.ndarray, width: int, height: int) -> np.ndarray:
        return fit_to_size(
            image, width, height, upscaler=self.upscaler, options=self.options
        )

    def close(self) -> None:
        if self._owns_upscaler:
            self.upscaler.close()

    def __enter__(self) -> "FrameRestorer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
