"""Packing arbitrary photos onto the canonical frames of the editing service.

The editing service only accepts three frame classes (square, landscape and
portrait). Instead of shrinking the photo to fit, the canonical base is scaled
up until the photo fits inside it, and the photo is centred on a transparent
canvas of that size. Source pixels are never resampled here.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Tuple

import numpy as np

from framefit.config import get_config
from framefit.exceptions import ConfigurationError
from framefit.image_utils import ImageProcessor
from framefit.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()


@dataclass(frozen=True)
class CanonicalBase:
    name: str
    width: int
    height: int

    @property
    def aspect(self) -> float:
        return self.width / float(self.height)


_SHORT_EDGE = int(getattr(config, "FRAME_BASE_SHORT_EDGE", 1024))
_LONG_EDGE = int(getattr(config, "FRAME_BASE_LONG_EDGE", 1536))

SQUARE = CanonicalBase("square", _SHORT_EDGE, _SHORT_EDGE)
LANDSCAPE = CanonicalBase("landscape", _LONG_EDGE, _SHORT_EDGE)
PORTRAIT = CanonicalBase("portrait", _SHORT_EDGE, _LONG_EDGE)
CANONICAL_BASES = (SQUARE, LANDSCAPE, PORTRAIT)


@dataclass(frozen=True)
class ContentRect:
    """Sub-region of a canvas holding the original pixels."""

    left: int
    top: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.left + self.width

    @property
    def bottom(self) -> int:
        return self.top + self.height

    def scaled(self, sx: float, sy: float) -> "ContentRect":
        """Map proportionally onto a canvas resized by ``(sx, sy)``."""
        left = int(round(self.left * sx))
        top = int(round(self.top * sy))
        right = int(round(self.right * sx))
        bottom = int(round(self.bottom * sy))
        return ContentRect(left, top, right - left, bottom - top)

    def clamped(self, width: int, height: int) -> "ContentRect":
        """Intersect with ``[0, width) x [0, height)``; may become empty."""
        left = min(max(self.left, 0), width)
        top = min(max(self.top, 0), height)
        right = min(max(self.right, left), width)
        bottom = min(max(self.bottom, top), height)
        return ContentRect(left, top, right - left, bottom - top)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0


@dataclass(frozen=True)
class PreparedFrameMeta:
    """Everything needed to undo :func:`prepare` on an edited canvas."""

    base_w: int
    base_h: int
    target_w: int
    target_h: int
    content_rect: ContentRect
    original_w: int
    original_h: int
    downscale: float = 1.0

    @property
    def target_size(self) -> Tuple[int, int]:
        return self.target_w, self.target_h

    @property
    def original_size(self) -> Tuple[int, int]:
        return self.original_w, self.original_h

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreparedFrameMeta":
        try:
            rect = data["content_rect"]
            return cls(
                base_w=int(data["base_w"]),
                base_h=int(data["base_h"]),
                target_w=int(data["target_w"]),
                target_h=int(data["target_h"]),
                content_rect=ContentRect(
                    int(rect["left"]),
                    int(rect["top"]),
                    int(rect["width"]),
                    int(rect["height"]),
                ),
                original_w=int(data["original_w"]),
                original_h=int(data["original_h"]),
                downscale=float(data.get("downscale", 1.0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid frame metadata: {exc}") from exc


def choose_base(aspect: float) -> CanonicalBase:
    """Pick the canonical class for an aspect ratio (width / height)."""
    low = float(getattr(config, "FRAME_SQUARE_LOW", 0.79))
    high = float(getattr(config, "FRAME_SQUARE_HIGH", 1.31))
    if low <= aspect <= high:
        return SQUARE
    return LANDSCAPE if aspect > 1.0 else PORTRAIT


def prepare(source: np.ndarray) -> Tuple[np.ndarray, PreparedFrameMeta]:
    """
    Centre ``source`` on a transparent canvas of a scaled canonical base

    Args:
        source: BGR, BGRA or grayscale pixel buffer

    Returns:
        Tuple of (BGRA canvas, frame metadata)

    Raises:
        DecodeError: for malformed pixel buffers
    """
    image = ImageProcessor.ensure_image(source)
    src_h, src_w = image.shape[:2]

    base = choose_base(src_w / float(src_h))
    scale = max(src_w / float(base.width), src_h / float(base.height))
    target_w = max(src_w, int(round(base.width * scale)))
    target_h = max(src_h, int(round(base.height * scale)))

    left = (target_w - src_w) // 2
    top = (target_h - src_h) // 2

    canvas = np.zeros((target_h, target_w, 4), dtype=np.uint8)
    region = canvas[top : top + src_h, left : left + src_w]
    region[:, :, :3] = image[:, :, :3]
    region[:, :, 3] = image[:, :, 3] if image.shape[2] == 4 else 255

    meta = PreparedFrameMeta(
        base_w=base.width,
        base_h=base.height,
        target_w=target_w,
        target_h=target_h,
        content_rect=ContentRect(left, top, src_w, src_h),
        original_w=src_w,
        original_h=src_h,
    )
    logger.debug(
        "phase=prepare base=%s src=%sx%s target=%sx%s offset=(%s,%s)",
        base.name,
        src_w,
        src_h,
        target_w,
        target_h,
        left,
        top,
    )
    return canvas, meta
