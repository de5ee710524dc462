"""Round trip of a photo through the external fixed-resolution editing service"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np

from framefit.canonical_frame import PreparedFrameMeta, prepare
from framefit.frame_restore import FrameRestorer, crop_content
from framefit.image_upscaler import ImageUpscaler
from framefit.image_utils import ImageProcessor
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions

logger = setup_logger(__name__)

# (png_bytes, instruction, (base_w, base_h)) -> encoded edited image
Editor = Callable[[bytes, str, Tuple[int, int]], bytes]


@dataclass
class EditResult:
    """Return metadata for one edit round trip."""

    image: np.ndarray
    meta: PreparedFrameMeta
    returned_size: Tuple[int, int]
    upscaled: bool

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.shape[1], self.image.shape[0]


class FrameEditPipeline:
    """Prepares, sends, restores and exports photos for the editing service."""

    def __init__(
        self,
        editor: Editor,
        upscaler: Optional[ImageUpscaler] = None,
        options: Optional[UpscaleOptions] = None,
    ) -> None:
        self.editor = editor
        self.restorer = FrameRestorer(upscaler, options)
        logger.info("Initialized FrameEditPipeline")

    @property
    def upscaler(self) -> ImageUpscaler:
        return self.restorer.upscaler

    def prepare_bytes(self, image_bytes: bytes) -> Tuple[bytes, PreparedFrameMeta]:
        """Decode an upload and return the PNG canvas to send plus its metadata."""
        image = ImageProcessor.load_image_from_bytes(image_bytes)
        canvas, meta = prepare(image)
        return ImageProcessor.encode_png(canvas), meta

    def apply_edit(
        self, image: np.ndarray, instruction: str, allow_upscale: bool = True
    ) -> EditResult:
        """
        Run one edit through the editing service

        Args:
            image: Photo to edit (BGR/BGRA)
            instruction: Free-form edit instruction passed to the editor
            allow_upscale: Bring the result back to the original resolution;
                when False only the content crop is returned

        Raises:
            DecodeError: when the photo or the editor response is undecodable
        """
        canvas, meta = prepare(image)
        payload = ImageProcessor.encode_png(canvas)
        logger.info(
            "Sending %sx%s canvas (base %sx%s, %d bytes) to editor",
            meta.target_w,
            meta.target_h,
            meta.base_w,
            meta.base_h,
            len(payload),
        )

        response = self.editor(payload, instruction, (meta.base_w, meta.base_h))
        edited = ImageProcessor.load_image_from_bytes(response)
        returned_size = (edited.shape[1], edited.shape[0])

        crop = crop_content(edited, meta)
        upscaled = False
        if allow_upscale:
            upscaled = crop.shape[1] < meta.original_w or crop.shape[0] < meta.original_h
            result = self.export(crop, meta)
        else:
            result = crop

        logger.info(
            "Edit complete: returned=%sx%s final=%sx%s upscaled=%s",
            returned_size[0],
            returned_size[1],
            result.shape[1],
            result.shape[0],
            upscaled,
        )
        return EditResult(result, meta, returned_size, upscaled)

    def export(self, image: np.ndarray, meta: PreparedFrameMeta) -> np.ndarray:
        """Return ``image`` at exactly the original photo resolution."""
        if image.shape[1] == meta.original_w and image.shape[0] == meta.original_h:
            return image
        return self.restorer.fit_to_size(image, meta.original_w, meta.original_h)

    def close(self) -> None:
        self.restorer.close()
