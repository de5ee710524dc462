"""
Image codec and deterministic resampling helpers
"""

import io
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import cv2
import numpy as np
from PIL import Image, ImageFilter

from framefit.config import get_config
from framefit.exceptions import ConfigurationError, DecodeError, FrameFitError
from framefit.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

# Mean neighbour luma difference above which the legacy path denoises first
NOISE_DENOISE_THRESHOLD = 8.0


class ImageProcessor:
    """Codec, validation and interpolation helpers.

    Every array handed out by this class is ``uint8`` BGR or BGRA, the layout
    used by OpenCV. Grayscale inputs are promoted to BGR.
    """

    # ------------------------------------------------------------------
    # Decoding / encoding
    # ------------------------------------------------------------------
    @staticmethod
    def load_image(image_path: Union[str, Path]) -> np.ndarray:
        """
        Load image from a file path

        Args:
            image_path: Path to image file

        Returns:
            Image as numpy array (BGR or BGRA)

        Raises:
            DecodeError: when the file is missing or no decoder accepts it
        """
        path = Path(image_path)
        if not path.exists():
            raise DecodeError(f"Image file does not exist: {path}")

        image = ImageProcessor._try_decoders(
            (
                lambda: ImageProcessor._decode_with_cv2_path(str(path)),
                lambda: ImageProcessor._decode_with_pillow(str(path)),
            )
        )
        if image is None:
            raise DecodeError(f"Failed to decode image: {path}")

        logger.debug("Loaded image %s (%sx%s)", path, image.shape[1], image.shape[0])
        return ImageProcessor.ensure_image(image)

    @staticmethod
    def load_image_from_bytes(image_bytes: bytes) -> np.ndarray:
        """
        Decode an encoded image (PNG, JPEG, WebP, ...) into a pixel buffer

        Raises:
            DecodeError: when the payload is empty or undecodable
        """
        if not image_bytes:
            raise DecodeError("Empty image payload")

        image = ImageProcessor._try_decoders(
            (
                lambda: ImageProcessor._decode_with_cv2_bytes(image_bytes),
                lambda: ImageProcessor._decode_with_pillow(io.BytesIO(image_bytes)),
            )
        )
        if image is None:
            raise DecodeError(
                f"Failed to decode image payload ({len(image_bytes)} bytes)"
            )
        return ImageProcessor.ensure_image(image)

    @staticmethod
    def encode_png(image: np.ndarray) -> bytes:
        """Encode to lossless PNG; the alpha plane is kept when present."""
        image = ImageProcessor.ensure_image(image)
        ok, buffer = cv2.imencode(".png", image)
        if not ok:
            raise FrameFitError("cv2.imencode failed for PNG", stage="encode")
        return buffer.tobytes()

    @staticmethod
    def ensure_image(image) -> np.ndarray:
        """
        Validate a pixel buffer and normalize it to uint8 BGR/BGRA

        Raises:
            DecodeError: for anything that is not a non-empty 2-D or 3-D array
                with 1, 3 or 4 channels
        """
        if not isinstance(image, np.ndarray):
            raise DecodeError(f"Expected a numpy array, got {type(image).__name__}")
        if image.ndim not in (2, 3) or image.size == 0:
            raise DecodeError(f"Malformed pixel buffer with shape {image.shape}")
        if image.shape[0] < 1 or image.shape[1] < 1:
            raise DecodeError(f"Malformed pixel buffer with shape {image.shape}")

        if image.dtype == np.uint16:
            image = (image >> 8).astype(np.uint8)
        elif image.dtype in (np.float32, np.float64):
            image = np.clip(image * 255.0 + 0.5, 0, 255).astype(np.uint8)
        elif image.dtype != np.uint8:
            raise DecodeError(f"Unsupported pixel type {image.dtype}")

        if image.ndim == 2 or image.shape[2] == 1:
            return cv2.cvtColor(
                image.reshape(image.shape[0], image.shape[1]), cv2.COLOR_GRAY2BGR
            )
        if image.shape[2] not in (3, 4):
            raise DecodeError(f"Unsupported channel count {image.shape[2]}")
        return np.ascontiguousarray(image)

    # ------------------------------------------------------------------
    # Interpolation
    # ------------------------------------------------------------------
    @staticmethod
    def resize_to(image: np.ndarray, width: int, height: int) -> np.ndarray:
        """Resize to exact dimensions; area sampling down, bicubic up."""
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"Invalid resize target {width}x{height}")
        src_h, src_w = image.shape[:2]
        if (src_w, src_h) == (width, height):
            return image
        interpolation = (
            cv2.INTER_AREA if width <= src_w and height <= src_h else cv2.INTER_CUBIC
        )
        return cv2.resize(image, (width, height), interpolation=interpolation)

    @staticmethod
    def unsharp(
        image: np.ndarray, radius: float = 1.5, percent: int = 50, threshold: int = 2
    ) -> np.ndarray:
        """Apply an unsharp mask to the colour channels, leaving alpha untouched."""
        colour = image[:, :, :3]
        pil_image = Image.fromarray(np.ascontiguousarray(colour[:, :, ::-1]))
        sharpened = pil_image.filter(
            ImageFilter.UnsharpMask(radius=radius, percent=percent, threshold=threshold)
        )
        result = np.array(sharpened)[:, :, ::-1]
        if image.shape[2] == 4:
            return np.dstack([result, image[:, :, 3]])
        return np.ascontiguousarray(result)

    @staticmethod
    def deterministic_resize(
        image: np.ndarray, width: int, height: int, sharpen: bool = True
    ) -> np.ndarray:
        """
        Interpolation-only resize used whenever neural inference is skipped

        Enlargements of 2x or more take the progressive path: optional median
        denoise, repeated doubling, a final exact step and a light unsharp
        mask. Everything else is a single resize plus (optionally) a sharpen.
        """
        image = ImageProcessor.ensure_image(image)
        src_h, src_w = image.shape[:2]
        if (src_w, src_h) == (width, height):
            return image

        if width >= src_w * 2 and height >= src_h * 2:
            return ImageProcessor._progressive_upscale(image, width, height)

        resized = ImageProcessor.resize_to(image, width, height)
        if sharpen:
            resized = ImageProcessor.unsharp(resized)
        return resized

    @staticmethod
    def _progressive_upscale(image: np.ndarray, width: int, height: int) -> np.ndarray:
        source = ImageProcessor.denoise_if_noisy(image)
        current = source
        current_w, current_h = source.shape[1], source.shape[0]

        while current_w * 2 < width and current_h * 2 < height:
            current_w, current_h = current_w * 2, current_h * 2
            current = cv2.resize(
                current, (current_w, current_h), interpolation=cv2.INTER_CUBIC
            )

        if (current_w, current_h) != (width, height):
            current = cv2.resize(current, (width, height), interpolation=cv2.INTER_CUBIC)

        logger.debug(
            "Progressive upscale (denoise=%s) %sx%s -> %sx%s",
            source is not image,
            image.shape[1],
            image.shape[0],
            width,
            height,
        )
        return ImageProcessor.unsharp(current, percent=35)

    # ------------------------------------------------------------------
    # Noise handling
    # ------------------------------------------------------------------
    @staticmethod
    def estimate_noise(image: np.ndarray) -> float:
        """Mean absolute luma step to the right/down neighbours on a sparse grid."""
        height, width = image.shape[:2]
        if width < 4 or height < 4:
            return 0.0

        step_x = max(1, width // 32)
        step_y = max(1, height // 32)
        bgr = image[:, :, :3].astype(np.int32)
        luma = (299 * bgr[:, :, 2] + 587 * bgr[:, :, 1] + 114 * bgr[:, :, 0]) // 1000

        ys = np.arange(1, height - 1, step_y)[:, None]
        xs = np.arange(1, width - 1, step_x)[None, :]
        centre = luma[ys, xs]
        right = np.abs(centre - luma[ys, xs + 1])
        down = np.abs(centre - luma[ys + 1, xs])
        return float((right.sum() + down.sum()) / (2 * centre.size))

    @staticmethod
    def median_denoise(image: np.ndarray) -> np.ndarray:
        """3x3 median on interior colour pixels; border rows and columns are kept."""
        result = image.copy()
        if image.shape[0] < 3 or image.shape[1] < 3:
            return result
        filtered = cv2.medianBlur(np.ascontiguousarray(image[:, :, :3]), 3)
        result[1:-1, 1:-1, :3] = filtered[1:-1, 1:-1]
        return result

    @staticmethod
    def denoise_if_noisy(image: np.ndarray) -> np.ndarray:
        noise = ImageProcessor.estimate_noise(image)
        if noise >= NOISE_DENOISE_THRESHOLD:
            logger.debug("Denoising before upscale (noise=%.2f)", noise)
            return ImageProcessor.median_denoise(image)
        logger.debug("Skipping denoise (noise=%.2f)", noise)
        return image

    # ------------------------------------------------------------------
    # Decoder plumbing
    # ------------------------------------------------------------------
    @staticmethod
    def _try_decoders(
        decoders: Iterable[Callable[[], Optional[np.ndarray]]],
    ) -> Optional[np.ndarray]:
        for decode in decoders:
            try:
                image = decode()
            except Exception as exc:
                logger.debug("Decoder failed: %s", exc)
                continue
            if image is not None:
                return image
        return None

    @staticmethod
    def _decode_with_cv2_path(image_path: str) -> Optional[np.ndarray]:
        return cv2.imread(image_path, cv2.IMREAD_UNCHANGED)

    @staticmethod
    def _decode_with_cv2_bytes(image_bytes: bytes) -> Optional[np.ndarray]:
        nparr = np.frombuffer(image_bytes, np.uint8)
        if nparr.size == 0:
            return None
        return cv2.imdecode(nparr, cv2.IMREAD_UNCHANGED)

    @staticmethod
    def _decode_with_pillow(source) -> Optional[np.ndarray]:
        with Image.open(source) as pil_image:
            if getattr(pil_image, "is_animated", False):
                pil_image.seek(0)
            has_alpha = pil_image.mode in ("RGBA", "LA", "PA") or (
                "transparency" in pil_image.info
            )
            if has_alpha:
                data = np.array(pil_image.convert("RGBA"))
                return data[:, :, [2, 1, 0, 3]]
            data = np.array(pil_image.convert("RGB"))
            return data[:, :, ::-1]
