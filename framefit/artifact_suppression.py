"""Post-filter for the low-frequency swirl artifacts of generative upscalers.

Flat regions of the network output are pulled towards a smoothed reference
(mostly a box blur of the output, partly a bicubic enlargement of the source),
while edges are kept as produced. An optional median pass cleans speckle in
the flattest areas.
"""

from __future__ import annotations

import cv2
import numpy as np

from framefit.logger import setup_logger

logger = setup_logger(__name__)

BLUR_WEIGHT = 0.7
GUIDE_WEIGHT = 0.3
EDGE_SOFTNESS = 10.0
FLAT_GRADIENT_THRESHOLD = 4.0


class ArtifactSuppressor:
    """Edge-aware blend between an upscaled image and a smooth reference."""

    @staticmethod
    def gradient_magnitude(image: np.ndarray) -> np.ndarray:
        bgr = image[:, :, :3].astype(np.float32)
        luma = 0.114 * bgr[:, :, 0] + 0.587 * bgr[:, :, 1] + 0.299 * bgr[:, :, 2]
        gx = cv2.Sobel(luma, cv2.CV_32F, 1, 0, ksize=3)
        gy = cv2.Sobel(luma, cv2.CV_32F, 0, 1, ksize=3)
        return cv2.magnitude(gx, gy)

    @staticmethod
    def box_blur(image: np.ndarray) -> np.ndarray:
        """3x3 mean of the interior; border pixels are copied through."""
        blurred = cv2.blur(image, (3, 3))
        blurred[0, :] = image[0, :]
        blurred[-1, :] = image[-1, :]
        blurred[:, 0] = image[:, 0]
        blurred[:, -1] = image[:, -1]
        return blurred

    def suppress(
        self,
        original: np.ndarray,
        upscaled: np.ndarray,
        strength: float,
        apply_low_gradient_median: bool = False,
    ) -> np.ndarray:
        """
        Blend flat regions of ``upscaled`` towards a smoothed reference

        Args:
            original: Pre-upscale source used as a structural guide
            upscaled: Network output (BGR or BGRA uint8)
            strength: 0 keeps the output, 1 fully replaces flat regions
            apply_low_gradient_median: Median-filter interior pixels whose
                gradient magnitude is below the flatness threshold

        Returns:
            Filtered image with the same shape as ``upscaled``
        """
        strength = float(np.clip(strength, 0.0, 1.0))
        if strength <= 0.0 and not apply_low_gradient_median:
            return upscaled

        height, width = upscaled.shape[:2]
        colour = np.ascontiguousarray(upscaled[:, :, :3])
        magnitude = self.gradient_magnitude(colour)
        result = colour

        if strength > 0.0:
            guide = cv2.resize(
                np.ascontiguousarray(original[:, :, :3]),
                (width, height),
                interpolation=cv2.INTER_CUBIC,
            ).astype(np.float32)
            raw = colour.astype(np.float32)
            reference = BLUR_WEIGHT * self.box_blur(raw) + GUIDE_WEIGHT * guide

            mask = (magnitude / (magnitude + EDGE_SOFTNESS))[..., None]
            keep = mask + (1.0 - mask) * (1.0 - strength)
            blended = keep * raw + (1.0 - keep) * reference
            result = np.clip(blended + 0.5, 0, 255).astype(np.uint8)

        if apply_low_gradient_median and height >= 3 and width >= 3:
            median = cv2.medianBlur(result, 3)
            flat = magnitude < FLAT_GRADIENT_THRESHOLD
            flat[0, :] = False
            flat[-1, :] = False
            flat[:, 0] = False
            flat[:, -1] = False
            result = result.copy() if result is colour else result
            result[flat] = median[flat]

        logger.debug(
            "phase=artifact_suppress size=%sx%s strength=%.2f median=%s",
            width,
            height,
            strength,
            apply_low_gradient_median,
        )
        if upscaled.ndim == 3 and upscaled.shape[2] == 4:
            return np.dstack([result, upscaled[:, :, 3]])
        return result
