"""Tests covering flexible image decoding and deterministic resampling."""

import io

import numpy as np
import pytest
from PIL import Image, features

from framefit import image_utils
from framefit.exceptions import ConfigurationError, DecodeError
from framefit.image_utils import ImageProcessor


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _checkerboard(size=16):
    board = (np.indices((size, size)).sum(axis=0) % 2) * 255
    return np.repeat(board[:, :, None], 3, axis=2).astype(np.uint8)


def test_load_image_from_bytes_supports_webp():
    if not features.check("webp"):
        pytest.skip("Pillow build lacks WebP support")

    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), color=(255, 0, 0)).save(buffer, format="WEBP")

    decoded = ImageProcessor.load_image_from_bytes(buffer.getvalue())

    assert decoded.shape == (4, 4, 3)
    assert np.all(decoded[:, :, 2] == 255)  # BGR ordering


def test_load_image_from_bytes_falls_back_to_pillow(monkeypatch):
    monkeypatch.setattr(
        ImageProcessor, "_decode_with_cv2_bytes", staticmethod(lambda data: None)
    )

    data = _png_bytes(Image.new("RGB", (2, 2), color=(0, 128, 255)))
    decoded = ImageProcessor.load_image_from_bytes(data)

    assert decoded.shape == (2, 2, 3)
    # Validate fallback produced BGR array
    assert tuple(decoded[0, 0]) == (255, 128, 0)


def test_pillow_fallback_keeps_alpha(monkeypatch):
    monkeypatch.setattr(
        ImageProcessor, "_decode_with_cv2_bytes", staticmethod(lambda data: None)
    )

    data = _png_bytes(Image.new("RGBA", (3, 3), color=(10, 20, 30, 40)))
    decoded = ImageProcessor.load_image_from_bytes(data)

    assert decoded.shape == (3, 3, 4)
    assert tuple(decoded[1, 1]) == (30, 20, 10, 40)


def test_rgba_png_decodes_to_bgra():
    data = _png_bytes(Image.new("RGBA", (5, 4), color=(200, 100, 50, 0)))

    decoded = ImageProcessor.load_image_from_bytes(data)

    assert decoded.shape == (4, 5, 4)
    assert tuple(decoded[0, 0]) == (50, 100, 200, 0)


@pytest.mark.parametrize("payload", [b"", b"definitely not an image"])
def test_undecodable_payload_raises(payload):
    with pytest.raises(DecodeError):
        ImageProcessor.load_image_from_bytes(payload)


def test_encode_png_round_trips_alpha():
    image = np.zeros((6, 7, 4), dtype=np.uint8)
    image[:, :, 1] = 90
    image[:, :, 3] = 17

    decoded = ImageProcessor.load_image_from_bytes(ImageProcessor.encode_png(image))

    np.testing.assert_array_equal(decoded, image)


def test_load_image_from_path(tmp_path):
    path = tmp_path / "photo.png"
    Image.new("RGB", (8, 3), color=(1, 2, 3)).save(path)

    loaded = ImageProcessor.load_image(path)

    assert loaded.shape == (3, 8, 3)
    assert tuple(loaded[0, 0]) == (3, 2, 1)


def test_load_missing_path_raises(tmp_path):
    with pytest.raises(DecodeError):
        ImageProcessor.load_image(tmp_path / "missing.png")


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------
def test_ensure_image_promotes_grayscale():
    gray = np.full((4, 5), 60, dtype=np.uint8)

    result = ImageProcessor.ensure_image(gray)

    assert result.shape == (4, 5, 3)
    assert np.all(result == 60)


def test_ensure_image_normalizes_depth():
    wide = np.full((2, 2, 3), 0xABCD, dtype=np.uint16)
    unit = np.full((2, 2, 3), 1.0, dtype=np.float32)

    assert np.all(ImageProcessor.ensure_image(wide) == 0xAB)
    assert np.all(ImageProcessor.ensure_image(unit) == 255)


@pytest.mark.parametrize(
    "bad",
    [
        np.zeros((4, 4, 2), dtype=np.uint8),
        np.zeros((0, 4, 3), dtype=np.uint8),
        np.zeros((4,), dtype=np.uint8),
        np.zeros((4, 4, 3), dtype=np.int64),
        [[1, 2], [3, 4]],
    ],
)
def test_ensure_image_rejects_malformed_buffers(bad):
    with pytest.raises(DecodeError):
        ImageProcessor.ensure_image(bad)


# ----------------------------------------------------------------------
# Resampling
# ----------------------------------------------------------------------
def test_resize_to_exact_size_and_identity():
    image = np.zeros((10, 20, 3), dtype=np.uint8)

    assert ImageProcessor.resize_to(image, 20, 10) is image
    assert ImageProcessor.resize_to(image, 7, 33).shape == (33, 7, 3)


def test_resize_to_rejects_non_positive_size():
    with pytest.raises(ConfigurationError):
        ImageProcessor.resize_to(np.zeros((4, 4, 3), dtype=np.uint8), 0, 4)


def test_unsharp_leaves_alpha_untouched():
    image = np.zeros((8, 8, 4), dtype=np.uint8)
    image[:, 4:, :3] = 200
    image[:, :, 3] = 77

    result = ImageProcessor.unsharp(image)

    assert result.shape == (8, 8, 4)
    assert np.all(result[:, :, 3] == 77)


@pytest.mark.parametrize(
    "target", [(15, 12), (35, 23), (80, 80), (4, 4), (10, 31)]
)
def test_deterministic_resize_hits_exact_size(target):
    image = np.full((10, 10, 3), 120, dtype=np.uint8)

    result = ImageProcessor.deterministic_resize(image, *target)

    assert result.shape == (target[1], target[0], 3)


def test_estimate_noise():
    assert ImageProcessor.estimate_noise(np.full((16, 16, 3), 9, np.uint8)) == 0.0
    assert ImageProcessor.estimate_noise(_checkerboard()) == pytest.approx(255.0)
    assert ImageProcessor.estimate_noise(np.zeros((3, 3, 3), np.uint8)) == 0.0


def test_progressive_path_denoises_noisy_sources(monkeypatch):
    calls = []
    original = ImageProcessor.median_denoise

    def recording(image):
        calls.append(image.shape)
        return original(image)

    monkeypatch.setattr(ImageProcessor, "median_denoise", staticmethod(recording))

    ImageProcessor.deterministic_resize(np.full((16, 16, 3), 50, np.uint8), 64, 64)
    assert calls == []

    result = ImageProcessor.deterministic_resize(_checkerboard(), 64, 64)
    assert calls == [(16, 16, 3)]
    assert result.shape == (64, 64, 3)


def test_median_denoise_keeps_border():
    image = _checkerboard(6)

    result = ImageProcessor.median_denoise(image)

    np.testing.assert_array_equal(result[0], image[0])
    np.testing.assert_array_equal(result[:, -1], image[:, -1])
    assert image_utils.NOISE_DENOISE_THRESHOLD == 8.0
