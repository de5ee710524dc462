"""Tests for the upscale_to_match state machine."""

import threading

import numpy as np
import pytest

from framefit import image_upscaler
from framefit.backend_manager import InferenceBackendManager
from framefit.exceptions import ConfigurationError, DecodeError, UpscaleCancelled
from framefit.image_upscaler import ImageUpscaler
from framefit.inference_backends import Available, TileInferenceEngine
from framefit.options import UpscaleOptions


def _random_image(width, height, channels=3, seed=11):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)


def _plain_options(**overrides):
    """No post-filtering so neural output can be compared exactly."""
    values = dict(swirl_suppression=0.0, enable_artifact_denoise=False)
    values.update(overrides)
    return UpscaleOptions(**values)


class RecordingSuppressor:
    def __init__(self):
        self.calls = []

    def suppress(self, original, upscaled, strength, apply_low_gradient_median=False):
        self.calls.append((original.shape, upscaled.shape, strength))
        return upscaled


# ----------------------------------------------------------------------
# Skips and input validation
# ----------------------------------------------------------------------
def test_same_size_is_a_no_op(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager)
    image = _random_image(20, 10)

    assert upscaler.upscale_to_match(image, 20, 10) is image
    assert upscaler.upscale_to_match(image, 15, 5) is image
    assert upscaler.last_stage == "already_large"
    assert nearest_engine.calls == 0


@pytest.mark.parametrize("size", [(0, 10), (10, -1)])
def test_non_positive_target_raises(stub_manager, size):
    with pytest.raises(ConfigurationError):
        ImageUpscaler(manager=stub_manager).upscale_to_match(_random_image(4, 4), *size)


def test_malformed_source_raises(stub_manager):
    with pytest.raises(DecodeError):
        ImageUpscaler(manager=stub_manager).upscale_to_match(
            np.zeros((4, 4, 2), dtype=np.uint8), 8, 8
        )


def test_small_enlargement_skips_inference(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager)

    result = upscaler.upscale_to_match(_random_image(100, 100), 110, 105)

    assert result.shape == (105, 110, 3)
    assert nearest_engine.calls == 0
    assert upscaler.last_stage == "below_threshold"


def test_unavailable_backend_falls_back_to_resize(no_backend_manager):
    upscaler = ImageUpscaler(manager=no_backend_manager)

    result = upscaler.upscale_to_match(_random_image(16, 12), 64, 48)

    assert result.shape == (48, 64, 3)
    assert upscaler.last_backend == "deterministic"
    assert upscaler.last_stage == "backend_unavailable"


# ----------------------------------------------------------------------
# Neural path
# ----------------------------------------------------------------------
def test_single_pass_matches_pixel_replication(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())
    image = _random_image(32, 24)

    result = upscaler.upscale_to_match(image, 128, 96)

    np.testing.assert_array_equal(result, np.repeat(np.repeat(image, 4, 0), 4, 1))
    assert upscaler.last_backend == "stub"
    assert upscaler.last_passes == 1
    assert upscaler.last_stage == "complete"


def test_two_passes_for_sixteen_x(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())
    image = _random_image(8, 6)

    result = upscaler.upscale_to_match(image, 128, 96)

    np.testing.assert_array_equal(result, np.repeat(np.repeat(image, 16, 0), 16, 1))
    assert upscaler.last_passes == 2
    assert len(upscaler.last_pass_stats) == 2


def test_pass_count_is_clamped(stub_manager):
    upscaler = ImageUpscaler(manager=stub_manager)
    upscaler.max_passes = 2

    assert upscaler._compute_passes(3.0) == 1
    assert upscaler._compute_passes(4.0) == 1
    assert upscaler._compute_passes(15.9) == 1
    assert upscaler._compute_passes(16.0) == 2
    assert upscaler._compute_passes(4.0**4) == 2


def test_prescale_keeps_single_pass_near_target(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    result = upscaler.upscale_to_match(_random_image(40, 40), 80, 80)

    assert result.shape == (80, 80, 3)
    assert nearest_engine.input_shapes == [(20, 20, 3)]


def test_prescale_skipped_within_headroom(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    result = upscaler.upscale_to_match(_random_image(50, 50), 180, 180)

    assert result.shape == (180, 180, 3)
    assert nearest_engine.input_shapes == [(50, 50, 3)]


@pytest.mark.parametrize(
    "source,target",
    [((30, 20), (100, 60)), ((40, 40), (80, 80)), ((25, 50), (100, 200))],
)
def test_passes_cover_target_before_final_resize(
    stub_manager, monkeypatch, source, target
):
    seen = {}

    def capture(self, image, target_w, target_h):
        seen["size"] = (image.shape[1], image.shape[0])
        return image

    monkeypatch.setattr(ImageUpscaler, "_finalize_resolution", capture)
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    upscaler.upscale_to_match(_random_image(*source), *target)

    assert seen["size"][0] >= target[0]
    assert seen["size"][1] >= target[1]


def test_passes_stop_short_between_powers_of_four(stub_manager, monkeypatch):
    seen = {}
    finalize = ImageUpscaler._finalize_resolution

    def capture(self, image, target_w, target_h):
        seen["size"] = (image.shape[1], image.shape[0])
        return finalize(self, image, target_w, target_h)

    monkeypatch.setattr(ImageUpscaler, "_finalize_resolution", capture)
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    # 6x needs floor(log4 6) = 1 pass; the final resize covers the rest
    result = upscaler.upscale_to_match(_random_image(20, 20), 120, 120)

    assert upscaler.last_passes == 1
    assert seen["size"] == (80, 80)
    assert result.shape == (120, 120, 3)


def test_memory_guard_skips_pass(stub_manager, nearest_engine):
    upscaler = ImageUpscaler(
        manager=stub_manager, options=_plain_options(max_output_megabytes=1)
    )

    result = upscaler.upscale_to_match(_random_image(200, 200), 800, 800)

    assert result.shape == (800, 800, 3)
    assert nearest_engine.calls == 0
    assert upscaler.last_stage == "degraded"


def test_failed_second_pass_keeps_first(stub_manager, nearest_engine, monkeypatch):
    original_infer = nearest_engine.infer

    def flaky(tile):
        if nearest_engine.calls >= 1:
            raise ValueError("corrupt tensor")
        return original_infer(tile)

    monkeypatch.setattr(nearest_engine, "infer", flaky)
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    result = upscaler.upscale_to_match(_random_image(8, 8), 128, 128)

    assert result.shape == (128, 128, 3)
    assert upscaler.last_passes == 1
    assert upscaler.last_stage == "complete"


def test_unexpected_error_falls_back_to_resize(stub_manager, monkeypatch):
    def boom(self, image, required_scale, options):
        raise RuntimeError("boom")

    monkeypatch.setattr(ImageUpscaler, "_maybe_prescale", boom)
    upscaler = ImageUpscaler(manager=stub_manager)

    result = upscaler.upscale_to_match(_random_image(10, 10), 40, 40)

    assert result.shape == (40, 40, 3)
    assert upscaler.last_stage == "fallback"


def test_cancellation_propagates(stub_manager):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(UpscaleCancelled):
        ImageUpscaler(manager=stub_manager).upscale_to_match(
            _random_image(10, 10), 40, 40, cancel_event=cancel
        )


def test_alpha_plane_survives(stub_manager):
    image = _random_image(16, 16, channels=4)
    image[:, :, 3] = 128
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    result = upscaler.upscale_to_match(image, 64, 64)

    assert result.shape == (64, 64, 4)
    assert np.all(result[:, :, 3] == 128)


def test_artifact_suppression_uses_unscaled_source(stub_manager):
    suppressor = RecordingSuppressor()
    upscaler = ImageUpscaler(
        manager=stub_manager,
        options=_plain_options(swirl_suppression=0.4),
        suppressor=suppressor,
    )

    upscaler.upscale_to_match(_random_image(40, 40), 80, 80)

    assert suppressor.calls == [((40, 40, 3), (80, 80, 3), 0.4)]


def test_denoise_alone_triggers_suppressor(stub_manager):
    suppressor = RecordingSuppressor()
    upscaler = ImageUpscaler(
        manager=stub_manager,
        options=_plain_options(enable_artifact_denoise=True),
        suppressor=suppressor,
    )

    upscaler.upscale_to_match(_random_image(10, 10), 40, 40)

    assert len(suppressor.calls) == 1


def test_close_releases_owned_manager(monkeypatch, nearest_engine):
    monkeypatch.setattr(
        image_upscaler,
        "InferenceBackendManager",
        lambda: InferenceBackendManager(
            priority="stub", probes={"stub": lambda options: Available(nearest_engine)}
        ),
    )

    with ImageUpscaler(options=_plain_options()) as upscaler:
        upscaler.upscale_to_match(_random_image(8, 8), 32, 32)

    assert nearest_engine.closed


def test_report_belongs_to_its_call(stub_manager):
    upscaler = ImageUpscaler(manager=stub_manager, options=_plain_options())

    image, report = upscaler.upscale(_random_image(8, 8), 32, 32)
    upscaler.upscale(_random_image(8, 8), 8, 8)

    assert image.shape == (32, 32, 3)
    assert (report.backend, report.stage, report.passes) == ("stub", "complete", 1)
    assert upscaler.last_stage == "already_large"


def test_reconfiguration_waits_for_in_flight_upscale():
    class GuardedEngine(TileInferenceEngine):
        name = "guarded"

        def __init__(self):
            self.closed = False
            self.reconfigure = None

        def infer(self, tile):
            if self.closed:
                raise RuntimeError("engine closed while in use")
            if self.reconfigure is None:
                self.reconfigure = threading.Thread(
                    target=manager.init, args=(UpscaleOptions(cpu_thread_cap=1),)
                )
                self.reconfigure.start()
                self.reconfigure.join(timeout=0.2)
            return np.repeat(np.repeat(tile, 4, axis=0), 4, axis=1)

        def close(self):
            self.closed = True

    engine = GuardedEngine()
    manager = InferenceBackendManager(
        priority="guarded", probes={"guarded": lambda options: Available(engine)}
    )
    options = _plain_options(
        cpu_thread_cap=4, tile_size=4, initial_tile_size=4, min_tile_size=4
    )
    upscaler = ImageUpscaler(manager=manager, options=options)

    result = upscaler.upscale_to_match(_random_image(8, 8), 32, 32)
    engine.reconfigure.join(timeout=5)

    assert result.shape == (32, 32, 3)
    assert upscaler.last_stage == "complete"
    assert upscaler.last_passes == 1
    assert engine.closed
