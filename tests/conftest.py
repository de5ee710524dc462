"""Shared fixtures: a nearest-neighbour stand-in for the 4x networks."""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from framefit.backend_manager import InferenceBackendManager  # noqa: E402
from framefit.inference_backends import Available, TileInferenceEngine  # noqa: E402


class NearestEngine(TileInferenceEngine):
    """Pixel replication; blending its tiles must reproduce ``np.repeat`` exactly."""

    name = "stub"

    def __init__(self):
        self.calls = 0
        self.input_shapes = []
        self.closed = False

    def infer(self, tile):
        self.calls += 1
        self.input_shapes.append(tile.shape)
        return np.repeat(np.repeat(tile, 4, axis=0), 4, axis=1)

    def close(self):
        self.closed = True


@pytest.fixture()
def nearest_engine():
    return NearestEngine()


@pytest.fixture()
def stub_manager(nearest_engine):
    manager = InferenceBackendManager(
        priority="stub", probes={"stub": lambda options: Available(nearest_engine)}
    )
    yield manager
    manager.close()


@pytest.fixture()
def no_backend_manager():
    manager = InferenceBackendManager(priority="", probes={})
    yield manager
    manager.close()
