"""HTTP tests for the FastAPI surface."""

import asyncio
import json

import numpy as np
import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from framefit import api  # noqa: E402
from framefit.frame_restore import FrameRestorer  # noqa: E402
from framefit.image_upscaler import ImageUpscaler, UpscaleReport  # noqa: E402
from framefit.image_utils import ImageProcessor  # noqa: E402


def _png(width, height, channels=3):
    rng = np.random.default_rng(8)
    image = rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)
    return ImageProcessor.encode_png(image)


@pytest.fixture()
def client(monkeypatch, no_backend_manager):
    restorer = FrameRestorer(ImageUpscaler(manager=no_backend_manager))
    monkeypatch.setattr(api, "restorer", restorer)
    with TestClient(api.app) as test_client:
        yield test_client


def _upload(data):
    return {"image": ("photo.png", data, "image/png")}


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_prepare_returns_canvas_and_meta_header(client):
    response = client.post("/api/prepare", files=_upload(_png(60, 40)))

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    meta = json.loads(response.headers[api.META_HEADER])
    canvas = ImageProcessor.load_image_from_bytes(response.content)
    assert canvas.shape == (meta["target_h"], meta["target_w"], 4)
    assert (meta["original_w"], meta["original_h"]) == (60, 40)


def test_restore_round_trip(client):
    prepared = client.post("/api/prepare", files=_upload(_png(50, 48)))

    response = client.post(
        "/api/restore",
        files=_upload(prepared.content),
        data={"meta": prepared.headers[api.META_HEADER], "scale_to_original": "true"},
    )

    assert response.status_code == 200
    restored = ImageProcessor.load_image_from_bytes(response.content)
    assert restored.shape[:2] == (48, 50)


def test_upscale_reports_backend(client):
    response = client.post(
        "/api/upscale", files=_upload(_png(16, 12)), data={"width": 64, "height": 48}
    )

    assert response.status_code == 200
    assert response.headers["X-Upscale-Backend"] == "deterministic"
    result = ImageProcessor.load_image_from_bytes(response.content)
    assert result.shape[:2] == (48, 64)


def test_undecodable_upload_is_bad_request(client):
    response = client.post("/api/prepare", files=_upload(b"garbage"))

    assert response.status_code == 400
    assert "detail" in response.json()


@pytest.mark.parametrize("meta", ["{not json", json.dumps({"base_w": 1024})])
def test_invalid_meta_is_unprocessable(client, meta):
    response = client.post(
        "/api/restore", files=_upload(_png(10, 10)), data={"meta": meta}
    )

    assert response.status_code == 422


def test_zero_width_upscale_is_unprocessable(client):
    response = client.post(
        "/api/upscale", files=_upload(_png(8, 8)), data={"width": 0, "height": 8}
    )

    assert response.status_code == 422
    assert "detail" in response.json()


def _on_event_loop():
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def test_upscale_runs_off_the_event_loop(client, monkeypatch):
    upscaler = api.restorer.upscaler
    seen = []
    original = upscaler.upscale

    def recording(*args, **kwargs):
        seen.append(_on_event_loop())
        return original(*args, **kwargs)

    monkeypatch.setattr(upscaler, "upscale", recording)

    response = client.post(
        "/api/upscale", files=_upload(_png(8, 8)), data={"width": 32, "height": 32}
    )

    assert response.status_code == 200
    assert seen == [False]


def test_prepare_and_restore_run_off_the_event_loop(client, monkeypatch):
    seen = []
    original_prepare = api.prepare
    original_restore = api.restorer.restore

    def recording_prepare(image):
        seen.append(("prepare", _on_event_loop()))
        return original_prepare(image)

    def recording_restore(*args, **kwargs):
        seen.append(("restore", _on_event_loop()))
        return original_restore(*args, **kwargs)

    monkeypatch.setattr(api, "prepare", recording_prepare)
    monkeypatch.setattr(api.restorer, "restore", recording_restore)

    prepared = client.post("/api/prepare", files=_upload(_png(20, 10)))
    client.post(
        "/api/restore",
        files=_upload(prepared.content),
        data={"meta": prepared.headers[api.META_HEADER]},
    )

    assert seen == [("prepare", False), ("restore", False)]


def test_backend_header_comes_from_the_same_call(client, monkeypatch):
    upscaler = api.restorer.upscaler
    original = upscaler.upscale

    def racing(*args, **kwargs):
        result = original(*args, **kwargs)
        # Another request finishing in between must not leak into this header
        upscaler.last_report = UpscaleReport(backend="someone-else")
        return result

    monkeypatch.setattr(upscaler, "upscale", racing)

    response = client.post(
        "/api/upscale", files=_upload(_png(16, 12)), data={"width": 64, "height": 48}
    )

    assert response.headers["X-Upscale-Backend"] == "deterministic"
