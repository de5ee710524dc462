"""FastAPI application exposing canonical framing, restore and upscaling."""

import json

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

from framefit.canonical_frame import PreparedFrameMeta, prepare
from framefit.config import get_config
from framefit.exceptions import ConfigurationError, DecodeError
from framefit.frame_restore import FrameRestorer
from framefit.image_utils import ImageProcessor
from framefit.logger import setup_logger

logger = setup_logger(__name__)
config = get_config()

META_HEADER = "X-Frame-Meta"

app = FastAPI(
    title="FrameFit",
    description="Canonical frame preparation, restore and super-resolution API",
    version="1.0.0",
)

restorer = FrameRestorer()


@app.exception_handler(DecodeError)
async def decode_error_handler(request: Request, exc: DecodeError):
    logger.warning("Rejected undecodable image on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.warning("Rejected invalid request on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=422, content={"detail": exc.message})


async def _read_upload(image: UploadFile) -> bytes:
    try:
        return await image.read()
    except Exception as exc:  # pragma: no cover - FastAPI handles streaming
        logger.error("Failed to read uploaded file: %s", exc)
        raise HTTPException(status_code=400, detail="Unable to read uploaded file")


def _png_response(content: bytes, headers=None) -> Response:
    return Response(content=content, media_type="image/png", headers=headers)


# Decode, inference and encode are CPU bound; they run in the threadpool so
# the event loop keeps serving other requests
def _prepare_png(content: bytes):
    canvas, meta = prepare(ImageProcessor.load_image_from_bytes(content))
    return ImageProcessor.encode_png(canvas), meta


def _restore_png(content: bytes, meta: PreparedFrameMeta, scale_to_original: bool):
    restored = restorer.restore(
        ImageProcessor.load_image_from_bytes(content),
        meta,
        scale_to_original=scale_to_original,
    )
    return ImageProcessor.encode_png(restored)


def _upscale_png(content: bytes, width: int, height: int):
    result, report = restorer.upscaler.upscale(
        ImageProcessor.load_image_from_bytes(content), width, height
    )
    return ImageProcessor.encode_png(result), report.backend


@app.post("/api/prepare")
async def prepare_frame(
    image: UploadFile = File(..., description="Photo to place on a canonical frame"),
):
    """Return the padded PNG canvas; the frame metadata travels in a header."""
    content = await _read_upload(image)
    png, meta = await run_in_threadpool(_prepare_png, content)
    return _png_response(png, headers={META_HEADER: json.dumps(meta.to_dict())})


@app.post("/api/restore")
async def restore_frame(
    image: UploadFile = File(..., description="Edited canvas"),
    meta: str = Form(..., description="Frame metadata returned by /api/prepare"),
    scale_to_original: bool = Form(False),
):
    """Crop the content back out of an edited canvas."""
    try:
        meta_data = json.loads(meta)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Frame metadata is not valid JSON: {exc}")
    frame_meta = PreparedFrameMeta.from_dict(meta_data)

    content = await _read_upload(image)
    png = await run_in_threadpool(_restore_png, content, frame_meta, scale_to_original)
    return _png_response(png)


@app.post("/api/upscale")
async def upscale_image(
    image: UploadFile = File(..., description="Image to enlarge"),
    width: int = Form(...),
    height: int = Form(...),
):
    """Upscale an image to cover ``width x height``."""
    content = await _read_upload(image)
    png, backend = await run_in_threadpool(_upscale_png, content, width, height)
    return _png_response(png, headers={"X-Upscale-Backend": backend})


@app.get("/health")
def health_check():
    """Simple readiness probe for container/deployment environments."""
    return {"status": "ok"}


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run(
        "framefit.api:app",
        host=getattr(config, "API_HOST", "0.0.0.0"),
        port=getattr(config, "API_PORT", 8000),
        reload=True,
    )
