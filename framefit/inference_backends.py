"""4x super-resolution engines and the capability probes that build them.

Each probe inspects importability, model assets and device availability
before constructing anything and reports a tagged result instead of raising:
``Available(engine)`` or ``Unavailable(backend, reason)``. Weights are never
downloaded; they must already sit in ``MODELS_DIR``.
"""

from __future__ import annotations

import importlib.util
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Optional, Union

import cv2
import numpy as np

from framefit.config import get_config
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions

logger = setup_logger(__name__)
config = get_config()

ENGINE_SCALE = 4

REAL_ESRGAN_MODELS = {
    "realesr-general-x4v3": {
        "arch": "srvgg",
        "filename": "realesr-general-x4v3.pth",
        "feat": 64,
        "conv": 32,
    },
    "realesrgan_x4plus": {
        "arch": "rrdb",
        "filename": "RealESRGAN_x4plus.pth",
        "feat": 64,
        "blocks": 23,
        "grow": 32,
    },
}

OPENCV_EDSR_MODEL = {"name": "edsr", "scale": ENGINE_SCALE}


class TileInferenceEngine:
    """A loaded network mapping an RGB float tile in [0, 1] to a 4x tile."""

    name = "base"
    scale = ENGINE_SCALE

    def infer(self, tile: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        """Release native resources held by the engine."""


@dataclass(frozen=True)
class Available:
    engine: TileInferenceEngine

    @property
    def backend(self) -> str:
        return self.engine.name


@dataclass(frozen=True)
class Unavailable:
    backend: str
    reason: str


ProbeResult = Union[Available, Unavailable]
Probe = Callable[[UpscaleOptions], ProbeResult]


# ----------------------------------------------------------------------
# Engines
# ----------------------------------------------------------------------
class TFLiteEngine(TileInferenceEngine):
    """Real-ESRGAN General x4v3 through the TensorFlow Lite interpreter."""

    name = "tflite"

    def __init__(self, model_path: Path, num_threads: int = 4) -> None:
        import tensorflow as tf  # type: ignore

        self._interpreter = tf.lite.Interpreter(
            model_path=str(model_path), num_threads=max(1, num_threads)
        )
        self._interpreter.allocate_tensors()
        input_details = self._interpreter.get_input_details()[0]
        output_details = self._interpreter.get_output_details()[0]
        self._input_index = input_details["index"]
        self._output_index = output_details["index"]
        self._input_dtype = input_details["dtype"]

        signature = input_details.get("shape_signature", input_details["shape"])
        self._dynamic = any(int(dim) < 0 for dim in signature[1:3])
        self._allocated_hw = (
            int(input_details["shape"][1]),
            int(input_details["shape"][2]),
        )
        logger.info(
            "TFLite engine ready (%s, input=%s, threads=%d)",
            model_path.name,
            "dynamic" if self._dynamic else "%dx%d" % self._allocated_hw,
            num_threads,
        )

    def infer(self, tile: np.ndarray) -> np.ndarray:
        height, width = tile.shape[:2]
        feed = tile
        if self._dynamic:
            if (height, width) != self._allocated_hw:
                self._interpreter.resize_tensor_input(
                    self._input_index, [1, height, width, 3]
                )
                self._interpreter.allocate_tensors()
                self._allocated_hw = (height, width)
        elif (height, width) != self._allocated_hw:
            static_h, static_w = self._allocated_hw
            feed = cv2.resize(tile, (static_w, static_h), interpolation=cv2.INTER_CUBIC)

        if self._input_dtype == np.uint8:
            feed = np.clip(feed * 255.0 + 0.5, 0, 255).astype(np.uint8)
        else:
            feed = feed.astype(self._input_dtype)

        self._interpreter.set_tensor(self._input_index, feed[np.newaxis, ...])
        self._interpreter.invoke()
        output = self._interpreter.get_tensor(self._output_index)[0]
        if output.dtype == np.uint8:
            output = output.astype(np.float32) / 255.0

        expected = (height * self.scale, width * self.scale)
        if output.shape[:2] != expected:
            output = cv2.resize(
                output, (expected[1], expected[0]), interpolation=cv2.INTER_CUBIC
            )
        return np.clip(output, 0.0, 1.0).astype(np.float32)

    def close(self) -> None:
        self._interpreter = None


class TorchSREngine(TileInferenceEngine):
    """Real-ESRGAN generator (SRVGGNetCompact or RRDBNet) on CUDA or CPU."""

    def __init__(
        self,
        model_config: dict,
        model_path: Path,
        device: str = "cpu",
        num_threads: int = 4,
        half: bool = False,
    ) -> None:
        import torch  # type: ignore

        self._torch = torch
        self.device = device
        self.name = "realesrgan_cuda" if device == "cuda" else "realesrgan_cpu"
        self.half = half and device == "cuda"

        if device == "cpu":
            torch.set_num_threads(max(1, num_threads))

        network = self._build_network(model_config)
        state = torch.load(str(model_path), map_location="cpu")
        if "params_ema" in state:
            state = state["params_ema"]
        elif "params" in state:
            state = state["params"]
        network.load_state_dict(state, strict=True)
        network.eval()
        network = network.to(device)
        if self.half:
            network = network.half()
        self._network = network
        logger.info(
            "Real-ESRGAN engine ready (%s, device=%s, half=%s)",
            model_path.name,
            device,
            self.half,
        )

    @staticmethod
    def _build_network(model_config: dict):
        if model_config["arch"] == "srvgg":
            from realesrgan.archs.srvgg_arch import SRVGGNetCompact  # type: ignore

            return SRVGGNetCompact(
                num_in_ch=3,
                num_out_ch=3,
                num_feat=model_config["feat"],
                num_conv=model_config["conv"],
                upscale=ENGINE_SCALE,
                act_type="prelu",
            )

        from basicsr.archs.rrdbnet_arch import RRDBNet  # type: ignore

        return RRDBNet(
            num_in_ch=3,
            num_out_ch=3,
            num_feat=model_config["feat"],
            num_block=model_config["blocks"],
            num_grow_ch=model_config["grow"],
            scale=ENGINE_SCALE,
        )

    def infer(self, tile: np.ndarray) -> np.ndarray:
        torch = self._torch
        tensor = torch.from_numpy(np.ascontiguousarray(tile.transpose(2, 0, 1)))
        tensor = tensor.unsqueeze(0).to(self.device)
        if self.half:
            tensor = tensor.half()
        with torch.no_grad():
            output = self._network(tensor)
        output = output.squeeze(0).float().clamp_(0.0, 1.0).cpu().numpy()
        return output.transpose(1, 2, 0)

    def close(self) -> None:
        self._network = None
        if self.device == "cuda" and self._torch.cuda.is_available():
            self._torch.cuda.empty_cache()


class OpenCVSREngine(TileInferenceEngine):
    """EDSR x4 through ``cv2.dnn_superres``."""

    name = "opencv"

    def __init__(self, model_path: Path) -> None:
        from cv2 import dnn_superres  # type: ignore

        sr = dnn_superres.DnnSuperResImpl_create()
        sr.readModel(str(model_path))
        sr.setModel(OPENCV_EDSR_MODEL["name"], OPENCV_EDSR_MODEL["scale"])
        self._sr = sr
        logger.info("OpenCV EDSR engine ready (%s)", model_path.name)

    def infer(self, tile: np.ndarray) -> np.ndarray:
        bgr = np.clip(tile[:, :, ::-1] * 255.0 + 0.5, 0, 255).astype(np.uint8)
        upscaled = self._sr.upsample(np.ascontiguousarray(bgr))
        return upscaled[:, :, ::-1].astype(np.float32) / 255.0

    def close(self) -> None:
        self._sr = None


# ----------------------------------------------------------------------
# Capability probes
# ----------------------------------------------------------------------
def _module_available(name: str) -> bool:
    try:
        return importlib.util.find_spec(name) is not None
    except (ImportError, ValueError):
        return False


def _model_asset(filename: str) -> Optional[Path]:
    path = Path(getattr(config, "MODELS_DIR", "models")) / filename
    return path if path.exists() else None


def _construct(backend: str, factory: Callable[[], TileInferenceEngine]) -> ProbeResult:
    try:
        return Available(factory())
    except Exception as exc:
        logger.warning("Failed to initialize %s backend: %s", backend, exc)
        return Unavailable(backend, f"initialization failed: {exc}")


def probe_tflite(options: UpscaleOptions) -> ProbeResult:
    if not _module_available("tensorflow"):
        return Unavailable("tflite", "tensorflow is not installed")
    filename = getattr(config, "UPSCALE_TFLITE_MODEL", "Real-ESRGAN-General-x4v3.tflite")
    model_path = _model_asset(filename)
    if model_path is None:
        return Unavailable("tflite", f"model asset {filename} missing")
    return _construct(
        "tflite", lambda: TFLiteEngine(model_path, num_threads=options.cpu_thread_cap)
    )


def _probe_realesrgan(options: UpscaleOptions, device: str) -> ProbeResult:
    backend = f"realesrgan_{device}"
    if not _module_available("torch"):
        return Unavailable(backend, "torch is not installed")

    model_key = getattr(config, "UPSCALE_TORCH_MODEL", "realesr-general-x4v3")
    model_config = REAL_ESRGAN_MODELS.get(model_key)
    if model_config is None:
        return Unavailable(backend, f"unknown model '{model_key}'")
    arch_module = "realesrgan" if model_config["arch"] == "srvgg" else "basicsr"
    if not _module_available(arch_module):
        return Unavailable(backend, f"{arch_module} is not installed")

    model_path = _model_asset(model_config["filename"])
    if model_path is None:
        return Unavailable(backend, f"model asset {model_config['filename']} missing")

    if device == "cuda":
        import torch  # type: ignore

        if not torch.cuda.is_available():
            return Unavailable(backend, "CUDA device not available")

    half = bool(getattr(config, "UPSCALE_HALF_PRECISION", False))
    return _construct(
        backend,
        lambda: TorchSREngine(
            model_config,
            model_path,
            device=device,
            num_threads=options.cpu_thread_cap,
            half=half,
        ),
    )


def probe_realesrgan_cuda(options: UpscaleOptions) -> ProbeResult:
    return _probe_realesrgan(options, "cuda")


def probe_realesrgan_cpu(options: UpscaleOptions) -> ProbeResult:
    return _probe_realesrgan(options, "cpu")


def probe_opencv(options: UpscaleOptions) -> ProbeResult:
    if not hasattr(cv2, "dnn_superres"):
        return Unavailable("opencv", "cv2.dnn_superres unavailable (needs opencv-contrib)")
    filename = getattr(config, "UPSCALE_OPENCV_MODEL", "EDSR_x4.pb")
    model_path = _model_asset(filename)
    if model_path is None:
        return Unavailable("opencv", f"model asset {filename} missing")
    return _construct("opencv", lambda: OpenCVSREngine(model_path))


DEFAULT_PROBES: Dict[str, Probe] = {
    "tflite": probe_tflite,
    "realesrgan_cuda": probe_realesrgan_cuda,
    "realesrgan_cpu": probe_realesrgan_cpu,
    "opencv": probe_opencv,
}

# Probes that touch accelerator hardware and are skipped in deterministic mode
GPU_BACKENDS = frozenset({"realesrgan_cuda"})
