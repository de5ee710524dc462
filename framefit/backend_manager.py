"""Lifecycle owner for the single super-resolution engine."""

from __future__ import annotations

import threading
from typing import Dict, Iterator, List, Optional

from framefit.config import get_config
from framefit.inference_backends import (
    DEFAULT_PROBES,
    GPU_BACKENDS,
    Available,
    Probe,
    ProbeResult,
    TileInferenceEngine,
    Unavailable,
)
from framefit.logger import setup_logger
from framefit.options import UpscaleOptions

logger = setup_logger(__name__)
config = get_config()

DEFAULT_BACKEND_PRIORITY = ("tflite", "realesrgan_cuda", "realesrgan_cpu", "opencv")


class InferenceBackendManager:
    """Builds, caches and releases one inference engine.

    Probes run in priority order the first time an engine is requested for a
    given configuration key; the outcome (including "nothing available") is
    cached until :meth:`release` or until a different key is requested.
    All engine calls must hold :attr:`inference_lock`; it is always acquired
    before the internal init lock, so a caller holding it may call
    :meth:`ensure_ready` and keep the returned engine alive until it releases.
    """

    def __init__(
        self,
        priority: Optional[str] = None,
        probes: Optional[Dict[str, Probe]] = None,
        lock: Optional[threading.RLock] = None,
    ) -> None:
        self._probes = dict(probes) if probes is not None else dict(DEFAULT_PROBES)
        if priority is None:
            priority = getattr(
                config,
                "UPSCALE_BACKEND_PRIORITY",
                ",".join(DEFAULT_BACKEND_PRIORITY),
            )
        self.backend_priority = self._parse_backend_priority(priority)
        self._init_lock = threading.Lock()
        self.inference_lock = lock or threading.RLock()
        self._result: Optional[ProbeResult] = None
        self._key: Optional[tuple] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def init(self, options: UpscaleOptions) -> ProbeResult:
        """Return the cached probe outcome for ``options``, probing if needed."""
        with self.inference_lock, self._init_lock:
            key = options.backend_key
            if self._result is not None and self._key == key:
                return self._result
            if self._result is not None:
                logger.info("Backend configuration changed %s -> %s", self._key, key)
                self._release_locked()

            self._result = self._run_probes(options)
            self._key = key
            return self._result

    def ensure_ready(self, options: UpscaleOptions) -> Optional[TileInferenceEngine]:
        result = self.init(options)
        if isinstance(result, Available):
            return result.engine
        return None

    def release(self) -> None:
        """Close the engine and forget the cached outcome (failures included)."""
        with self.inference_lock, self._init_lock:
            self._release_locked()

    def close(self) -> None:
        self.release()

    @property
    def engine(self) -> Optional[TileInferenceEngine]:
        if isinstance(self._result, Available):
            return self._result.engine
        return None

    @property
    def last_result(self) -> Optional[ProbeResult]:
        return self._result

    def __enter__(self) -> "InferenceBackendManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _parse_backend_priority(self, raw: Optional[str]) -> List[str]:
        if not raw:
            return [name for name in DEFAULT_BACKEND_PRIORITY if name in self._probes]

        parsed: List[str] = []
        for token in raw.split(","):
            name = token.strip().lower()
            if not name:
                continue
            if name not in self._probes:
                logger.warning("Unknown upscaling backend '%s' in priority list", name)
                continue
            if name not in parsed:
                parsed.append(name)
        return parsed

    def _iter_probes(self, options: UpscaleOptions) -> Iterator[ProbeResult]:
        for name in self.backend_priority:
            if options.force_deterministic_backend and name in GPU_BACKENDS:
                yield Unavailable(name, "skipped: deterministic backend forced")
                continue
            yield self._probes[name](options)

    def _run_probes(self, options: UpscaleOptions) -> ProbeResult:
        reasons = []
        for result in self._iter_probes(options):
            if isinstance(result, Available):
                logger.info("Upscaling backend selected: %s", result.backend)
                return result
            logger.debug("Backend %s unavailable: %s", result.backend, result.reason)
            reasons.append(f"{result.backend}: {result.reason}")

        summary = "; ".join(reasons) or "no backends configured"
        logger.warning("No super-resolution backend available (%s)", summary)
        return Unavailable("none", summary)

    def _release_locked(self) -> None:
        if isinstance(self._result, Available):
            try:
                self._result.engine.close()
            except Exception as exc:
                logger.warning(
                    "Error while closing %s engine: %s", self._result.backend, exc
                )
            logger.info("Released %s engine", self._result.backend)
        self._result = None
        self._key = None
