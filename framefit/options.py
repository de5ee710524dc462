"""Immutable tuning knobs for the super-resolution path."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any

from framefit.config import get_config
from framefit.exceptions import ConfigurationError

config = get_config()


@dataclass(frozen=True)
class UpscaleOptions:
    """Configuration for one ``upscale_to_match`` call.

    Defaults mirror the configured ``UPSCALE_*`` values; use
    :meth:`from_config` to pick up environment overrides and
    :meth:`with_changes` to derive a variant.
    """

    tile_size: int = 224
    tile_overlap: int = 16
    swirl_suppression: float = 0.4
    enable_artifact_denoise: bool = False
    min_scale_threshold: float = 1.15
    max_retries: int = 2
    force_deterministic_backend: bool = True
    cpu_thread_cap: int = 4
    pre_scale_headroom: float = 1.15
    max_output_megabytes: int = 120
    adaptive_memory_guard: bool = True
    initial_tile_size: int = 224
    min_tile_size: int = 128

    def __post_init__(self) -> None:
        if not 0.0 <= self.swirl_suppression <= 1.0:
            raise ConfigurationError(
                f"swirl_suppression must be within [0, 1], got {self.swirl_suppression}"
            )
        for name in ("tile_size", "initial_tile_size", "min_tile_size"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.min_tile_size > self.tile_size:
            raise ConfigurationError("min_tile_size cannot exceed tile_size")
        if self.tile_overlap < 0:
            raise ConfigurationError("tile_overlap cannot be negative")
        if self.max_retries < 1:
            raise ConfigurationError("max_retries must allow at least one attempt")
        if self.cpu_thread_cap < 1:
            raise ConfigurationError("cpu_thread_cap must be at least 1")
        if self.pre_scale_headroom < 1.0:
            raise ConfigurationError("pre_scale_headroom must be >= 1.0")
        if self.max_output_megabytes <= 0:
            raise ConfigurationError("max_output_megabytes must be positive")
        if self.min_scale_threshold < 1.0:
            raise ConfigurationError("min_scale_threshold must be >= 1.0")

    @classmethod
    def from_config(cls, **overrides: Any) -> "UpscaleOptions":
        values = {
            "tile_size": int(getattr(config, "UPSCALE_TILE_SIZE", 224)),
            "tile_overlap": int(getattr(config, "UPSCALE_TILE_OVERLAP", 16)),
            "swirl_suppression": float(
                getattr(config, "UPSCALE_SWIRL_SUPPRESSION", 0.4)
            ),
            "enable_artifact_denoise": bool(
                getattr(config, "UPSCALE_ARTIFACT_DENOISE", False)
            ),
            "min_scale_threshold": float(
                getattr(config, "UPSCALE_MIN_SCALE_THRESHOLD", 1.15)
            ),
            "max_retries": int(getattr(config, "UPSCALE_MAX_RETRIES", 2)),
            "force_deterministic_backend": bool(
                getattr(config, "UPSCALE_FORCE_DETERMINISTIC", True)
            ),
            "cpu_thread_cap": int(getattr(config, "UPSCALE_CPU_THREADS", 4)),
            "pre_scale_headroom": float(
                getattr(config, "UPSCALE_PRESCALE_HEADROOM", 1.15)
            ),
            "max_output_megabytes": int(getattr(config, "UPSCALE_MAX_OUTPUT_MB", 120)),
            "adaptive_memory_guard": bool(
                getattr(config, "UPSCALE_ADAPTIVE_MEMORY_GUARD", True)
            ),
            "initial_tile_size": int(getattr(config, "UPSCALE_INITIAL_TILE_SIZE", 224)),
            "min_tile_size": int(getattr(config, "UPSCALE_MIN_TILE_SIZE", 128)),
        }
        values.update(overrides)
        return cls(**values)

    def with_changes(self, **changes: Any) -> "UpscaleOptions":
        return replace(self, **changes)

    @property
    def backend_key(self) -> tuple:
        """Fields that change which inference backend gets built."""
        return (self.force_deterministic_backend, self.cpu_thread_cap)
