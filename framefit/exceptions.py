"""
Exception hierarchy for FrameFit

Only ConfigurationError, DecodeError and UpscaleCancelled ever reach callers of
the upscaling path; the others are raised internally and turned into a cheaper
strategy by the orchestrator.
"""

from typing import Optional


class FrameFitError(Exception):
    """Base exception for FrameFit"""

    def __init__(self, message: str, stage: Optional[str] = None):
        self.message = message
        self.stage = stage
        super().__init__(message)


class ConfigurationError(FrameFitError):
    """Invalid target dimensions, options or frame metadata."""


class DecodeError(FrameFitError):
    """Malformed or undecodable source pixel data."""

    def __init__(self, message: str):
        super().__init__(message, stage="decode")


class BackendUnavailable(FrameFitError):
    """No inference backend could be initialized."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' unavailable: {reason}", stage="init")


class ResourceExhausted(FrameFitError):
    """Projected or actual memory use exceeds the configured budget."""

    def __init__(
        self, operation: str, required_mb: float, budget_mb: float, message: str = ""
    ):
        self.operation = operation
        self.required_mb = required_mb
        self.budget_mb = budget_mb
        base_msg = (
            f"Insufficient memory for {operation}: "
            f"need {required_mb:.1f}MB, budget {budget_mb:.1f}MB"
        )
        if message:
            base_msg = f"{base_msg}. {message}"
        super().__init__(base_msg, stage="upscaling")


class InferenceFailure(FrameFitError):
    """The inference engine raised while processing a tile."""

    def __init__(self, backend: str, message: str):
        self.backend = backend
        super().__init__(f"{backend}: {message}", stage="upscaling")


class UpscaleCancelled(FrameFitError):
    """The caller cancelled an in-flight upscale."""

    def __init__(self, message: str = "Upscale cancelled"):
        super().__init__(message, stage="upscaling")
