"""Exception types for ClassifyX."""

from __future__ import annotations


class ClassifyXError(Exception):
    """Base exception for ClassifyX errors."""


class ModelLoadError(ClassifyXError):
    """Raised when a model cannot be downloaded, opened, or bound to its backend.

    This is fatal: the service refuses to start without every model.
    """

    def __init__(self, model: str, reason: str) -> None:
        self.model = model
        self.reason = reason
        super().__init__(f"Failed to load model '{model}': {reason}")


class ImageDecodeError(ClassifyXError, ValueError):
    """Raised when uploaded bytes cannot be decoded into an RGB image."""


class InferenceError(ClassifyXError):
    """Raised when a model returns no usable prediction."""

    def __init__(self, model: str, reason: str) -> None:
        self.model = model
        self.reason = reason
        super().__init__(reason)
