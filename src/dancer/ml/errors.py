"""Error taxonomy for the classification pipeline.

Only ``ModelLoadError`` and ``ShapeMismatchError`` are meant to reach callers
of the service; every other error is absorbed into an empty result per frame.
"""

from __future__ import annotations


class DancerError(Exception):
    """Base class for all pipeline errors."""


class InvalidFrameError(DancerError, ValueError):
    """The frame carries no decodable image payload."""


class EngineClosedError(DancerError, RuntimeError):
    """Inference was attempted after (or during) engine shutdown."""


class EngineNotLoadedError(DancerError, RuntimeError):
    """Inference was attempted before the engine was started."""


class ModelLoadError(DancerError, RuntimeError):
    """The model could not be located, downloaded, or loaded."""


class ShapeMismatchError(DancerError, ValueError):
    """Tensor or label shapes do not match what the model declares."""


class InferenceError(DancerError, RuntimeError):
    """A single forward pass failed."""
