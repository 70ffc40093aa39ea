"""Inference engine wrapper around one ONNX session.

State machine::

    UNLOADED --start()--> LOADED --stop()--> CLOSED (terminal)
    UNLOADED --stop()---> CLOSED

The session handle lives only inside the LOADED state object. Every access to
it (``infer``, ``stop``) holds the same lock, and ``stop`` switches to CLOSED
before releasing the session, so a losing ``infer`` caller gets
``EngineClosedError`` instead of touching a released session.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np

from dancer.ml.errors import (
    EngineClosedError,
    EngineNotLoadedError,
    InferenceError,
    ModelLoadError,
    ShapeMismatchError,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from dancer.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


class EngineState(StrEnum):
    UNLOADED = "unloaded"
    LOADED = "loaded"
    CLOSED = "closed"


@dataclass(frozen=True)
class _Unloaded:
    state: EngineState = EngineState.UNLOADED


@dataclass(frozen=True)
class _Closed:
    state: EngineState = EngineState.CLOSED


@dataclass(frozen=True)
class _Loaded:
    session: InferenceSession
    input_name: str
    input_shape: tuple[int | None, ...]
    output_size: int | None
    state: EngineState = EngineState.LOADED


_UNLOADED = _Unloaded()
_CLOSED = _Closed()


def _static_dim(dim: Any) -> int | None:
    """ONNX reports symbolic dimensions as strings or None."""
    return dim if isinstance(dim, int) and dim > 0 else None


class InferenceEngine:
    """Owns one loaded model and serializes forward passes against it."""

    def __init__(self, model_manager: ModelManager, model_name: str) -> None:
        self._model_manager = model_manager
        self._model_name = model_name
        self._lock = threading.Lock()
        self._state: _Unloaded | _Loaded | _Closed = _UNLOADED

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def state(self) -> EngineState:
        with self._lock:
            return self._state.state

    @property
    def input_shape(self) -> tuple[int | None, ...]:
        """Declared input shape without the batch axis (None = dynamic)."""
        return self._require_loaded().input_shape

    @property
    def output_size(self) -> int | None:
        return self._require_loaded().output_size

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Load the model.

        Raises:
            ModelLoadError: If the model cannot be loaded.
            EngineClosedError: If the engine was already stopped.
        """
        with self._lock:
            if isinstance(self._state, _Loaded):
                logger.warning("Engine for %s already started, ignoring", self._model_name)
                return
            if isinstance(self._state, _Closed):
                raise EngineClosedError(f"Engine for {self._model_name} is closed and cannot be restarted")

            started = time.monotonic()
            try:
                session = self._model_manager.get_session(self._model_name)
                loaded = self._describe(session)
            except Exception as exc:
                raise ModelLoadError(f"Failed to load model {self._model_name}: {exc}") from exc

            self._state = loaded
            logger.info(
                "Engine for %s loaded in %.0fms (input=%s, outputs=%s)",
                self._model_name,
                (time.monotonic() - started) * 1000,
                loaded.input_shape,
                loaded.output_size,
            )

    def stop(self) -> None:
        """Close the engine and release the model. Safe to call repeatedly."""
        with self._lock:
            previous = self._state
            if isinstance(previous, _Closed):
                logger.debug("Engine for %s already closed", self._model_name)
                return

            self._state = _CLOSED
            if isinstance(previous, _Loaded):
                try:
                    self._model_manager.release_session(self._model_name)
                except Exception:
                    logger.exception("Error releasing model %s", self._model_name)
            logger.info("Engine for %s closed", self._model_name)

    # -- Inference ----------------------------------------------------------

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one forward pass and return the flattened output logits.

        Raises:
            EngineClosedError: The engine has been stopped.
            EngineNotLoadedError: ``start()`` has not been called.
            ShapeMismatchError: ``tensor`` does not match the declared input.
            InferenceError: The runtime failed.
        """
        with self._lock:
            state = self._state
            if isinstance(state, _Closed):
                raise EngineClosedError("Model closed")
            if isinstance(state, _Unloaded):
                raise EngineNotLoadedError("Model not loaded")

            _check_shape(state.input_shape, tensor.shape)
            batch = np.ascontiguousarray(tensor, dtype=np.float32)[np.newaxis, ...]
            try:
                outputs = state.session.run(None, {state.input_name: batch})
            except Exception as exc:
                raise InferenceError(f"Inference failed: {exc}") from exc

        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def check_input_shape(self, shape: tuple[int, ...]) -> None:
        """Raise ShapeMismatchError unless ``shape`` fits the declared input."""
        _check_shape(self._require_loaded().input_shape, shape)

    # -- Internal -----------------------------------------------------------

    def _require_loaded(self) -> _Loaded:
        with self._lock:
            state = self._state
        if isinstance(state, _Closed):
            raise EngineClosedError("Model closed")
        if isinstance(state, _Unloaded):
            raise EngineNotLoadedError("Model not loaded")
        return state

    @staticmethod
    def _describe(session: InferenceSession) -> _Loaded:
        model_input = session.get_inputs()[0]
        input_shape = tuple(_static_dim(dim) for dim in model_input.shape[1:])

        output_shape = [_static_dim(dim) for dim in session.get_outputs()[0].shape[1:]]
        output_size: int | None = None
        if output_shape and all(dim is not None for dim in output_shape):
            output_size = int(np.prod(output_shape))

        return _Loaded(
            session=session,
            input_name=model_input.name,
            input_shape=input_shape,
            output_size=output_size,
        )


def _check_shape(declared: tuple[int | None, ...], actual: tuple[int, ...]) -> None:
    if len(declared) != len(actual) or any(d is not None and d != a for d, a in zip(declared, actual, strict=True)):
        raise ShapeMismatchError(f"Input tensor shape {tuple(actual)} does not match model input {declared}")
