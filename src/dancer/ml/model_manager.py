"""Model manager: locate, download, load, and release ONNX models.

Models are looked up in the local models directory first. When a Hugging Face
Hub repository is configured (DANCER_MODEL_REPO) missing files are downloaded
from it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from dancer.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def ensure_available(self, model_name: str) -> Path:
        """Ensure a model file exists locally and return its path."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def release_session(self, model_name: str) -> None:
        """Drop the session for a model, freeing its memory."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Release all sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single move classification model."""

    name: str
    filename: str
    description: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "dancer_balanced": ModelSpec(
        name="dancer_balanced",
        filename="dancer_balanced.onnx",
        description="Move classifier trained on the class-balanced dataset",
    ),
    "dancer": ModelSpec(
        name="dancer",
        filename="dancer.onnx",
        description="Move classifier trained on the full dataset",
    ),
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Locates, loads, caches, and releases ONNX inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_available(self, model_name: str) -> Path:
        """Return the local model path, downloading it if a repo is configured.

        Raises:
            KeyError: If the model is not in the registry.
            FileNotFoundError: If the file is missing and cannot be downloaded.
        """
        spec = self._get_spec(model_name)

        cached = self._model_paths.get(model_name)
        if cached is not None and cached.exists():
            return cached

        local = self._models_dir / spec.filename
        if local.exists():
            self._model_paths[model_name] = local
            return local

        repo = self._settings.model_repo
        if repo is None:
            raise FileNotFoundError(f"Model file {local} not found and DANCER_MODEL_REPO is not set")

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo,
                filename=spec.filename,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[model_name] = downloaded
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return downloaded

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        model_path = self.ensure_available(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s from %s", model_name, model_path)
            return session

    def release_session(self, model_name: str) -> None:
        with self._lock:
            if self._sessions.pop(model_name, None) is not None:
                logger.info("Released session for %s", model_name)

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Release all sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions released")

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
