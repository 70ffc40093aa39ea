"""Classification service: runs the full pipeline for one frame.

Thread safety:
    - The active flag and engine reference are guarded by the service lock.
    - start/stop are serialized by a separate lifecycle lock.
    - The service lock is never held while the engine lock is taken.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dancer.ml.engine import EngineState
from dancer.ml.errors import (
    EngineClosedError,
    EngineNotLoadedError,
    InvalidFrameError,
    ShapeMismatchError,
)
from dancer.ml.labels import DEFAULT_LABEL_MAP, LabelMap
from dancer.ml.postprocessing import Prediction, postprocess
from dancer.ml.preprocessing import TensorPreprocessor
from dancer.ml.transforms import ImageTransformer
from dancer.store.configuration import ConfigurationRepository

if TYPE_CHECKING:
    from collections.abc import Callable

    from dancer.ml.engine import InferenceEngine
    from dancer.ml.frames import RawImage
    from dancer.store.configuration import PipelineConfiguration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying one frame.

    ``predictions`` is sorted by probability (descending) and holds either one
    entry per known label or none at all.
    """

    is_detected: bool
    confidence: float
    predictions: tuple[Prediction, ...]

    @classmethod
    def empty(cls) -> ClassificationResult:
        return cls(is_detected=False, confidence=0.0, predictions=())

    @classmethod
    def from_predictions(cls, predictions: list[Prediction], threshold: float) -> ClassificationResult:
        if not predictions:
            return cls.empty()
        confidence = predictions[0].probability
        return cls(
            is_detected=confidence > threshold,
            confidence=confidence,
            predictions=tuple(predictions),
        )

    @property
    def top(self) -> Prediction | None:
        return self.predictions[0] if self.predictions else None


class ClassificationService:
    """Orchestrates transform, preprocessing, inference, and postprocessing.

    ``engine_factory`` builds a fresh engine; a stopped engine cannot be
    restarted, so ``start()`` after ``stop()`` asks the factory for a new one.
    """

    def __init__(
        self,
        engine_factory: Callable[[], InferenceEngine],
        configuration: ConfigurationRepository | None = None,
        label_map: LabelMap = DEFAULT_LABEL_MAP,
        transformer: ImageTransformer | None = None,
    ) -> None:
        self._engine_factory = engine_factory
        self._configuration = configuration or ConfigurationRepository()
        self._label_map = label_map
        self._transformer = transformer or ImageTransformer()

        self._lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._active = False
        self._engine: InferenceEngine | None = None
        self._configuration.add_validator(self.check_configuration)

    @property
    def label_map(self) -> LabelMap:
        return self._label_map

    @property
    def configuration(self) -> ConfigurationRepository:
        return self._configuration

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Load the model and mark the service active. Idempotent.

        Raises:
            ModelLoadError: The model could not be loaded.
            ShapeMismatchError: The preprocessor output or label set does not
                fit the model.
        """
        with self._lifecycle_lock:
            with self._lock:
                if self._active:
                    logger.warning("Classification service already started, ignoring request")
                    return
                engine = self._engine

            if engine is None or engine.state is EngineState.CLOSED:
                engine = self._engine_factory()
                with self._lock:
                    self._engine = engine

            engine.start()
            try:
                self._validate(engine)
            except ShapeMismatchError:
                engine.stop()
                raise

            with self._lock:
                self._active = True
            logger.info("Classification service started")

    def stop(self) -> None:
        """Mark the service inactive and release the model. Idempotent."""
        with self._lifecycle_lock:
            with self._lock:
                was_active = self._active
                self._active = False
                engine = self._engine

            if engine is not None:
                engine.stop()
            if was_active:
                logger.info("Classification service stopped")
            else:
                logger.debug("Classification service already stopped or never started")

    def is_active(self) -> bool:
        with self._lock:
            return self._active

    def check_configuration(self, candidate: PipelineConfiguration) -> None:
        """Raise ``ShapeMismatchError`` if ``candidate`` does not fit the loaded model.

        Nothing is checked while no model is loaded; ``start()`` validates the
        configuration against the next model instead.
        """
        with self._lock:
            engine = self._engine
        if engine is None or engine.state is not EngineState.LOADED:
            return
        try:
            engine.check_input_shape(TensorPreprocessor.from_configuration(candidate).output_shape)
        except (EngineClosedError, EngineNotLoadedError):
            logger.debug("Model closed while checking configuration, deferring to next start")

    # -- Classification -----------------------------------------------------

    def classify(self, image: RawImage, config: PipelineConfiguration | None = None) -> ClassificationResult:
        """Classify one frame.

        Per-frame failures yield ``ClassificationResult.empty()``; only
        ``ShapeMismatchError`` propagates.
        """
        config = config or self._configuration.current()

        with self._lock:
            active = self._active
            engine = self._engine
        if not active or engine is None:
            logger.debug("Classification service not active, skipping frame")
            return ClassificationResult.empty()
        if not config.analysis_enabled:
            return ClassificationResult.empty()

        started = time.monotonic()
        try:
            buffer = self._transformer.apply(image, mirror=config.mirror)
            tensor = TensorPreprocessor.from_configuration(config).preprocess(buffer)
            logits = engine.infer(tensor)
            predictions = postprocess(logits, self._label_map)
        except ShapeMismatchError:
            raise
        except (EngineClosedError, EngineNotLoadedError):
            logger.debug("Model is closed, skipping frame")
            return ClassificationResult.empty()
        except InvalidFrameError as exc:
            logger.debug("Skipping invalid frame: %s", exc)
            return ClassificationResult.empty()
        except Exception:
            logger.exception("Error classifying frame")
            return ClassificationResult.empty()

        result = ClassificationResult.from_predictions(predictions, config.threshold)
        logger.debug(
            "Classified frame in %.1fms: top=%s (%.3f), detected=%s",
            (time.monotonic() - started) * 1000,
            result.top.label if result.top else None,
            result.confidence,
            result.is_detected,
        )
        return result

    # -- Internal -----------------------------------------------------------

    def _validate(self, engine: InferenceEngine) -> None:
        preprocessor = TensorPreprocessor.from_configuration(self._configuration.current())
        engine.check_input_shape(preprocessor.output_shape)
        self._label_map.validate(engine.output_size)
