"""Tests for the classification service."""

from __future__ import annotations

import logging
import threading

import numpy as np
import pytest

from dancer.ml.classifier import ClassificationResult, ClassificationService
from dancer.ml.engine import InferenceEngine
from dancer.ml.errors import ModelLoadError, ShapeMismatchError
from dancer.ml.frames import PixelFormat, RawImage
from dancer.ml.labels import MoveLabel
from dancer.ml.postprocessing import Prediction
from dancer.store.configuration import ConfigurationRepository
from tests.fakes import (
    TARGET_HEIGHT,
    TARGET_WIDTH,
    FakeModelManager,
    FakeSession,
    make_configuration,
    make_rgba_image,
)


def _service_for(session: FakeSession, **config_overrides: object) -> ClassificationService:
    manager = FakeModelManager(session)
    return ClassificationService(
        engine_factory=lambda: InferenceEngine(manager, "dancer_balanced"),
        configuration=ConfigurationRepository(initial=make_configuration(**config_overrides)),
    )


class TestClassificationResult:
    def test_empty(self) -> None:
        result = ClassificationResult.empty()
        assert result.is_detected is False
        assert result.confidence == 0.0
        assert result.predictions == ()
        assert result.top is None

    def test_threshold_is_strict(self) -> None:
        predictions = [Prediction(MoveLabel.WAP_2, 0.5), Prediction(MoveLabel.DAB_LEFT, 0.5)]
        assert ClassificationResult.from_predictions(predictions, 0.5).is_detected is False
        assert ClassificationResult.from_predictions(predictions, 0.4999).is_detected is True

    def test_confidence_is_top_probability(self) -> None:
        predictions = [Prediction(MoveLabel.SAY_SO_2, 0.7), Prediction(MoveLabel.WAP_2, 0.3)]
        result = ClassificationResult.from_predictions(predictions, 0.5)
        assert result.confidence == 0.7
        assert result.top == predictions[0]


class TestServiceLifecycle:
    def test_classify_before_start_returns_empty(self, service: ClassificationService) -> None:
        assert service.is_active() is False
        assert service.classify(make_rgba_image()) == ClassificationResult.empty()

    def test_start_and_stop(self, service: ClassificationService, fake_manager: FakeModelManager) -> None:
        service.start()
        assert service.is_active() is True
        service.stop()
        assert service.is_active() is False
        assert fake_manager.releases == 1

    def test_start_is_idempotent(self, service: ClassificationService, fake_manager: FakeModelManager) -> None:
        service.start()
        service.start()
        assert fake_manager.loads == 1

    def test_stop_is_idempotent(self, service: ClassificationService) -> None:
        service.stop()
        service.start()
        service.stop()
        service.stop()
        assert service.is_active() is False

    def test_restart_after_stop(self, service: ClassificationService, fake_manager: FakeModelManager) -> None:
        service.start()
        service.stop()
        service.start()

        result = service.classify(make_rgba_image())
        assert result.top is not None
        assert result.top.label is MoveLabel.DAB_LEFT
        assert fake_manager.loads == 2

    def test_classify_after_stop_returns_empty(self, service: ClassificationService) -> None:
        service.start()
        service.stop()
        assert service.classify(make_rgba_image()) == ClassificationResult.empty()

    def test_load_failure_propagates(self) -> None:
        manager = FakeModelManager(error=FileNotFoundError("missing"))
        service = ClassificationService(engine_factory=lambda: InferenceEngine(manager, "dancer"))
        with pytest.raises(ModelLoadError):
            service.start()
        assert service.is_active() is False

    def test_label_count_mismatch_fails_start(self) -> None:
        session = FakeSession(logits=[0.0] * 10, output_shape=("batch", 10))
        service = _service_for(session)
        with pytest.raises(ShapeMismatchError):
            service.start()
        assert service.is_active() is False
        assert session.released

    def test_input_size_mismatch_fails_start(self) -> None:
        service = _service_for(FakeSession(), target_width=TARGET_WIDTH * 2)
        with pytest.raises(ShapeMismatchError):
            service.start()
        assert service.is_active() is False

    def test_configuration_update_must_fit_loaded_model(self) -> None:
        service = _service_for(FakeSession())
        service.start()
        before = service.configuration.current()

        with pytest.raises(ShapeMismatchError):
            service.configuration.update(make_configuration(target_width=TARGET_WIDTH * 2))

        assert service.configuration.current() == before
        result = service.classify(make_rgba_image())
        assert len(result.predictions) == 15

    def test_configuration_update_unchecked_while_stopped(self) -> None:
        service = _service_for(FakeSession())
        service.configuration.update(make_configuration(target_width=TARGET_WIDTH * 2))
        assert service.configuration.current().target_width == TARGET_WIDTH * 2

        with pytest.raises(ShapeMismatchError):
            service.start()


class TestClassify:
    def test_end_to_end_dominant_logit(self, service: ClassificationService) -> None:
        service.start()
        result = service.classify(make_rgba_image(width=48, height=80))

        assert len(result.predictions) == 15
        assert result.predictions[0].label is MoveLabel.DAB_LEFT
        assert result.predictions[0].probability > 0.9
        assert result.confidence == result.predictions[0].probability
        assert result.is_detected is True
        assert sum(p.probability for p in result.predictions) == pytest.approx(1.0, abs=1e-5)

    def test_uniform_logits_not_detected(self) -> None:
        service = _service_for(FakeSession(logits=[0.0] * 15))
        service.start()
        result = service.classify(make_rgba_image())
        assert result.confidence == pytest.approx(1 / 15)
        assert result.is_detected is False

    def test_threshold_is_monotonic(self, service: ClassificationService) -> None:
        service.start()
        image = make_rgba_image()
        detections = [
            service.classify(image, make_configuration(threshold=threshold)).is_detected
            for threshold in (0.0, 0.5, 0.9, 0.95, 1.0, 2.5)
        ]
        # Once a frame stops being detected, higher thresholds never detect it again.
        assert detections == sorted(detections, reverse=True)
        assert detections[0] is True
        assert detections[-1] is False

    def test_uses_configuration_repository(self, service: ClassificationService) -> None:
        service.start()
        service.configuration.update_threshold(0.99)
        assert service.classify(make_rgba_image()).is_detected is False

    def test_analysis_disabled_returns_empty(self, service: ClassificationService) -> None:
        service.start()
        service.configuration.update_analysis_enabled(False)
        assert service.classify(make_rgba_image()) == ClassificationResult.empty()

    def test_image_without_planes_returns_empty(self, service: ClassificationService) -> None:
        service.start()
        image = RawImage(
            width=10,
            height=10,
            rotation_degrees=0,
            pixel_format=PixelFormat.RGBA_8888,
            timestamp=0,
            planes=(),
        )
        assert service.classify(image) == ClassificationResult.empty()

    def test_mirror_mode_flips_model_input(self, fake_session: FakeSession, service: ClassificationService) -> None:
        pixels = np.zeros((TARGET_HEIGHT, TARGET_WIDTH, 4), dtype=np.uint8)
        pixels[:, : TARGET_WIDTH // 2, :3] = 255
        image = make_rgba_image(pixels=pixels)
        service.start()

        service.classify(image, make_configuration(mirror=False))
        assert fake_session.last_feed is not None
        assert fake_session.last_feed[0, 0, 0, 0] == pytest.approx(1.0)

        service.classify(image, make_configuration(mirror=True))
        assert fake_session.last_feed[0, 0, 0, 0] == pytest.approx(0.0)
        assert fake_session.last_feed[0, 0, -1, 0] == pytest.approx(1.0)

    def test_rotation_is_applied_before_resize(self, fake_session: FakeSession, service: ClassificationService) -> None:
        # A landscape frame rotated by 90 degrees becomes portrait and fills the input exactly.
        pixels = np.zeros((TARGET_WIDTH, TARGET_HEIGHT, 4), dtype=np.uint8)
        pixels[0, :, :3] = 255
        service.start()
        service.classify(make_rgba_image(pixels=pixels, rotation=90))

        assert fake_session.last_feed is not None
        np.testing.assert_allclose(fake_session.last_feed[0, :, -1, :], 1.0)
        np.testing.assert_allclose(fake_session.last_feed[0, :, 0, :], 0.0)

    def test_dynamic_output_mismatch_propagates(self) -> None:
        session = FakeSession(logits=[0.0] * 10, output_shape=("batch", "classes"))
        service = _service_for(session)
        service.start()
        with pytest.raises(ShapeMismatchError):
            service.classify(make_rgba_image())

    def test_runtime_error_returns_empty(
        self, fake_session: FakeSession, service: ClassificationService, caplog: pytest.LogCaptureFixture
    ) -> None:
        service.start()
        fake_session.released = True
        with caplog.at_level(logging.ERROR, logger="dancer.ml.classifier"):
            assert service.classify(make_rgba_image()) == ClassificationResult.empty()
        assert "Error classifying frame" in caplog.text


class TestConcurrentStop:
    @pytest.mark.parametrize("round_", range(5))
    def test_stop_during_classification(self, round_: int, caplog: pytest.LogCaptureFixture) -> None:
        session = FakeSession(delay=0.005)
        service = _service_for(session)
        service.start()
        image = make_rgba_image()

        results: list[ClassificationResult] = []
        results_lock = threading.Lock()

        def classify_until_stopped() -> None:
            for _ in range(200):
                result = service.classify(image)
                with results_lock:
                    results.append(result)
                if not result.predictions:
                    return

        def stop() -> None:
            session.entered.wait(timeout=5)
            service.stop()

        threads = [threading.Thread(target=classify_until_stopped) for _ in range(4)]
        threads.append(threading.Thread(target=stop))
        with caplog.at_level(logging.ERROR):
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert not any(thread.is_alive() for thread in threads)
        assert session.calls > 0
        assert session.released
        sizes = [len(r.predictions) for r in results]
        assert set(sizes) == {0, 15}
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
        assert session.max_in_flight == 1
