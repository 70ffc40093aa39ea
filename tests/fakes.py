"""Fakes and builders shared by the test modules."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from types import SimpleNamespace

import numpy as np

from dancer.ml.frames import ImagePlane, PixelFormat, RawImage
from dancer.store.configuration import PipelineConfiguration

TARGET_WIDTH = 16
TARGET_HEIGHT = 32
NUM_LABELS = 15

DOMINANT_FIRST_LOGITS = [5.0, 1.0] + [0.0] * (NUM_LABELS - 2)


class FakeSession:
    """Stands in for onnxruntime.InferenceSession.

    Fails loudly if two forward passes overlap or if it is used after release.
    """

    def __init__(
        self,
        logits: list[float] | None = None,
        input_shape: tuple[object, ...] = ("batch", TARGET_HEIGHT, TARGET_WIDTH, 3),
        output_shape: tuple[object, ...] = ("batch", NUM_LABELS),
        delay: float = 0.0,
    ) -> None:
        self.logits = list(logits if logits is not None else DOMINANT_FIRST_LOGITS)
        self._input_shape = list(input_shape)
        self._output_shape = list(output_shape)
        self.delay = delay
        self.released = False
        self.calls = 0
        self.max_in_flight = 0
        self._in_flight = 0
        self._counter_lock = threading.Lock()
        self.last_feed: np.ndarray | None = None
        self.entered = threading.Event()

    def reopen(self) -> FakeSession:
        """A new, unreleased session with the same model signature."""
        return FakeSession(
            logits=self.logits,
            input_shape=tuple(self._input_shape),
            output_shape=tuple(self._output_shape),
            delay=self.delay,
        )

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name="input_1", shape=self._input_shape)]

    def get_outputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name="logits", shape=self._output_shape)]

    def run(self, output_names: object, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        if self.released:
            raise RuntimeError("session used after release")
        with self._counter_lock:
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            self.calls += 1
        self.entered.set()
        try:
            self.last_feed = feeds["input_1"]
            if self.delay:
                time.sleep(self.delay)
            if self.released:
                raise RuntimeError("session released during run")
            return [np.array([self.logits], dtype=np.float32)]
        finally:
            with self._counter_lock:
                self._in_flight -= 1


class FakeModelManager:
    """Model manager serving a single FakeSession."""

    def __init__(self, session: FakeSession | None = None, error: Exception | None = None) -> None:
        self.session = session or FakeSession()
        self.error = error
        self.loads = 0
        self.releases = 0
        self._loaded: set[str] = set()

    def ensure_available(self, model_name: str) -> Path:
        return Path(f"/models/{model_name}.onnx")

    def get_session(self, model_name: str) -> FakeSession:
        if self.error is not None:
            raise self.error
        if self.session.released:
            self.session = self.session.reopen()
        self.loads += 1
        self._loaded.add(model_name)
        return self.session

    def release_session(self, model_name: str) -> None:
        self.releases += 1
        self._loaded.discard(model_name)
        self.session.released = True

    def get_loaded_models(self) -> list[str]:
        return sorted(self._loaded)

    def shutdown(self) -> None:
        self._loaded.clear()


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------


def rgba_pixels(width: int, height: int, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)


def make_rgba_image(
    width: int = 24,
    height: int = 40,
    rotation: int = 0,
    pixels: np.ndarray | None = None,
    row_padding: int = 0,
) -> RawImage:
    """Build an RGBA_8888 RawImage, optionally with padded rows."""
    if pixels is None:
        pixels = rgba_pixels(width, height)
    height, width = pixels.shape[:2]
    rows = pixels.reshape(height, width * 4)
    if row_padding:
        rows = np.hstack([rows, np.full((height, row_padding), 7, dtype=np.uint8)])
    return RawImage(
        width=width,
        height=height,
        rotation_degrees=rotation,
        pixel_format=PixelFormat.RGBA_8888,
        timestamp=time.monotonic_ns(),
        planes=(ImagePlane(data=rows.tobytes(), row_stride=width * 4 + row_padding, pixel_stride=4),),
    )


def make_configuration(**overrides: object) -> PipelineConfiguration:
    values: dict[str, object] = {
        "threshold": 0.5,
        "target_width": TARGET_WIDTH,
        "target_height": TARGET_HEIGHT,
    }
    values.update(overrides)
    return PipelineConfiguration.model_validate(values)
