"""Frame analyzer with keep-only-latest backpressure.

The camera calls ``analyze()`` from its own thread for every frame. Frames are
copied into ``RawImage`` values immediately and placed in a single slot; a
worker thread classifies whatever frame is newest. A frame still waiting when
the next one arrives is dropped, so the pipeline never builds a backlog.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from dancer.ml.errors import ShapeMismatchError
from dancer.ml.frames import ImageFrameAdapter

if TYPE_CHECKING:
    from collections.abc import Callable

    from dancer.ml.classifier import ClassificationResult, ClassificationService
    from dancer.ml.frames import NativeFrame, RawImage

logger = logging.getLogger(__name__)

JOIN_TIMEOUT_SECONDS: float = 5.0


class MoveAnalyzer:
    """Feeds camera frames to the classification service one at a time."""

    def __init__(
        self,
        service: ClassificationService,
        on_result: Callable[[RawImage, ClassificationResult], None],
        adapter: ImageFrameAdapter | None = None,
    ) -> None:
        self._service = service
        self._on_result = on_result
        self._adapter = adapter or ImageFrameAdapter()

        self._condition = threading.Condition()
        self._pending: RawImage | None = None
        self._closed = False
        self._dropped = 0
        self._processed = 0
        self._failure: ShapeMismatchError | None = None

        self._worker = threading.Thread(target=self._run, name="dancer-analyzer", daemon=True)
        self._worker.start()

    @property
    def dropped_frames(self) -> int:
        with self._condition:
            return self._dropped

    @property
    def processed_frames(self) -> int:
        with self._condition:
            return self._processed

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def failure(self) -> ShapeMismatchError | None:
        """The configuration error that stopped the worker, if any."""
        with self._condition:
            return self._failure

    def analyze(self, frame: NativeFrame) -> None:
        """Accept a frame from the camera; returns without waiting for inference."""
        try:
            image = self._adapter.to_domain(frame)
        except ValueError as exc:  # InvalidFrameError or bad frame metadata
            logger.debug("Dropping frame without usable image: %s", exc)
            return

        with self._condition:
            if self._closed:
                return
            if self._pending is not None:
                self._dropped += 1
            self._pending = image
            self._condition.notify()

    def close(self) -> None:
        """Stop the worker; an in-flight classification finishes but its result is discarded."""
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._pending = None
            self._condition.notify_all()
        if threading.current_thread() is not self._worker:
            self._worker.join(timeout=JOIN_TIMEOUT_SECONDS)
        logger.debug("Analyzer closed (processed=%s, dropped=%s)", self._processed, self._dropped)

    def _run(self) -> None:
        while True:
            with self._condition:
                while self._pending is None and not self._closed:
                    self._condition.wait()
                if self._closed:
                    return
                image = self._pending
                self._pending = None

            try:
                result = self._service.classify(image)
            except ShapeMismatchError as exc:
                logger.exception("Model does not accept the configured input, stopping analyzer")
                with self._condition:
                    self._failure = exc
                    self._closed = True
                    self._pending = None
                return

            with self._condition:
                if self._closed:
                    logger.debug("Analyzer closed during classification, discarding result")
                    return
                self._processed += 1
            try:
                self._on_result(image, result)
            except Exception:
                logger.exception("Result callback failed")
