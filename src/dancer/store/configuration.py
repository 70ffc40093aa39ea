"""Pipeline configuration and the repository that holds it.

A configuration is an immutable value; updates swap the whole instance under
a lock, so readers see either the old or the new value and never a mix.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class PipelineConfiguration(BaseModel):
    """Immutable camera and analysis settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    threshold: float = Field(default=0.5, ge=0.0, description="Detection needs top probability strictly above this")
    mirror: bool = Field(default=False, description="Flip frames horizontally (front camera)")
    analysis_enabled: bool = True
    target_width: int = Field(default=160, gt=0)
    target_height: int = Field(default=256, gt=0)
    mean: float = 0.0
    std: float = Field(default=255.0, gt=0.0)


class ConfigurationRepository:
    """Thread-safe holder of the current configuration with change listeners.

    When ``path`` is given, every update is written there as JSON and the
    initial value is read from it.
    """

    def __init__(self, path: str | Path | None = None, initial: PipelineConfiguration | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._listeners: list[Callable[[PipelineConfiguration], None]] = []
        self._validators: list[Callable[[PipelineConfiguration], None]] = []
        self._current = self._load(initial or PipelineConfiguration())

    def current(self) -> PipelineConfiguration:
        with self._lock:
            return self._current

    def update(self, configuration: PipelineConfiguration) -> None:
        self._swap(lambda _current: configuration)

    def update_threshold(self, threshold: float) -> None:
        if threshold < 0:
            raise ValueError(f"Threshold must be non-negative, got: {threshold}")
        self._replace(threshold=threshold)

    def update_mirror_mode(self, enabled: bool) -> None:
        self._replace(mirror=enabled)

    def update_analysis_enabled(self, enabled: bool) -> None:
        self._replace(analysis_enabled=enabled)

    def subscribe(self, listener: Callable[[PipelineConfiguration], None]) -> Callable[[], None]:
        """Call ``listener`` with the current value now and on every update.

        Returns a function that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)
            current = self._current
        listener(current)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def add_validator(self, validator: Callable[[PipelineConfiguration], None]) -> None:
        """Run ``validator`` on every candidate before it replaces the current value.

        A validator rejects a candidate by raising; the update then fails and
        nothing is stored.
        """
        with self._lock:
            self._validators.append(validator)

    # -- Internal -----------------------------------------------------------

    def _replace(self, **changes: object) -> None:
        # Re-validate through the model so field constraints still apply.
        self._swap(lambda current: PipelineConfiguration.model_validate({**current.model_dump(), **changes}))

    def _swap(self, build: Callable[[PipelineConfiguration], PipelineConfiguration]) -> None:
        with self._lock:
            configuration = build(self._current)
            for validator in self._validators:
                validator(configuration)
            self._persist(configuration)
            self._current = configuration
            listeners = list(self._listeners)
        logger.debug("Configuration updated: %s", configuration)
        for listener in listeners:
            try:
                listener(configuration)
            except Exception:
                logger.exception("Configuration listener failed")

    def _load(self, default: PipelineConfiguration) -> PipelineConfiguration:
        if self._path is None or not self._path.exists():
            return default
        try:
            loaded = PipelineConfiguration.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError):
            logger.exception("Error reading configuration from %s, using defaults", self._path)
            return default
        logger.info("Loaded configuration from %s", self._path)
        return loaded

    def _persist(self, configuration: PipelineConfiguration) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(configuration.model_dump_json(indent=2), encoding="utf-8")
