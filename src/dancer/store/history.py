"""In-memory history of classification results."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dancer.ml.classifier import ClassificationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisRecord:
    """A stored analysis with the settings it was produced under."""

    id: str
    timestamp: float
    result: ClassificationResult
    threshold: float
    image_ref: str | None
    camera_lens: str | None


class AnalysisHistory:
    """Thread-safe store of analysis records, keyed by id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, AnalysisRecord] = {}

    def save(
        self,
        result: ClassificationResult,
        threshold: float,
        *,
        image_ref: str | None = None,
        camera_lens: str | None = None,
        timestamp: float | None = None,
        analysis_id: str | None = None,
    ) -> str:
        """Store a result and return its id. Saving under an existing id replaces it."""
        record = AnalysisRecord(
            id=analysis_id or str(uuid.uuid4()),
            timestamp=time.time() if timestamp is None else timestamp,
            result=result,
            threshold=threshold,
            image_ref=image_ref,
            camera_lens=camera_lens,
        )
        with self._lock:
            self._records[record.id] = record
        logger.debug(
            "Saved analysis %s (detected=%s, confidence=%.3f)",
            record.id,
            result.is_detected,
            result.confidence,
        )
        return record.id

    def get(self, analysis_id: str) -> AnalysisRecord | None:
        with self._lock:
            return self._records.get(analysis_id)

    def list_records(self) -> list[AnalysisRecord]:
        """All records, most recent first."""
        with self._lock:
            records = list(self._records.values())
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    def delete(self, analysis_id: str) -> bool:
        with self._lock:
            removed = self._records.pop(analysis_id, None) is not None
        if removed:
            logger.debug("Deleted analysis %s", analysis_id)
        return removed

    def delete_all(self) -> None:
        with self._lock:
            self._records.clear()
        logger.debug("Deleted all analyses")

    def count(self) -> int:
        with self._lock:
            return len(self._records)
