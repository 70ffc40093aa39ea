"""Pydantic request/response schemas for the Dancer API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from dancer.ml.classifier import ClassificationResult
    from dancer.store.history import AnalysisRecord


class MovePrediction(BaseModel):
    """Probability of a single dance move."""

    label: str
    display_name: str
    probability: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    is_detected: bool
    confidence: float = Field(ge=0.0, le=1.0, description="Probability of the top prediction")
    predictions: list[MovePrediction] = Field(description="All moves, sorted by probability (descending)")
    analysis_id: str | None = Field(default=None, description="History id when the result was saved")

    @classmethod
    def from_result(cls, result: ClassificationResult, analysis_id: str | None = None) -> ClassifyImageResponse:
        return cls(
            is_detected=result.is_detected,
            confidence=result.confidence,
            predictions=[
                MovePrediction(
                    label=p.label.value,
                    display_name=p.label.display_name,
                    probability=p.probability,
                )
                for p in result.predictions
            ],
            analysis_id=analysis_id,
        )


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    active: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class AnalysisStateResponse(BaseModel):
    """Result of a start/stop request."""

    active: bool


class MoveLabelInfo(BaseModel):
    """One entry of the move catalog."""

    index: int = Field(description="Model output index")
    label: str
    display_name: str


class LabelsResponse(BaseModel):
    labels: list[MoveLabelInfo]


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    filename: str
    description: str
    status: str = Field(description="Model status: 'active' or 'available'")


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class AnalysisRecordResponse(BaseModel):
    """A stored analysis."""

    id: str
    timestamp: float
    threshold: float
    image_ref: str | None
    camera_lens: str | None
    result: ClassifyImageResponse

    @classmethod
    def from_record(cls, record: AnalysisRecord) -> AnalysisRecordResponse:
        return cls(
            id=record.id,
            timestamp=record.timestamp,
            threshold=record.threshold,
            image_ref=record.image_ref,
            camera_lens=record.camera_lens,
            result=ClassifyImageResponse.from_result(record.result, analysis_id=record.id),
        )


class HistoryResponse(BaseModel):
    analyses: list[AnalysisRecordResponse]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
