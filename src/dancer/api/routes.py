"""API route definitions."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

import numpy as np
from fastapi import APIRouter, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from dancer.api.schemas import (
    AnalysisRecordResponse,
    AnalysisStateResponse,
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    HistoryResponse,
    LabelsResponse,
    ModelInfo,
    ModelsResponse,
    MoveLabelInfo,
)
from dancer.ml.classifier import ClassificationResult
from dancer.ml.errors import InvalidFrameError, ModelLoadError, ShapeMismatchError
from dancer.ml.frames import VALID_ROTATIONS, ImagePlane, PixelFormat, RawImage
from dancer.ml.model_manager import MODEL_REGISTRY
from dancer.ml.transforms import decode_encoded
from dancer.store.configuration import PipelineConfiguration

if TYPE_CHECKING:
    from dancer.config import Settings
    from dancer.ml.classifier import ClassificationService
    from dancer.ml.inference import InferencePool
    from dancer.ml.model_manager import OnnxModelManager
    from dancer.store.configuration import ConfigurationRepository
    from dancer.store.history import AnalysisHistory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_service(request: Request) -> ClassificationService:
    service: ClassificationService = request.app.state.classification_service
    return service


def _get_configuration(request: Request) -> ConfigurationRepository:
    configuration: ConfigurationRepository = request.app.state.configuration
    return configuration


def _get_history(request: Request) -> AnalysisHistory:
    history: AnalysisHistory = request.app.state.history
    return history


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _classify_upload(
    service: ClassificationService,
    data: bytes,
    rotation: int,
    config: PipelineConfiguration,
) -> ClassificationResult:
    """Decode an uploaded image and classify it (runs in the worker pool)."""
    try:
        pixels = decode_encoded(data)
    except InvalidFrameError as exc:
        logger.debug("Skipping undecodable upload: %s", exc)
        return ClassificationResult.empty()

    height, width = pixels.shape[:2]
    image = RawImage(
        width=width,
        height=height,
        rotation_degrees=rotation,
        pixel_format=PixelFormat.RGBA_8888,
        timestamp=time.monotonic_ns(),
        planes=(ImagePlane(data=np.ascontiguousarray(pixels).tobytes(), row_stride=width * 4, pixel_stride=4),),
    )
    return service.classify(image, config)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify the dance move in an image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    rotation: int = Query(default=0, description="Clockwise rotation to apply: 0, 90, 180 or 270"),
    mirror: bool | None = Query(default=None, description="Override the configured mirror mode"),
    save: bool = Query(default=False, description="Store the result in the analysis history"),
    camera_lens: str | None = Query(default=None),
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked move predictions."""
    if rotation not in VALID_ROTATIONS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            detail=f"rotation must be one of {sorted(VALID_ROTATIONS)}",
        )

    settings = _get_settings(request)
    data = await file.read()
    if len(data) > settings.max_file_size:
        return JSONResponse(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            content={"detail": f"File exceeds {settings.max_file_size} bytes"},
        )

    config = _get_configuration(request).current()
    if mirror is not None:
        config = config.model_copy(update={"mirror": mirror})

    pool = _get_inference_pool(request)
    try:
        result = await pool.run(_classify_upload, _get_service(request), data, rotation, config)
    except TimeoutError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Classification queue is full, try again later"},
        )
    except ShapeMismatchError as exc:
        logger.error("Configuration does not fit the model: %s", exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": str(exc)},
        )

    analysis_id = None
    if save:
        analysis_id = _get_history(request).save(
            result,
            config.threshold,
            image_ref=file.filename,
            camera_lens=camera_lens,
        )
    return ClassifyImageResponse.from_result(result, analysis_id=analysis_id)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "/analysis/start",
    response_model=AnalysisStateResponse,
    responses={
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Load the model and start accepting frames",
)
async def start_analysis(request: Request) -> AnalysisStateResponse | JSONResponse:
    service = _get_service(request)
    try:
        await _get_inference_pool(request).run_io(service.start)
    except ModelLoadError as exc:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})
    except ShapeMismatchError as exc:
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"detail": str(exc)})
    return AnalysisStateResponse(active=service.is_active())


@router.post(
    "/analysis/stop",
    response_model=AnalysisStateResponse,
    summary="Stop accepting frames and release the model",
)
async def stop_analysis(request: Request) -> AnalysisStateResponse:
    service = _get_service(request)
    await _get_inference_pool(request).run_io(service.stop)
    return AnalysisStateResponse(active=service.is_active())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@router.get("/config", response_model=PipelineConfiguration, summary="Current pipeline configuration")
async def get_config(request: Request) -> PipelineConfiguration:
    return _get_configuration(request).current()


@router.put(
    "/config",
    response_model=PipelineConfiguration,
    responses={status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse}},
    summary="Replace the pipeline configuration",
)
async def put_config(request: Request, configuration: PipelineConfiguration) -> PipelineConfiguration:
    """Replace the configuration; a target size the loaded model cannot take is rejected."""
    try:
        _get_configuration(request).update(configuration)
    except ShapeMismatchError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    return configuration


# ---------------------------------------------------------------------------
# Catalog and status
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        active=_get_service(request).is_active(),
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/labels", response_model=LabelsResponse, summary="List the move catalog")
async def list_labels(request: Request) -> LabelsResponse:
    label_map = _get_service(request).label_map
    return LabelsResponse(
        labels=[
            MoveLabelInfo(index=index, label=label.value, display_name=label.display_name)
            for index, label in enumerate(label_map.labels)
        ]
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and which one is configured."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                filename=spec.filename,
                description=spec.description,
                status="active" if spec.name == settings.model_name else "available",
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@router.get("/history", response_model=HistoryResponse, summary="List stored analyses, newest first")
async def list_history(request: Request) -> HistoryResponse:
    records = _get_history(request).list_records()
    return HistoryResponse(analyses=[AnalysisRecordResponse.from_record(r) for r in records])


@router.get(
    "/history/{analysis_id}",
    response_model=AnalysisRecordResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Get one stored analysis",
)
async def get_history_entry(request: Request, analysis_id: str) -> AnalysisRecordResponse:
    record = _get_history(request).get(analysis_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Analysis {analysis_id} not found")
    return AnalysisRecordResponse.from_record(record)


@router.delete(
    "/history/{analysis_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Delete one stored analysis",
)
async def delete_history_entry(request: Request, analysis_id: str) -> None:
    if not _get_history(request).delete(analysis_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Analysis {analysis_id} not found")


@router.delete("/history", status_code=status.HTTP_204_NO_CONTENT, summary="Delete all stored analyses")
async def clear_history(request: Request) -> None:
    _get_history(request).delete_all()
