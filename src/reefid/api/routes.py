"""API route definitions."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from reefid.api.middleware import client_key, verify_api_key
from reefid.api.presentation import (
    ImageSelected,
    ProcessingFailed,
    ScreenState,
    outcome_event,
    reduce,
    render,
)
from reefid.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    LabelsResponse,
    ModelInfo,
    ModelsResponse,
)
from reefid.ml.image_classifier import ErrorKind
from reefid.ml.inference import PredictionSupersededError
from reefid.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from reefid.config import Settings
    from reefid.ml.image_classifier import ImageClassifier
    from reefid.ml.inference import InferencePool
    from reefid.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> OnnxModelManager:
    manager: OnnxModelManager = request.app.state.model_manager
    return manager


def _get_classifier(request: Request) -> ImageClassifier:
    classifier: ImageClassifier = request.app.state.classifier
    return classifier


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_CONTENT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify a sea animal image",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return per-class confidence scores.

    Classifier failures still answer 200 with the error card (class_index -1).
    Failures outside the classifier, such as an undecodable upload, answer
    422 with a plain error line.
    """
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    classifier = _get_classifier(request)

    state = reduce(ScreenState(), ImageSelected(image_name=file.filename or "upload"))

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return JSONResponse(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            content={"detail": f"File exceeds {settings.max_file_size} bytes"},
        )

    try:
        try:
            image = await asyncio.to_thread(decode_image, data, max_pixels=settings.max_image_pixels)
        except ValueError as exc:
            state = reduce(state, ProcessingFailed(message=str(exc), kind=ErrorKind.DECODE))
            return JSONResponse(
                status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
                content={"detail": state.error},
            )

        outcome = await pool.run(classifier.predict, image, key=client_key(request))
    except TimeoutError:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Inference queue is full, retry later"},
        )
    except PredictionSupersededError:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Superseded by a newer request"},
        )
    except Exception as exc:
        logger.exception("Error processing image %s", state.image_name)
        state = reduce(state, ProcessingFailed(message=str(exc) or type(exc).__name__))
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_CONTENT,
            content={"detail": state.error},
        )

    state = reduce(state, outcome_event(outcome))
    return render(state)


@router.get(
    "/labels",
    response_model=LabelsResponse,
    summary="List class labels",
)
async def list_labels(request: Request) -> LabelsResponse:
    """Return the class labels in class-index order."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    return LabelsResponse(labels=list(manager.get_labels(settings.labels_path)))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the bundled model and its status."""
    settings = _get_settings(request)
    manager = _get_model_manager(request)
    labels = manager.get_labels(settings.labels_path)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=settings.model_filename,
                status=manager.model_status(settings.model_path),
                num_classes=len(labels),
                input_size=settings.input_size,
            )
        ]
    )
