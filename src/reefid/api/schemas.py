"""Pydantic request/response schemas for the ReefID API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassProbability(BaseModel):
    """One row of the ranked probability list."""

    index: int
    label: str
    display_name: str
    probability: float
    percent: int = Field(description="Probability as a truncated whole percentage")
    band: str = Field(description="Confidence band: 'high' (>0.7), 'medium' (>0.3), or 'low'")
    color: str = Field(description="Badge colour for the band")
    is_top: bool = Field(description="True for the winning class")


class ClassifyImageResponse(BaseModel):
    """Result card for one classified image."""

    image_name: str | None
    class_index: int = Field(description="Winning class index, -1 when the prediction failed")
    class_name: str
    display_name: str
    confidence: float
    confidence_percent: int
    predictions: list[ClassProbability]
    error_kind: str | None = Field(
        default=None,
        description="Failure category when class_index is -1: "
        "'resource_load', 'decode', 'preprocess', 'invocation', or 'shape_mismatch'",
    )


class LabelsResponse(BaseModel):
    """Class labels currently in effect, indexed by class id."""

    labels: list[str]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about the bundled model."""

    name: str
    task: str = "image_classification"
    status: str = Field(description="Model status: 'active', 'available', or 'missing'")
    num_classes: int
    input_size: int


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
