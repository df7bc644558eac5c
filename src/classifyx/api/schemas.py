"""Pydantic request/response schemas for the ClassifyX API."""

from __future__ import annotations

from pydantic import BaseModel, Field

BIAS_DISCLAIMER = (
    "AI models can have biases based on their training data. "
    "Results should be interpreted with caution and not taken as absolute truth."
)


class ModelResult(BaseModel):
    """One model's formatted top prediction, or its failure description."""

    model: str
    result: str = Field(description="'<label> (<percent>%)' or 'Classification failed: <reason>'")


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    model: str = Field(description="Model selected for single-model classification")
    compare: bool
    results: list[ModelResult] = Field(description="One entry per model that ran, in model declaration order")
    disclaimer: str = BIAS_DISCLAIMER


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    status: str = Field(description="Model status: 'loaded' or 'available'")
    default: bool
    input_size: int
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
