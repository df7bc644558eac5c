"""API route definitions."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from classifyx.api.dependencies import (
    get_app_settings,
    get_inference_pool,
    get_model_registry,
    verify_api_key,
)
from classifyx.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelResult,
    ModelsResponse,
)
from classifyx.errors import ImageDecodeError
from classifyx.ml.dispatcher import ClassificationDispatcher
from classifyx.ml.model_registry import MODEL_SPECS, ModelIdentifier
from classifyx.ml.preprocessing import decode_image

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with one model or compare all models",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    model: ModelIdentifier | None = None,
    compare: bool = False,
) -> ClassifyImageResponse:
    """Classify an uploaded image and return each model's top label.

    Per-model failures do not fail the request; they appear as
    'Classification failed: ...' results.
    """
    settings = get_app_settings(request)
    pool = get_inference_pool(request)

    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )

    try:
        image = await pool.run(decode_image, data, settings.max_image_pixels)
    except ImageDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except TimeoutError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference workers are busy, try again later",
        ) from exc

    selected = model or ModelIdentifier(settings.default_model)
    dispatcher = ClassificationDispatcher(get_model_registry(request), pool)
    await dispatcher.classify(image, selected, compare)

    state = dispatcher.snapshot()
    logger.info(
        "Classified %s (%dx%d) with %s",
        file.filename,
        image.shape[1],
        image.shape[0],
        ", ".join(state.models),
    )
    return ClassifyImageResponse(
        model=str(selected),
        compare=compare,
        results=[ModelResult(model=str(m), result=state.results[m]) for m in state.models],
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = get_app_settings(request)
    pool = get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=get_model_registry(request).loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the supported models in comparison order."""
    settings = get_app_settings(request)
    registry = get_model_registry(request)
    loaded = set(registry.loaded_models())

    models: list[ModelInfo] = []
    for identifier in registry.identifiers():
        spec = MODEL_SPECS[identifier]
        models.append(
            ModelInfo(
                name=str(identifier),
                status="loaded" if identifier in loaded else "available",
                default=identifier == settings.default_model,
                input_size=spec.input_size,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
