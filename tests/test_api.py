"""Tests for the ClassifyX HTTP API."""

from __future__ import annotations

import io
import os
from typing import TYPE_CHECKING
from unittest.mock import patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI, status

from classifyx.api.schemas import BIAS_DISCLAIMER
from classifyx.config import get_settings
from classifyx.errors import InferenceError
from classifyx.main import create_app
from classifyx.ml.inference import InferencePool
from classifyx.ml.model_registry import ModelIdentifier, ModelRegistry
from fakes import FakeClassifier, top

MOBILENET = ModelIdentifier.MOBILENET_V2
RESNET = ModelIdentifier.RESNET50


def _init_app_state(
    app: FastAPI,
    handles: dict[ModelIdentifier, FakeClassifier] | None = None,
    **env_overrides: str,
) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    registry = ModelRegistry(settings)
    registry._handles = handles or {  # type: ignore[assignment]
        MOBILENET: FakeClassifier(MOBILENET, top("tabby", 0.81)),
        RESNET: FakeClassifier(RESNET, top("tiger cat", 0.64)),
    }
    app.state.settings = settings
    app.state.model_registry = registry
    app.state.inference_pool = InferencePool(settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app() -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _upload(data: bytes) -> dict[str, tuple[str, io.BytesIO, str]]:
    return {"file": ("photo.png", io.BytesIO(data), "image/png")}


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == ["MobileNetV2", "ResNet50"]
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, CLASSIFYX_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyImageEndpoint:
    async def test_single_model_uses_default(self, client: httpx.AsyncClient, png_bytes: bytes) -> None:
        response = await client.post("/api/v1/classify-image", files=_upload(png_bytes))

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "MobileNetV2"
        assert data["compare"] is False
        assert data["results"] == [{"model": "MobileNetV2", "result": "tabby (81%)"}]
        assert data["disclaimer"] == BIAS_DISCLAIMER

    async def test_single_model_selected_by_query(self, client: httpx.AsyncClient, png_bytes: bytes) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"model": "ResNet50"},
            files=_upload(png_bytes),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["results"] == [{"model": "ResNet50", "result": "tiger cat (64%)"}]

    async def test_compare_returns_all_models_in_order(self, client: httpx.AsyncClient, png_bytes: bytes) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"model": "ResNet50", "compare": "true"},
            files=_upload(png_bytes),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["results"] == [
            {"model": "MobileNetV2", "result": "tabby (81%)"},
            {"model": "ResNet50", "result": "tiger cat (64%)"},
        ]

    async def test_failing_model_reported_inline(self, png_bytes: bytes) -> None:
        app = create_app()
        _init_app_state(
            app,
            handles={
                MOBILENET: FakeClassifier(MOBILENET, top("cat", 0.97)),
                RESNET: FakeClassifier(RESNET, error=InferenceError(RESNET, "Model produced no output")),
            },
        )
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                params={"compare": "true"},
                files=_upload(png_bytes),
            )
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["results"] == [
                {"model": "MobileNetV2", "result": "cat (97%)"},
                {"model": "ResNet50", "result": "Classification failed: Model produced no output"},
            ]

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image", files=_upload(b"fake image data"))
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "cannot decode" in response.json()["detail"].lower()

    async def test_unknown_model_returns_422(self, client: httpx.AsyncClient, png_bytes: bytes) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"model": "InceptionV3"},
            files=_upload(png_bytes),
        )
        assert response.status_code == 422

    async def test_oversized_file_returns_413(self, png_bytes: bytes) -> None:
        app = create_app()
        _init_app_state(app, CLASSIFYX_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/classify-image", files=_upload(png_bytes))
            assert response.status_code == 413


class TestModelsEndpoint:
    async def test_models_listed_in_comparison_order(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert [m["name"] for m in models] == ["MobileNetV2", "ResNet50"]
        assert all(m["status"] == "loaded" for m in models)
        assert all(m["input_size"] == 224 for m in models)

    async def test_default_model_flagged(self) -> None:
        app = create_app()
        _init_app_state(app, CLASSIFYX_DEFAULT_MODEL="ResNet50")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/models")
            defaults = [m["name"] for m in response.json()["models"] if m["default"]]
            assert defaults == ["ResNet50"]


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, CLASSIFYX_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                headers={"Authorization": "Bearer wrong-key"},
                files=_upload(b"irrelevant"),
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
