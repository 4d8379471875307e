"""Tests for the ReefID HTTP API."""

from __future__ import annotations

import asyncio
import io
import os
import threading
import time
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status
from PIL import Image

from reefid.config import get_settings
from reefid.main import create_app
from reefid.ml.image_classifier import Err, ErrorKind, Ok, PredictionRecord, SeaAnimalClassifier
from reefid.ml.inference import InferencePool, PredictionSupersededError
from reefid.ml.labels import FALLBACK_LABELS
from reefid.ml.model_manager import OnnxModelManager
from reefid.ml.preprocessing import decode_image


class _FixedClassifier:
    """Classifier stand-in that always returns the same outcome."""

    model_name = "fixed"

    def __init__(self, outcome: Ok | Err) -> None:
        self.outcome = outcome
        self.calls = 0

    def predict(self, image: Image.Image) -> Ok | Err:
        self.calls += 1
        return self.outcome


class _SlowClassifier(_FixedClassifier):
    """Fixed classifier that takes a while, so requests overlap."""

    def predict(self, image: Image.Image) -> Ok | Err:
        time.sleep(0.3)
        return super().predict(image)


_WHALE = PredictionRecord(
    class_index=2,
    class_name="whale",
    confidence=0.8,
    all_probabilities=(0.05, 0.05, 0.8, 0.02, 0.02, 0.02, 0.02, 0.02),
    all_labels=FALLBACK_LABELS,
)


def _init_app_state(app: FastAPI, assets_dir: Path, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, {"REEFID_ASSETS_DIR": str(assets_dir), **env_overrides}):
        settings = get_settings()
    app.state.settings = settings
    app.state.inference_pool = InferencePool(settings)
    app.state.model_manager = OnnxModelManager(settings)
    app.state.classifier = _FixedClassifier(Ok(_WHALE))


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


def _png(size: tuple[int, int] = (32, 24), color: tuple[int, int, int] = (0, 80, 200)) -> io.BytesIO:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    buf.seek(0)
    return buf


@pytest.fixture()
def app(tmp_path: Path) -> FastAPI:
    """Create a fresh app instance with default settings."""
    application = create_app()
    _init_app_state(application, tmp_path)
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert isinstance(data["concurrent_requests"], int)
        assert isinstance(data["queue_depth"], int)

    async def test_health_gpu_true_when_cuda(self, tmp_path: Path) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, tmp_path, REEFID_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyImageEndpoint:
    async def test_returns_result_card(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("whale.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["image_name"] == "whale.png"
        assert data["class_index"] == 2
        assert data["class_name"] == "whale"
        assert data["display_name"] == "Whale"
        assert data["confidence_percent"] == 80
        assert data["error_kind"] is None
        assert len(data["predictions"]) == 8
        top = data["predictions"][2]
        assert top["is_top"] is True
        assert top["band"] == "high"
        assert app.state.classifier.calls == 1

    async def test_classifier_error_returns_sentinel_card(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        app.state.classifier = _FixedClassifier(Err(kind=ErrorKind.SHAPE_MISMATCH, message="8 vs 5"))
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("crab.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["class_index"] == -1
        assert data["class_name"] == "Error: 8 vs 5"
        assert data["confidence"] == 0.0
        assert data["error_kind"] == "shape_mismatch"
        assert [p["probability"] for p in data["predictions"]] == [0.0] * 8

    async def test_undecodable_upload_returns_error_line(self, client: httpx.AsyncClient) -> None:
        fake_image = io.BytesIO(b"fake image data")
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("test.jpg", fake_image, "image/jpeg")},
        )
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["detail"].startswith("Error: Cannot decode image")

    async def test_oversized_upload_rejected(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, REEFID_MAX_FILE_SIZE="16")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("big.png", _png(), "image/png")},
            )
            assert response.status_code == status.HTTP_413_CONTENT_TOO_LARGE

    async def test_queue_timeout_returns_503(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool = MagicMock()
        pool.run = AsyncMock(side_effect=TimeoutError)
        app.state.inference_pool = pool
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("a.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_superseded_request_returns_409(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool = MagicMock()
        pool.run = AsyncMock(side_effect=PredictionSupersededError("newer request"))
        app.state.inference_pool = pool
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("a.png", _png(), "image/png")},
            headers={"X-Client-Id": "phone-1"},
        )
        assert response.status_code == status.HTTP_409_CONFLICT

    async def test_same_client_id_shares_slot_key(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool = MagicMock()
        pool.run = AsyncMock(return_value=Ok(_WHALE))
        app.state.inference_pool = pool
        for _ in range(2):
            await client.post(
                "/api/v1/classify-image",
                files={"file": ("a.png", _png(), "image/png")},
                headers={"X-Client-Id": "phone-1"},
            )
        keys = {call.kwargs["key"] for call in pool.run.await_args_list}
        assert len(keys) == 1
        assert None not in keys

    async def test_requests_without_client_id_take_no_slot(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        pool = MagicMock()
        pool.run = AsyncMock(return_value=Ok(_WHALE))
        app.state.inference_pool = pool
        await client.post(
            "/api/v1/classify-image",
            files={"file": ("a.png", _png(), "image/png")},
        )
        assert pool.run.await_args.kwargs["key"] is None

    async def test_concurrent_uploads_without_client_id_both_succeed(
        self, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        app.state.classifier = _SlowClassifier(Ok(_WHALE))

        responses = await asyncio.gather(
            client.post("/api/v1/classify-image", files={"file": ("user1.png", _png(), "image/png")}),
            client.post("/api/v1/classify-image", files={"file": ("user2.png", _png(), "image/png")}),
        )

        assert [r.status_code for r in responses] == [status.HTTP_200_OK, status.HTTP_200_OK]
        assert {r.json()["image_name"] for r in responses} == {"user1.png", "user2.png"}

    async def test_decode_runs_off_the_event_loop_thread(self, client: httpx.AsyncClient) -> None:
        loop_thread = threading.get_ident()
        decode_threads: list[int] = []

        def recording_decode(data: bytes, *, max_pixels: int) -> Image.Image:
            decode_threads.append(threading.get_ident())
            return decode_image(data, max_pixels=max_pixels)

        with patch("reefid.api.routes.decode_image", side_effect=recording_decode):
            response = await client.post(
                "/api/v1/classify-image",
                files={"file": ("a.png", _png(), "image/png")},
            )

        assert response.status_code == status.HTTP_200_OK
        assert len(decode_threads) == 1
        assert decode_threads[0] != loop_thread

    async def test_missing_model_end_to_end(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        settings = app.state.settings
        app.state.classifier = SeaAnimalClassifier(settings, app.state.model_manager)
        response = await client.post(
            "/api/v1/classify-image",
            files={"file": ("a.png", _png(), "image/png")},
        )
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["class_index"] == -1
        assert data["class_name"].startswith("Error:")
        assert data["error_kind"] == "resource_load"


class TestLabelsEndpoint:
    async def test_fallback_labels_when_file_missing(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/labels")
        assert response.status_code == status.HTTP_200_OK
        assert response.json()["labels"] == list(FALLBACK_LABELS)

    async def test_labels_from_file(self, tmp_path: Path, client: httpx.AsyncClient) -> None:
        (tmp_path / "class_names.txt").write_text("shark\n\nseal\n", encoding="utf-8")
        response = await client.get("/api/v1/labels")
        assert response.json()["labels"] == ["shark", "seal"]


class TestModelsEndpoint:
    async def test_missing_model(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert len(models) == 1
        assert models[0]["name"] == "sea_animals_model.onnx"
        assert models[0]["status"] == "missing"
        assert models[0]["num_classes"] == 8
        assert models[0]["input_size"] == 150

    async def test_bundled_model_is_available(self, tmp_path: Path, client: httpx.AsyncClient) -> None:
        (tmp_path / "sea_animals_model.onnx").write_bytes(b"model")
        response = await client.get("/api/v1/models")
        assert response.json()["models"][0]["status"] == "available"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, REEFID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
            assert response.json()["detail"].startswith("Permission denied")

    async def test_auth_passes_with_correct_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, REEFID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self, tmp_path: Path) -> None:
        app = create_app()
        _init_app_state(app, tmp_path, REEFID_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.post(
                "/api/v1/classify-image",
                files={"file": ("a.png", _png(), "image/png")},
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code == status.HTTP_401_UNAUTHORIZED
