from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from hybridchat.chat.errors import (
    ChatRequestError,
    ModelSetupRequiredError,
    ThreadNotFoundError,
)
from hybridchat.chat.multiplexer import sse_event
from hybridchat.dependencies import get_orchestrator
from hybridchat.routers.chat import router as chat_router
from hybridchat.routers.images import router as images_router
from hybridchat.schemas.chat import ChatThread, ChatUser, ModelSummary
from hybridchat.services.blob_store import LocalBlobStore
from hybridchat.services.image_models import ImageModelCatalog, ImageModelConfig
from hybridchat.services.model_registry import ModelSetupStatus

HEADERS = {"X-User-Id": "alice", "X-User-Name": "Alice"}


class FakeRegistry:
    async def check_setup(self) -> ModelSetupStatus:
        return ModelSetupStatus(is_configured=True, enabled_count=2, has_default=True)


class FakeOrchestrator:
    def __init__(self, image_root: Path) -> None:
        self.turn_error: ChatRequestError | None = None
        self.users: list[ChatUser] = []
        self.deleted: list[str] = []
        self.models = FakeRegistry()
        self.image_models = ImageModelCatalog(
            [
                ImageModelConfig(
                    id="dall-e-3",
                    name="DALL-E 3",
                    description="Detailed images",
                    api_key="key",
                    instance_name="inst",
                    deployment_name="dalle",
                    api_version="2024-01-01",
                ),
                ImageModelConfig(
                    id="gpt-image-1",
                    name="GPT Image 1",
                    description="",
                    api_key=None,
                    instance_name=None,
                    deployment_name=None,
                    api_version="2025-04-01-preview",
                ),
            ]
        )
        self.blob_store = LocalBlobStore(image_root, "http://testserver")

    async def start_turn(self, prompt, user):
        self.users.append(user)
        if self.turn_error is not None:
            raise self.turn_error

        async def _events():
            yield sse_event("content", {"choices": []})
            yield sse_event("finalContent", f"echo: {prompt.message}")

        return _events()

    async def create_thread(self, user, request):
        self.users.append(user)
        return ChatThread(id="t1", user_id=user.id, user_name=user.name, name=request.name or "New Chat")

    async def delete_thread(self, thread_id, user):
        if thread_id != "t1":
            raise ThreadNotFoundError(f"Chat thread {thread_id} not found")
        self.deleted.append(thread_id)
        return 3

    async def set_image_model(self, thread_id, user, image_model_id):
        if image_model_id not in (None, "dall-e-3"):
            raise ChatRequestError(f"Invalid image model: {image_model_id}")
        return ChatThread(id=thread_id, user_id=user.id, image_model_id=image_model_id)

    async def list_models(self):
        return [ModelSummary(id="gpt-4o", friendly_name="GPT-4o", is_default=True)]


@pytest.fixture
def orchestrator(tmp_path) -> FakeOrchestrator:
    return FakeOrchestrator(tmp_path / "images")


@pytest.fixture
def client(orchestrator) -> TestClient:
    app = FastAPI()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.include_router(chat_router)
    app.include_router(images_router)
    return TestClient(app)


def _sse_payloads(body: str) -> list[dict[str, Any]]:
    return [
        json.loads(line[len("data:"):].strip())
        for line in body.splitlines()
        if line.startswith("data:")
    ]


def test_chat_requires_user_header(client) -> None:
    response = client.post("/api/chat", json={"id": "t1", "message": "hi"})

    assert response.status_code == 401


def test_chat_streams_events(client, orchestrator) -> None:
    response = client.post(
        "/api/chat",
        json={"id": "t1", "message": "hi"},
        headers={**HEADERS, "X-User-Admin": "true"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert _sse_payloads(response.text) == [
        {"type": "content", "response": {"choices": []}},
        {"type": "finalContent", "response": "echo: hi"},
    ]
    assert orchestrator.users == [ChatUser(id="alice", name="Alice", is_admin=True)]


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ModelSetupRequiredError("No AI models are configured yet."), 503),
        (ThreadNotFoundError("Chat thread t1 not found"), 404),
        (ChatRequestError("Filetype is not supported"), 400),
    ],
)
def test_chat_request_errors_map_to_status(client, orchestrator, error, status_code) -> None:
    orchestrator.turn_error = error

    response = client.post("/api/chat", json={"id": "t1", "message": "hi"}, headers=HEADERS)

    assert response.status_code == status_code
    assert response.json() == {"detail": error.detail}


def test_thread_routes(client, orchestrator) -> None:
    created = client.post("/api/threads", json={"name": "Plans"}, headers=HEADERS)
    assert created.status_code == 201
    assert created.json()["userId"] == "alice"
    assert created.json()["name"] == "Plans"

    assert client.delete("/api/threads/t1", headers=HEADERS).status_code == 204
    assert orchestrator.deleted == ["t1"]
    assert client.delete("/api/threads/t2", headers=HEADERS).status_code == 404

    updated = client.put(
        "/api/threads/t1/image-model", json={"imageModelId": "dall-e-3"}, headers=HEADERS
    )
    assert updated.status_code == 200
    assert updated.json()["imageModelId"] == "dall-e-3"

    rejected = client.put(
        "/api/threads/t1/image-model", json={"imageModelId": "midjourney"}, headers=HEADERS
    )
    assert rejected.status_code == 400


def test_model_routes(client) -> None:
    models = client.get("/api/models", headers=HEADERS)
    assert models.json() == [
        {"id": "gpt-4o", "friendlyName": "GPT-4o", "description": None, "isDefault": True}
    ]

    setup = client.get("/api/models/setup")
    assert setup.json() == {
        "isConfigured": True,
        "enabledCount": 2,
        "hasDefault": True,
        "message": None,
    }


def test_image_models_lists_only_configured(client) -> None:
    response = client.get("/api/images/models")

    assert response.json() == {
        "models": [{"id": "dall-e-3", "name": "DALL-E 3", "description": "Detailed images"}]
    }


def test_serves_stored_images(client, orchestrator, tmp_path) -> None:
    image = tmp_path / "images" / "t1" / "cat.png"
    image.parent.mkdir(parents=True)
    image.write_bytes(b"\x89PNG data")

    response = client.get("/api/images/t1/cat.png")
    assert response.status_code == 200
    assert response.content == b"\x89PNG data"
    assert response.headers["content-type"] == "image/png"

    assert client.get("/api/images/t1/dog.png").status_code == 404
    assert client.get("/api/images/t1/.hidden").status_code == 400
