"""Chat streaming and thread management routes."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Response
from sse_starlette.sse import EventSourceResponse

from ..chat.orchestrator import ChatOrchestrator
from ..chat.errors import ChatRequestError
from ..chat.multiplexer import sse_event
from ..dependencies import get_current_user, get_orchestrator
from ..schemas.chat import (
    ChatThread,
    ChatUser,
    ImageModelUpdate,
    ModelSummary,
    ThreadCreateRequest,
    UserPrompt,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])


def _http_error(exc: ChatRequestError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.detail)


@router.post("/chat", response_model=None, status_code=200)
async def stream_chat(
    prompt: UserPrompt,
    user: ChatUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> EventSourceResponse:
    """Run one chat turn and stream its events to the browser."""

    try:
        events = await orchestrator.start_turn(prompt, user)
    except ChatRequestError as exc:
        raise _http_error(exc) from exc

    async def event_publisher():
        try:
            async for event in events:
                yield event
        except Exception as exc:  # pragma: no cover
            logger.exception("Chat stream for thread %s failed", prompt.id)
            yield sse_event("error", str(exc))

    return EventSourceResponse(event_publisher())


@router.post("/threads", response_model=ChatThread, status_code=201)
async def create_thread(
    payload: ThreadCreateRequest,
    user: ChatUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ChatThread:
    return await orchestrator.create_thread(user, payload)


@router.delete("/threads/{thread_id}", status_code=204)
async def delete_thread(
    thread_id: str,
    user: ChatUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Soft-delete a thread together with its messages and documents."""

    try:
        await orchestrator.delete_thread(thread_id, user)
    except ChatRequestError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.put("/threads/{thread_id}/image-model", response_model=ChatThread)
async def update_image_model(
    thread_id: str,
    payload: ImageModelUpdate,
    user: ChatUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ChatThread:
    try:
        return await orchestrator.set_image_model(
            thread_id, user, payload.image_model_id
        )
    except ChatRequestError as exc:
        raise _http_error(exc) from exc


@router.get("/models", response_model=list[ModelSummary])
async def list_models(
    user: ChatUser = Depends(get_current_user),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> list[ModelSummary]:
    return await orchestrator.list_models()


@router.get("/models/setup")
async def model_setup_status(
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    status = await orchestrator.models.check_setup()
    return {
        "isConfigured": status.is_configured,
        "enabledCount": status.enabled_count,
        "hasDefault": status.has_default,
        "message": status.message,
    }


__all__ = ["router"]
