"""Image model listing and stored image delivery."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from ..chat.orchestrator import ChatOrchestrator
from ..dependencies import get_orchestrator
from ..services.blob_store import BlobStoreError, LocalBlobStore

router = APIRouter(prefix="/api/images", tags=["images"])


@router.get("/models")
async def list_image_models(
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Return the image models whose credentials are configured."""

    return {
        "models": [
            {"id": model.id, "name": model.name, "description": model.description}
            for model in orchestrator.image_models.available()
        ]
    }


@router.get("/{thread_id}/{filename}")
async def get_image(
    thread_id: str,
    filename: str,
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> FileResponse:
    store = orchestrator.blob_store
    if not isinstance(store, LocalBlobStore):
        raise HTTPException(status_code=404, detail="Image not found")
    try:
        path = store.path_for(thread_id, filename)
    except BlobStoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Image not found")
    return FileResponse(path, media_type="image/png")


__all__ = ["router"]
