"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from .chat.orchestrator import ChatOrchestrator
from .schemas.chat import ChatUser

_TRUTHY = {"1", "true", "yes", "on"}


def get_orchestrator(request: Request) -> ChatOrchestrator:
    orchestrator = getattr(request.app.state, "chat_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=500, detail="Chat orchestrator unavailable")
    return orchestrator


def get_current_user(
    user_id: str | None = Header(default=None, alias="X-User-Id"),
    user_name: str | None = Header(default=None, alias="X-User-Name"),
    user_admin: str | None = Header(default=None, alias="X-User-Admin"),
) -> ChatUser:
    """Resolve the caller from headers set by the authenticating proxy."""

    if not user_id or not user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return ChatUser(
        id=user_id.strip(),
        name=(user_name or "").strip() or "user",
        is_admin=(user_admin or "").strip().lower() in _TRUTHY,
    )


__all__ = ["get_current_user", "get_orchestrator"]
