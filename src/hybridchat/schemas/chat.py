"""Pydantic models for chat threads, messages, and streaming payloads."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChatRole = Literal["system", "user", "assistant", "function", "tool"]
BlockSource = Literal["pre_validation", "api_content_filter", "model_refusal"]

SAFETY_GUIDANCE_VERSION = 2
SAFETY_SCHEMA_VERSION = 1


class CamelModel(BaseModel):
    """Base model serialising to the camelCase shape the browser expects."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class BlockedMetadata(CamelModel):
    """Safety-block summary stored alongside a blocked assistant message."""

    source: BlockSource
    categories: List[str] = Field(default_factory=list)
    risk_score: Optional[float] = None
    suggestions: List[str] = Field(default_factory=list)


class ChatUser(CamelModel):
    """The caller as resolved by the authentication layer."""

    id: str
    name: str = "user"
    is_admin: bool = False


class ChatThread(CamelModel):
    """A conversation owned by a single user."""

    id: str
    user_id: str
    user_name: Optional[str] = None
    name: str = "New Chat"
    persona_message: str = ""
    persona_message_title: str = ""
    model_id: Optional[str] = None
    image_model_id: Optional[str] = None
    extension: List[str] = Field(default_factory=list)
    bookmarked: bool = False
    is_deleted: bool = False
    created_at: Optional[str] = None
    last_message_at: Optional[str] = None


class ChatMessage(CamelModel):
    """A persisted chat message."""

    id: str
    thread_id: str
    user_id: Optional[str] = None
    role: ChatRole
    name: str = ""
    content: str = ""
    multi_modal_image: Optional[str] = None
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    blocked: Optional[BlockedMetadata] = None
    is_deleted: bool = False
    created_at: Optional[str] = None


class ChatDocument(CamelModel):
    """Metadata for a document uploaded to a thread."""

    id: str
    thread_id: str
    user_id: str
    name: str
    is_deleted: bool = False
    created_at: Optional[str] = None


class Citation(CamelModel):
    """A document excerpt referenced by the assistant's answer."""

    id: str
    name: str
    content: str
    score: Optional[float] = None


class UserPrompt(CamelModel):
    """Incoming chat turn."""

    id: str = Field(description="Identifier of the chat thread.")
    message: str
    multimodal_image: Optional[str] = None


class ThreadCreateRequest(CamelModel):
    name: Optional[str] = None
    persona_message: str = ""
    persona_message_title: str = ""
    model_id: Optional[str] = None
    image_model_id: Optional[str] = None
    extension: List[str] = Field(default_factory=list)


class ImageModelUpdate(CamelModel):
    image_model_id: Optional[str] = None


class ModelConfig(CamelModel):
    """Admin-managed chat model configuration."""

    id: str
    friendly_name: str
    instance_name: str
    deployment_name: str
    api_version: str
    api_key: str = Field(default="", repr=False)
    enabled: bool = True
    is_default: bool = False
    sort_order: int = 100
    description: Optional[str] = None


class ModelSummary(CamelModel):
    """Model information safe to expose to end users."""

    id: str
    friendly_name: str
    description: Optional[str] = None
    is_default: bool = False


class TokenSummary(CamelModel):
    count: int = 0
    samples: List[str] = Field(default_factory=list)


class ImageBlockedPayload(CamelModel):
    """Structured explanation of why an image request was blocked."""

    kind: Literal["image_block"] = "image_block"
    source: BlockSource
    message: str
    original_prompt: str = ""
    request_id: Optional[str] = None
    block_id: Optional[str] = None
    prompt_hash: Optional[str] = None
    blocked_categories: List[str] = Field(default_factory=list)
    token_summary: Dict[str, TokenSummary] = Field(default_factory=dict)
    suggestions: List[str] = Field(default_factory=list)
    risk_score: Optional[float] = None
    risk_breakdown: Optional[Dict[str, float]] = None
    retry_allowed: bool = False
    guidance_version: int = SAFETY_GUIDANCE_VERSION
    schema_version: int = SAFETY_SCHEMA_VERSION
    timestamp: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_blocked_metadata(self) -> BlockedMetadata:
        categories = [entry.split(":", 1)[0] for entry in self.blocked_categories]
        if not categories:
            categories = [
                name for name, summary in self.token_summary.items() if summary.count
            ]
        return BlockedMetadata(
            source=self.source,
            categories=categories,
            risk_score=self.risk_score,
            suggestions=list(self.suggestions),
        )


__all__ = [
    "SAFETY_GUIDANCE_VERSION",
    "SAFETY_SCHEMA_VERSION",
    "BlockSource",
    "BlockedMetadata",
    "ChatDocument",
    "ChatMessage",
    "ChatRole",
    "ChatThread",
    "ChatUser",
    "Citation",
    "ImageBlockedPayload",
    "ImageModelUpdate",
    "ModelConfig",
    "ModelSummary",
    "ThreadCreateRequest",
    "TokenSummary",
    "UserPrompt",
]
