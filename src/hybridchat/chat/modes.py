"""Chat mode selection."""

from __future__ import annotations

from enum import Enum


class ChatMode(str, Enum):
    MULTIMODAL = "multimodal"
    HYBRID = "hybrid"
    EXTENSIONS = "extensions"


def select_chat_mode(
    has_multimodal_image: bool, document_count: int, tool_count: int
) -> ChatMode:
    """Pick the invocation shape for a turn.

    An attached image wins, then uploaded documents. Everything else runs in
    extensions mode, even when no tools are configured.
    """

    if has_multimodal_image:
        return ChatMode.MULTIMODAL
    if document_count > 0:
        return ChatMode.HYBRID
    return ChatMode.EXTENSIONS


__all__ = ["ChatMode", "select_chat_mode"]
