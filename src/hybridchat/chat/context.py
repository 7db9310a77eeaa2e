"""Assemble history, documents, and tools for a chat turn."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence
from uuid import uuid4

from ..repository import ChatRepository
from ..schemas.chat import ChatDocument, ChatMessage, ChatThread, Citation
from ..services.similarity_search import SimilaritySearch, thread_filter
from .types import ExtensionProvider, ToolDefinition

logger = logging.getLogger(__name__)

FUNCTION_RESULT_PREFIX = "Function result from "
DOCUMENT_SEPARATOR = "\n---\n"


def map_to_provider_messages(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    """Convert stored messages to provider chat messages, preserving order.

    The deprecated ``function`` role is rewritten as an assistant message so
    older transcripts remain valid input.
    """

    mapped: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "function":
            mapped.append(
                {
                    "role": "assistant",
                    "content": f"{FUNCTION_RESULT_PREFIX}{message.name}: {message.content}",
                }
            )
        else:
            mapped.append({"role": message.role, "content": message.content})
    return mapped


def format_document_context(citations: Sequence[Citation]) -> str:
    return DOCUMENT_SEPARATOR.join(
        f"[Document {index}]: {citation.name}\n{citation.content}"
        for index, citation in enumerate(citations, start=1)
    )


@dataclass
class DocumentContext:
    citations: list[Citation] = field(default_factory=list)

    @property
    def text(self) -> str:
        return format_document_context(self.citations)


class ContextAssembler:
    """Gather turn context from collaborators, degrading to empty on failure."""

    def __init__(
        self,
        repository: ChatRepository,
        search: SimilaritySearch,
        extensions: ExtensionProvider,
        *,
        history_limit: int = 30,
        document_top_k: int = 5,
    ) -> None:
        self._repo = repository
        self._search = search
        self._extensions = extensions
        self._history_limit = history_limit
        self._top_k = document_top_k

    async def history(self, thread: ChatThread) -> list[dict[str, Any]]:
        try:
            recent = await self._repo.find_top_messages(thread.id, self._history_limit)
        except Exception as exc:
            logger.warning("History fetch failed for thread %s: %s", thread.id, exc)
            return []
        # Fetched newest first; the provider expects chronological order
        return map_to_provider_messages(reversed(recent))

    async def documents(self, thread: ChatThread) -> list[ChatDocument]:
        try:
            return await self._repo.find_documents(thread.id)
        except Exception as exc:
            logger.warning("Document fetch failed for thread %s: %s", thread.id, exc)
            return []

    async def extension_tools(self, thread: ChatThread) -> list[ToolDefinition]:
        if not thread.extension:
            return []
        try:
            return await self._extensions.get_tools(list(thread.extension))
        except Exception as exc:
            logger.warning("Extension load failed for thread %s: %s", thread.id, exc)
            return []

    async def document_context(
        self,
        thread: ChatThread,
        user_id: str,
        query: str,
        *,
        model_id: str | None = None,
    ) -> DocumentContext:
        """Search the thread's documents and persist citations for the hits."""

        try:
            results = await self._search.search(
                query,
                self._top_k,
                thread_filter(user_id, thread.id),
                model_id,
            )
        except Exception as exc:
            logger.warning("Similarity search failed for thread %s: %s", thread.id, exc)
            return DocumentContext()

        citations = [
            Citation(
                id=result.id or uuid4().hex,
                name=result.name,
                content=result.content,
                score=result.score,
            )
            for result in results[: self._top_k]
        ]
        if citations:
            try:
                await self._repo.create_citations(user_id, citations)
            except Exception as exc:
                logger.warning("Failed to persist citations: %s", exc)
        return DocumentContext(citations=citations)


__all__ = [
    "DOCUMENT_SEPARATOR",
    "FUNCTION_RESULT_PREFIX",
    "ContextAssembler",
    "DocumentContext",
    "format_document_context",
    "map_to_provider_messages",
]
