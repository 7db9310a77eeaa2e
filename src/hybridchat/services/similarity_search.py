"""Document similarity search scoped to a user's chat thread."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
from fastapi import status

logger = logging.getLogger(__name__)


class SimilaritySearchError(RuntimeError):
    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class SearchResult:
    id: str
    content: str
    score: float
    name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


class SimilaritySearch(Protocol):
    async def search(
        self,
        query: str,
        top_k: int,
        filter_expr: str,
        model_id: str | None = None,
    ) -> list[SearchResult]:
        ...


def hash_user_id(user_id: str) -> str:
    """Return the opaque user key stored with indexed documents."""

    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


def _quote(value: str) -> str:
    return value.replace("'", "''")


def thread_filter(user_id: str, thread_id: str) -> str:
    return (
        f"user eq '{_quote(hash_user_id(user_id))}' "
        f"and chatThreadId eq '{_quote(thread_id)}'"
    )


class DisabledSimilaritySearch:
    """Used when no search index is configured; never finds anything."""

    async def search(
        self,
        query: str,
        top_k: int,
        filter_expr: str,
        model_id: str | None = None,
    ) -> list[SearchResult]:
        return []


class AzureSearchClient:
    """Query an Azure AI Search index over its REST API."""

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        index_name: str,
        *,
        api_version: str = "2023-11-01",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = (
            f"{endpoint.rstrip('/')}/indexes/{index_name}/docs/search"
        )
        self._api_key = api_key
        self._api_version = api_version
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0), transport=transport
        )

    async def search(
        self,
        query: str,
        top_k: int,
        filter_expr: str,
        model_id: str | None = None,
    ) -> list[SearchResult]:
        body = {
            "search": query,
            "filter": filter_expr,
            "top": top_k,
            "queryType": "simple",
        }
        try:
            response = await self._client.post(
                self._url,
                params={"api-version": self._api_version},
                headers={"api-key": self._api_key, "Content-Type": "application/json"},
                json=body,
            )
        except httpx.HTTPError as exc:
            raise SimilaritySearchError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            raise SimilaritySearchError(response.status_code, response.text)

        payload = response.json()
        results: list[SearchResult] = []
        for item in payload.get("value", [])[:top_k]:
            if not isinstance(item, dict):
                continue
            metadata = item.get("metadata")
            results.append(
                SearchResult(
                    id=str(item.get("id", "")),
                    content=str(item.get("pageContent") or item.get("content") or ""),
                    score=float(item.get("@search.score") or 0.0),
                    name=str(metadata or item.get("name") or ""),
                    metadata=item,
                )
            )
        logger.debug(
            "Search returned %d results (model=%s)", len(results), model_id or "-"
        )
        return results

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "AzureSearchClient",
    "DisabledSimilaritySearch",
    "SearchResult",
    "SimilaritySearch",
    "SimilaritySearchError",
    "hash_user_id",
    "thread_filter",
]
