from __future__ import annotations

import json

import httpx
import pytest

from hybridchat.services.similarity_search import (
    AzureSearchClient,
    DisabledSimilaritySearch,
    SimilaritySearchError,
    hash_user_id,
    thread_filter,
)


def test_thread_filter_scopes_to_hashed_user() -> None:
    expr = thread_filter("alice", "it's-a-thread")

    assert expr == (
        f"user eq '{hash_user_id('alice')}' and chatThreadId eq 'it''s-a-thread'"
    )
    assert "alice" not in expr


@pytest.mark.anyio
async def test_disabled_search_finds_nothing() -> None:
    assert await DisabledSimilaritySearch().search("q", 5, "filter") == []


@pytest.mark.anyio
async def test_search_maps_results() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers["api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "value": [
                    {"id": "1", "pageContent": "alpha", "metadata": "a.pdf", "@search.score": 2.5},
                    {"id": "2", "pageContent": "beta", "metadata": "b.pdf", "@search.score": 1.5},
                    {"id": "3", "pageContent": "gamma", "metadata": "c.pdf", "@search.score": 0.5},
                ]
            },
        )

    client = AzureSearchClient(
        "https://search.example.net/",
        "search-key",
        "chat-docs",
        transport=httpx.MockTransport(handler),
    )
    try:
        results = await client.search("revenue", 2, "user eq 'x'")
    finally:
        await client.aclose()

    assert [(r.id, r.content, r.name, r.score) for r in results] == [
        ("1", "alpha", "a.pdf", 2.5),
        ("2", "beta", "b.pdf", 1.5),
    ]
    assert str(seen["url"]).startswith(
        "https://search.example.net/indexes/chat-docs/docs/search?api-version="
    )
    assert seen["api_key"] == "search-key"
    assert seen["body"] == {
        "search": "revenue",
        "filter": "user eq 'x'",
        "top": 2,
        "queryType": "simple",
    }


@pytest.mark.anyio
async def test_search_error_status_raises() -> None:
    client = AzureSearchClient(
        "https://search.example.net",
        "search-key",
        "chat-docs",
        transport=httpx.MockTransport(lambda request: httpx.Response(403, text="forbidden")),
    )
    try:
        with pytest.raises(SimilaritySearchError) as exc_info:
            await client.search("revenue", 5, "")
    finally:
        await client.aclose()

    assert exc_info.value.status_code == 403
