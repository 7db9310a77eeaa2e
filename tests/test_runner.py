from __future__ import annotations

import asyncio
import json
from typing import Any, AsyncIterator

import pytest

from hybridchat.azure_openai import AzureDeployment
from hybridchat.chat.errors import SafetyBlockError, ToolValidationError
from hybridchat.chat.events import (
    AbortEvent,
    ContentEvent,
    ErrorEvent,
    FinalContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    is_terminal,
)
from hybridchat.chat.modes import ChatMode
from hybridchat.chat.runner import (
    CompletionRunner,
    CompletionSnapshot,
    build_messages,
    finalize_tool_calls,
    merge_tool_calls,
)
from hybridchat.chat.types import ToolDefinition
from hybridchat.schemas.chat import ImageBlockedPayload

DEPLOYMENT = AzureDeployment(
    endpoint="https://example.openai.azure.com/",
    credential="secret",
    deployment_name="gpt-4o",
    api_version="2024-10-21",
)


def _content_chunk(text: str) -> dict[str, Any]:
    return {"id": "c1", "choices": [{"index": 0, "delta": {"content": text}}]}


def _tool_chunks(name: str, arguments: str, call_id: str = "call_1") -> list[dict[str, Any]]:
    half = len(arguments) // 2
    return [
        {
            "choices": [
                {
                    "index": 0,
                    "delta": {
                        "tool_calls": [
                            {"index": 0, "id": call_id, "function": {"name": name, "arguments": arguments[:half]}}
                        ]
                    },
                }
            ]
        },
        {
            "choices": [
                {
                    "index": 0,
                    "delta": {"tool_calls": [{"index": 0, "function": {"arguments": arguments[half:]}}]},
                    "finish_reason": "tool_calls",
                }
            ]
        },
    ]


class ScriptedProvider:
    """Replays one list of chunks per provider call."""

    def __init__(self, *rounds: list[dict[str, Any]], error: Exception | None = None) -> None:
        self.rounds = list(rounds)
        self.error = error
        self.payloads: list[dict[str, Any]] = []

    async def stream_chat(self, deployment: AzureDeployment, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        self.payloads.append(json.loads(json.dumps(payload)))
        if self.error is not None:
            raise self.error
        for chunk in self.rounds.pop(0):
            yield chunk


class HangingProvider:
    def __init__(self) -> None:
        self.started = asyncio.Event()

    async def stream_chat(self, deployment: AzureDeployment, payload: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        self.started.set()
        await asyncio.sleep(3600)
        yield {}


async def _collect(runner: CompletionRunner) -> list[Any]:
    return [event async for event in runner.events()]


def test_build_messages_shapes() -> None:
    history = [{"role": "user", "content": "earlier"}]

    multimodal = build_messages(
        ChatMode.MULTIMODAL,
        persona="P",
        history=history,
        message="what is this?",
        multimodal_image="data:image/png;base64,AAAA",
    )
    assert len(multimodal) == 2
    assert multimodal[1]["content"][1] == {
        "type": "image_url",
        "image_url": {"url": "data:image/png;base64,AAAA"},
    }

    hybrid = build_messages(
        ChatMode.HYBRID, persona="P", history=history, message="q", document_context="[Document 1]: a\nb"
    )
    assert "DOCUMENT CONTEXT" in hybrid[0]["content"]
    assert hybrid[1:] == [history[0], {"role": "user", "content": "q"}]

    extensions = build_messages(ChatMode.EXTENSIONS, persona="P", history=history, message="q")
    assert extensions[0] == {"role": "system", "content": "P"}
    assert extensions[-1] == {"role": "user", "content": "q"}


def test_tool_call_deltas_merge_by_index_and_id() -> None:
    accumulator: list[dict[str, Any]] = []
    merge_tool_calls(accumulator, [{"index": 0, "id": "a", "function": {"name": "create_img", "arguments": '{"pro'}}])
    merge_tool_calls(accumulator, [{"id": "a", "function": {"arguments": 'mpt": "x"}'}}])
    merge_tool_calls(accumulator, [{"index": 1, "function": {"name": ""}}])

    finalized = finalize_tool_calls(accumulator)

    assert finalized == [
        {"id": "a", "type": "function", "function": {"name": "create_img", "arguments": '{"prompt": "x"}'}}
    ]


def test_snapshot_reports_content_changes_only() -> None:
    snapshot = CompletionSnapshot()

    assert snapshot.apply({"choices": [{"index": 0, "delta": {"role": "assistant"}}]}) is False
    assert snapshot.apply(_content_chunk("Hel")) is True
    assert snapshot.apply(_content_chunk("lo")) is True
    assert snapshot.as_dict()["choices"][0]["message"]["content"] == "Hello"


@pytest.mark.anyio
async def test_plain_completion_emits_content_then_final() -> None:
    provider = ScriptedProvider([_content_chunk("Hel"), _content_chunk("lo")])
    runner = CompletionRunner(provider, DEPLOYMENT, [{"role": "user", "content": "hi"}], max_completion_tokens=8192)

    events = await _collect(runner)

    assert [type(event) for event in events] == [ContentEvent, ContentEvent, FinalContentEvent]
    assert events[1].text == "Hello"
    assert events[-1].content == "Hello"
    assert provider.payloads[0]["max_completion_tokens"] == 8192
    assert "tools" not in provider.payloads[0]


@pytest.mark.anyio
async def test_tool_round_trip_feeds_result_back() -> None:
    seen: list[dict[str, Any]] = []

    async def handler(arguments: dict[str, Any]) -> dict[str, Any]:
        seen.append(arguments)
        return {"url": "https://img", "revised_prompt": None}

    tool = ToolDefinition("create_img", "make images", {"type": "object"}, handler)
    provider = ScriptedProvider(
        _tool_chunks("create_img", '{"prompt": "a cat"}'),
        [_content_chunk("Here is your cat")],
    )
    runner = CompletionRunner(provider, DEPLOYMENT, [{"role": "user", "content": "draw"}], tools=[tool])

    events = await _collect(runner)

    kinds = [type(event) for event in events]
    assert kinds == [FunctionCallEvent, FunctionCallResultEvent, ContentEvent, FinalContentEvent]
    assert events[0].arguments == '{"prompt": "a cat"}'
    assert events[1].result == {"url": "https://img", "revised_prompt": None}
    assert seen == [{"prompt": "a cat"}]

    second = provider.payloads[1]["messages"]
    assert second[-2]["role"] == "assistant"
    assert second[-2]["tool_calls"][0]["id"] == "call_1"
    assert second[-1] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "content": json.dumps({"url": "https://img", "revised_prompt": None}),
    }
    assert provider.payloads[0]["tools"][0]["function"]["name"] == "create_img"


@pytest.mark.anyio
async def test_tool_errors_become_function_results() -> None:
    async def handler(arguments: dict[str, Any]) -> Any:
        raise ToolValidationError("create_img", "No prompt provided")

    tool = ToolDefinition("create_img", "", {}, handler)
    provider = ScriptedProvider(
        _tool_chunks("create_img", "{}"),
        [_content_chunk("Sorry")],
    )

    events = await _collect(CompletionRunner(provider, DEPLOYMENT, [], tools=[tool]))

    result = events[1].result
    assert result["error"] is True
    assert result["errorType"] == "validation"
    assert isinstance(events[-1], FinalContentEvent)


@pytest.mark.anyio
async def test_unknown_tool_and_bad_arguments_are_reported() -> None:
    provider = ScriptedProvider(
        _tool_chunks("missing_tool", "{}"),
        _tool_chunks("create_img", "{not json", call_id="call_2"),
        [_content_chunk("done")],
    )

    async def handler(arguments: dict[str, Any]) -> str:
        return "unused"

    tool = ToolDefinition("create_img", "", {}, handler)
    events = await _collect(CompletionRunner(provider, DEPLOYMENT, [], tools=[tool]))

    results = [event.result for event in events if isinstance(event, FunctionCallResultEvent)]
    assert "not available" in results[0]["message"]
    assert "Invalid arguments" in results[1]["message"]


@pytest.mark.anyio
async def test_safety_block_ends_turn_with_error() -> None:
    payload = ImageBlockedPayload(source="model_refusal", message="refused")

    async def handler(arguments: dict[str, Any]) -> Any:
        raise SafetyBlockError("create_img", payload)

    tool = ToolDefinition("create_img", "", {}, handler)
    provider = ScriptedProvider(_tool_chunks("create_img", "{}"))

    events = await _collect(CompletionRunner(provider, DEPLOYMENT, [], tools=[tool]))

    assert [type(event) for event in events] == [FunctionCallEvent, ErrorEvent]
    assert events[-1].error.payload is payload
    assert len(provider.payloads) == 1


@pytest.mark.anyio
async def test_provider_failure_is_single_error_event() -> None:
    runner = CompletionRunner(ScriptedProvider(error=RuntimeError("upstream down")), DEPLOYMENT, [])

    events = await _collect(runner)

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert events[0].message == "upstream down"


@pytest.mark.anyio
async def test_hop_limit_stops_endless_tool_calls() -> None:
    async def handler(arguments: dict[str, Any]) -> str:
        return "again"

    tool = ToolDefinition("loop", "", {}, handler)
    provider = ScriptedProvider(*[_tool_chunks("loop", "{}") for _ in range(3)])

    events = await _collect(CompletionRunner(provider, DEPLOYMENT, [], tools=[tool], tool_hop_limit=2))

    assert isinstance(events[-1], ErrorEvent)
    assert "2 rounds" in events[-1].message
    assert sum(is_terminal(event) for event in events) == 1


@pytest.mark.anyio
async def test_abort_while_streaming_emits_single_abort() -> None:
    provider = HangingProvider()
    runner = CompletionRunner(provider, DEPLOYMENT, [])
    runner.start()
    await provider.started.wait()

    runner.abort()
    runner.abort()
    events = await _collect(runner)

    assert len(events) == 1
    assert isinstance(events[0], AbortEvent)
    assert events[0].reason == "Chat aborted"
    await runner.aclose()
    assert runner.done


@pytest.mark.anyio
async def test_abort_before_start_emits_abort() -> None:
    runner = CompletionRunner(HangingProvider(), DEPLOYMENT, [])

    runner.abort()
    events = await _collect(runner)

    assert [type(event) for event in events] == [AbortEvent]


@pytest.mark.anyio
async def test_turn_timeout_aborts() -> None:
    runner = CompletionRunner(HangingProvider(), DEPLOYMENT, [], timeout=0.05)

    events = await _collect(runner)

    assert [type(event) for event in events] == [AbortEvent]
