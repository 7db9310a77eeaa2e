from __future__ import annotations

import json
from typing import Any, AsyncIterator

import pytest

from hybridchat.chat.errors import SafetyBlockError
from hybridchat.chat.events import (
    AbortEvent,
    ContentEvent,
    ErrorEvent,
    FinalContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    StreamEvent,
)
from hybridchat.chat.multiplexer import (
    StreamController,
    StreamMultiplexer,
    is_error_result,
)
from hybridchat.chat.safety import BLOCKED_BANNER
from hybridchat.schemas.chat import ChatThread, ImageBlockedPayload, TokenSummary


class RecordingSink:
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    async def create_message(self, thread_id: str, role: str, name: str, content: str, **kwargs: Any) -> None:
        self.messages.append(
            {"thread_id": thread_id, "role": role, "name": name, "content": content, **kwargs}
        )


class FakeRunner:
    def __init__(self, events: list[StreamEvent]) -> None:
        self._events = events
        self.closed = 0

    async def events(self) -> AsyncIterator[StreamEvent]:
        for event in self._events:
            yield event

    async def aclose(self) -> None:
        self.closed += 1


class NameResolver:
    def __init__(self, name: str | None = "GPT-4o") -> None:
        self.name = name
        self.calls: list[str | None] = []

    async def __call__(self, model_id: str | None) -> str | None:
        self.calls.append(model_id)
        return self.name


THREAD = ChatThread(id="t1", user_id="u1", model_id="gpt-4o")


def _snapshot(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "message": {"role": "assistant", "content": text}}]}


def _multiplexer(sink: RecordingSink, resolver: NameResolver | None = None) -> StreamMultiplexer:
    return StreamMultiplexer(
        sink,
        THREAD,
        user_id="u1",
        assistant_name="Hybrid Chat",
        model_name=resolver or NameResolver(),
    )


async def _run(events: list[StreamEvent], sink: RecordingSink | None = None, resolver: NameResolver | None = None) -> tuple[list[dict[str, Any]], RecordingSink, FakeRunner]:
    sink = sink or RecordingSink()
    runner = FakeRunner(events)
    multiplexer = _multiplexer(sink, resolver)
    wire = [
        {"event": item["event"], **json.loads(item["data"])}
        async for item in multiplexer.stream(runner)  # type: ignore[arg-type]
    ]
    return wire, sink, runner


def test_controller_close_is_idempotent() -> None:
    controller = StreamController()

    assert controller.close() is True
    assert controller.close() is False
    assert controller.encode("content", {}) is None
    assert not controller.is_open


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        ({"error": True, "message": "x"}, True),
        ({"success": False}, True),
        ({"error": "boom"}, True),
        ({"url": "https://img"}, False),
        ({"error": False, "success": True}, False),
        ("FINAL_ERROR: nope", True),
        (f"{BLOCKED_BANNER} details", True),
        ("all good", False),
        (None, False),
    ],
)
def test_error_result_classification(result: Any, expected: bool) -> None:
    assert is_error_result(result) is expected


@pytest.mark.anyio
async def test_final_content_persists_one_assistant_message() -> None:
    resolver = NameResolver()
    wire, sink, runner = await _run(
        [
            ContentEvent(_snapshot("Hel")),
            ContentEvent(_snapshot("Hello")),
            FinalContentEvent("Hello"),
        ],
        resolver=resolver,
    )

    assert [item["type"] for item in wire] == ["content", "content", "finalContent"]
    assert wire[1]["response"] == _snapshot("Hello")
    assert wire[-1] == {"event": "finalContent", "type": "finalContent", "response": "Hello"}
    assert sink.messages == [
        {
            "thread_id": "t1",
            "role": "assistant",
            "name": "Hybrid Chat",
            "content": "Hello",
            "user_id": "u1",
            "model_id": "gpt-4o",
            "model_name": "GPT-4o",
            "blocked": None,
        }
    ]
    assert resolver.calls == ["gpt-4o"]
    assert runner.closed == 1


@pytest.mark.anyio
async def test_function_events_are_persisted_and_forwarded() -> None:
    wire, sink, _ = await _run(
        [
            FunctionCallEvent("create_img", '{"prompt": "cat"}'),
            FunctionCallResultEvent("create_img", {"url": "https://img"}),
            FunctionCallEvent("create_img", '{"prompt": "dog"}'),
            FunctionCallResultEvent(
                "create_img",
                {"error": True, "success": False, "errorType": "storage", "message": "disk full"},
            ),
            FinalContentEvent("done"),
        ]
    )

    assert [item["type"] for item in wire] == [
        "functionCall",
        "functionCallResult",
        "functionCall",
        "functionCallResult",
        "finalContent",
    ]
    assert wire[0]["response"] == {"name": "create_img", "arguments": '{"prompt": "cat"}'}
    assert wire[1]["response"] == {"url": "https://img"}
    assert [(m["role"], m["name"], m["content"]) for m in sink.messages[:4]] == [
        ("function", "create_img", '{"prompt": "cat"}'),
        ("function", "tool", '{"url": "https://img"}'),
        ("function", "create_img", '{"prompt": "dog"}'),
        ("function", "create_img", "disk full"),
    ]


@pytest.mark.anyio
async def test_abort_forwards_without_persisting() -> None:
    wire, sink, _ = await _run([ContentEvent(_snapshot("partial")), AbortEvent()])

    assert wire[-1] == {"event": "abort", "type": "abort", "response": "Chat aborted"}
    assert sink.messages == []


@pytest.mark.anyio
async def test_stream_error_persists_partial_content() -> None:
    wire, sink, _ = await _run(
        [ContentEvent(_snapshot("half an ans")), ErrorEvent(RuntimeError("connection reset"))]
    )

    assert wire[-1]["type"] == "error"
    assert wire[-1]["response"] == "connection reset"
    assert len(sink.messages) == 1
    assert sink.messages[0]["role"] == "assistant"
    assert sink.messages[0]["content"] == "half an ans"


@pytest.mark.anyio
async def test_safety_block_emits_image_blocked_with_backfilled_risk() -> None:
    payload = ImageBlockedPayload(
        source="api_content_filter",
        message=f"{BLOCKED_BANNER}\n\nguidance",
        blocked_categories=["violence:high"],
        token_summary={"violence": TokenSummary(count=3, samples=["war", "gun"])},
    )
    wire, sink, _ = await _run(
        [
            FunctionCallEvent("create_img", "{}"),
            ErrorEvent(SafetyBlockError("create_img", payload)),
        ]
    )

    blocked = wire[-1]
    assert blocked["event"] == "imageBlocked"
    assert blocked["response"]["source"] == "api_content_filter"
    assert blocked["response"]["riskScore"] == pytest.approx(3 / 12)
    assert blocked["response"]["riskBreakdown"] == {"violence": pytest.approx(0.15)}
    assert blocked["response"]["retryAllowed"] is False

    assistant = [m for m in sink.messages if m["role"] == "assistant"]
    assert len(assistant) == 1
    assert assistant[0]["content"] == payload.message
    assert assistant[0]["model_name"] == "GPT-4o"
    assert assistant[0]["blocked"].source == "api_content_filter"
    assert assistant[0]["blocked"].categories == ["violence"]


@pytest.mark.anyio
async def test_banner_in_plain_error_is_treated_as_block() -> None:
    wire, sink, _ = await _run([ErrorEvent(RuntimeError(f"{BLOCKED_BANNER} legacy"))])

    assert wire[-1]["type"] == "imageBlocked"
    assert wire[-1]["response"]["riskScore"] == 0
    assert len(sink.messages) == 1


@pytest.mark.anyio
async def test_events_after_terminal_are_dropped() -> None:
    wire, sink, _ = await _run(
        [FinalContentEvent("first"), ErrorEvent(RuntimeError("late")), AbortEvent()]
    )

    assert [item["type"] for item in wire] == ["finalContent"]
    assert len(sink.messages) == 1


@pytest.mark.anyio
async def test_persistence_failure_does_not_break_stream() -> None:
    class BrokenSink(RecordingSink):
        async def create_message(self, *args: Any, **kwargs: Any) -> None:
            raise RuntimeError("db locked")

    wire, _, _ = await _run([FinalContentEvent("ok")], sink=BrokenSink())

    assert wire[-1]["type"] == "finalContent"


@pytest.mark.anyio
async def test_closing_generator_early_closes_runner() -> None:
    sink = RecordingSink()
    runner = FakeRunner([ContentEvent(_snapshot("a")), ContentEvent(_snapshot("ab")), FinalContentEvent("ab")])
    multiplexer = _multiplexer(sink)

    stream = multiplexer.stream(runner)  # type: ignore[arg-type]
    first = await stream.__anext__()
    await stream.aclose()

    assert json.loads(first["data"])["type"] == "content"
    assert runner.closed == 1
    assert not multiplexer.controller.is_open
    assert sink.messages == []
