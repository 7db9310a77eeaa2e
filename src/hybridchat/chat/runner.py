"""Drive a streaming chat completion, including the tool-call loop."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from typing import Any, AsyncIterator, Protocol, Sequence

from ..azure_openai import AzureDeployment
from ..services.token_counter import TokenCounter
from .errors import SafetyBlockError, ToolError, ToolProviderError, ToolValidationError
from .events import (
    AbortEvent,
    ContentEvent,
    ErrorEvent,
    FinalContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    StreamEvent,
    is_terminal,
)
from .modes import ChatMode
from .prompts import document_prompt, multimodal_prompt
from .types import ToolDefinition

logger = logging.getLogger(__name__)


class ChatProvider(Protocol):
    def stream_chat(
        self, deployment: AzureDeployment, payload: dict[str, Any]
    ) -> AsyncIterator[dict[str, Any]]:
        ...


def build_messages(
    mode: ChatMode,
    *,
    persona: str,
    history: Sequence[dict[str, Any]],
    message: str,
    multimodal_image: str | None = None,
    document_context: str = "",
) -> list[dict[str, Any]]:
    """Return the provider message list for the selected chat mode."""

    if mode is ChatMode.MULTIMODAL:
        return [
            {"role": "system", "content": multimodal_prompt(persona)},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": message},
                    {"type": "image_url", "image_url": {"url": multimodal_image}},
                ],
            },
        ]

    system = persona
    if mode is ChatMode.HYBRID:
        system = document_prompt(persona, document_context)
    return [
        {"role": "system", "content": system},
        *history,
        {"role": "user", "content": message},
    ]


def merge_tool_calls(accumulator: list[dict[str, Any]], deltas: Any) -> None:
    for delta in deltas or []:
        if not isinstance(delta, dict):
            continue

        index = delta.get("index")
        delta_id = delta.get("id")
        if not isinstance(index, int) or index < 0:
            index = None
            if isinstance(delta_id, str):
                for existing_index, existing in enumerate(accumulator):
                    if existing.get("id") == delta_id:
                        index = existing_index
                        break
            if index is None:
                index = len(accumulator)

        while len(accumulator) <= index:
            accumulator.append(
                {"id": None, "type": "function", "function": {"name": None, "arguments": ""}}
            )

        entry = accumulator[index]
        if delta_id:
            entry["id"] = delta_id
        function_delta = delta.get("function") or {}
        if function_name := function_delta.get("name"):
            entry["function"]["name"] = function_name
        if arguments_fragment := function_delta.get("arguments"):
            entry["function"]["arguments"] += arguments_fragment


def finalize_tool_calls(tool_calls: list[dict[str, Any]]) -> list[dict[str, Any]]:
    finalized: list[dict[str, Any]] = []
    for index, call in enumerate(tool_calls):
        function = call.get("function") or {}
        name = function.get("name")
        if not (isinstance(name, str) and name.strip()):
            continue
        arguments = function.get("arguments")
        if not isinstance(arguments, str) or not arguments.strip():
            arguments = "{}"
        finalized.append(
            {
                "id": call.get("id") or f"call_{index}",
                "type": "function",
                "function": {"name": name, "arguments": arguments},
            }
        )
    return finalized


class CompletionSnapshot:
    """Accumulate streamed chunks into the assistant message built so far."""

    def __init__(self) -> None:
        self.id: str | None = None
        self.model: str | None = None
        self.created: int | None = None
        self.content = ""
        self.role = "assistant"
        self.finish_reason: str | None = None
        self.tool_calls: list[dict[str, Any]] = []

    def apply(self, chunk: dict[str, Any]) -> bool:
        """Merge one chunk; return True when visible content changed."""

        self.id = chunk.get("id") or self.id
        self.model = chunk.get("model") or self.model
        self.created = chunk.get("created") or self.created

        changed = False
        for choice in chunk.get("choices") or []:
            if not isinstance(choice, dict) or choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            if role := delta.get("role"):
                self.role = role
            fragment = delta.get("content")
            if isinstance(fragment, str) and fragment:
                self.content += fragment
                changed = True
            if delta.get("tool_calls"):
                merge_tool_calls(self.tool_calls, delta["tool_calls"])
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return changed

    def as_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = finalize_tool_calls(self.tool_calls)
        return {
            "id": self.id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": self.finish_reason,
                }
            ],
        }


def stringify_tool_result(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class CompletionRunner:
    """Run one chat turn against the provider and publish its events.

    Events go onto an unbounded queue consumed by a single reader through
    :meth:`events`. Exactly one terminal event (final content, error, or
    abort) is published per run.
    """

    def __init__(
        self,
        provider: ChatProvider,
        deployment: AzureDeployment,
        messages: Sequence[dict[str, Any]],
        *,
        tools: Sequence[ToolDefinition] = (),
        max_completion_tokens: int = 8192,
        tool_hop_limit: int = 8,
        timeout: float | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._provider = provider
        self._deployment = deployment
        self._messages = list(messages)
        self._tools = {tool.name: tool for tool in tools}
        self._max_completion_tokens = max_completion_tokens
        self._hop_limit = tool_hop_limit
        self._timeout = timeout
        self._token_counter = token_counter
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._terminated = False

    @property
    def done(self) -> bool:
        return self._terminated

    def start(self) -> None:
        if self._task is None and not self._terminated:
            self._task = asyncio.create_task(self._drive())
            self._task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[None]) -> None:
        # A task cancelled before its first step never reaches _drive's handler
        if task.cancelled():
            self._emit_terminal(AbortEvent())

    def abort(self) -> None:
        """Cancel the run; the runner publishes ``abort`` as it unwinds."""

        if self._task is not None and not self._task.done():
            self._task.cancel()
        elif self._task is None:
            self._emit_terminal(AbortEvent())

    async def events(self) -> AsyncIterator[StreamEvent]:
        self.start()
        while True:
            event = await self._queue.get()
            yield event
            if is_terminal(event):
                return

    async def aclose(self) -> None:
        """Abort if still running and wait for the task to unwind."""

        self.abort()
        if self._task is not None:
            with suppress(asyncio.CancelledError):
                await self._task

    def _emit(self, event: StreamEvent) -> None:
        if self._terminated:
            return
        self._queue.put_nowait(event)

    def _emit_terminal(self, event: StreamEvent) -> None:
        if self._terminated:
            return
        self._queue.put_nowait(event)
        self._terminated = True

    async def _drive(self) -> None:
        try:
            if self._timeout is not None:
                content = await asyncio.wait_for(self._run(), self._timeout)
            else:
                content = await self._run()
        except asyncio.CancelledError:
            logger.info("Chat turn cancelled")
            self._emit_terminal(AbortEvent())
            raise
        except asyncio.TimeoutError:
            logger.warning("Chat turn timed out after %.0fs", self._timeout or 0)
            self._emit_terminal(AbortEvent())
        except Exception as exc:
            if not isinstance(exc, SafetyBlockError):
                logger.error("Chat turn failed: %s", exc)
            self._emit_terminal(ErrorEvent(exc))
        else:
            self._report_usage(content)
            self._emit_terminal(FinalContentEvent(content))

    async def _run(self) -> str:
        conversation: list[dict[str, Any]] = list(self._messages)
        tool_specs = [tool.to_openai() for tool in self._tools.values()]
        hop = 0

        while True:
            payload: dict[str, Any] = {
                "messages": conversation,
                "max_completion_tokens": self._max_completion_tokens,
            }
            if tool_specs:
                payload["tools"] = tool_specs

            snapshot = CompletionSnapshot()
            async for chunk in self._provider.stream_chat(self._deployment, payload):
                if snapshot.apply(chunk):
                    self._emit(ContentEvent(snapshot.as_dict()))

            tool_calls = finalize_tool_calls(snapshot.tool_calls)
            if not tool_calls:
                return snapshot.content

            if hop >= self._hop_limit:
                raise RuntimeError(
                    f"Stopped after {self._hop_limit} rounds of tool calls"
                )
            hop += 1

            conversation.append(
                {
                    "role": "assistant",
                    "content": snapshot.content or None,
                    "tool_calls": tool_calls,
                }
            )
            for call in tool_calls:
                name = call["function"]["name"]
                arguments = call["function"]["arguments"]
                self._emit(FunctionCallEvent(name=name, arguments=arguments))
                result = await self._invoke_tool(name, arguments)
                self._emit(FunctionCallResultEvent(name=name, result=result))
                conversation.append(
                    {
                        "role": "tool",
                        "tool_call_id": call["id"],
                        "content": stringify_tool_result(result),
                    }
                )

    async def _invoke_tool(self, name: str, arguments: str) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            return ToolValidationError(name, f"Tool {name} is not available").to_result()

        try:
            parsed = json.loads(arguments or "{}")
        except json.JSONDecodeError as exc:
            return ToolValidationError(
                name, f"Invalid arguments for {name}: {exc.msg}"
            ).to_result()
        if not isinstance(parsed, dict):
            return ToolValidationError(
                name, f"Arguments for {name} must be a JSON object"
            ).to_result()

        try:
            return await tool.handler(parsed)
        except SafetyBlockError:
            raise
        except ToolError as exc:
            logger.info("Tool %s failed (%s): %s", name, exc.kind, exc.message)
            return exc.to_result()
        except Exception as exc:
            logger.warning("Tool %s raised: %s", name, exc)
            return ToolProviderError(name, str(exc)).to_result()

    def _report_usage(self, completion: str) -> None:
        if self._token_counter is None:
            return
        prompt_tokens = self._token_counter.count_messages(self._messages)
        completion_tokens = self._token_counter.count(completion)
        logger.info(
            "Token usage: prompt=%d completion=%d", prompt_tokens, completion_tokens
        )


__all__ = [
    "ChatProvider",
    "CompletionRunner",
    "CompletionSnapshot",
    "build_messages",
    "finalize_tool_calls",
    "merge_tool_calls",
    "stringify_tool_result",
]
