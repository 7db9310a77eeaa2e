"""Fan runner events out to the browser and to persistence."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from ..schemas.chat import BlockedMetadata, ChatThread, ImageBlockedPayload
from .errors import SafetyBlockError
from .events import (
    AbortEvent,
    ContentEvent,
    ErrorEvent,
    FinalContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    StreamEvent,
)
from .runner import CompletionRunner, stringify_tool_result
from .safety import BLOCKED_BANNER, backfill_risk
from .types import SseEvent

logger = logging.getLogger(__name__)

ABORT_MESSAGE = "Chat aborted"
FINAL_ERROR_MARKER = "FINAL_ERROR:"
SUCCESS_RESULT_NAME = "tool"

ModelNameResolver = Callable[[str | None], Awaitable[str | None]]


class MessageSink(Protocol):
    async def create_message(
        self,
        thread_id: str,
        role: str,
        name: str,
        content: str,
        *,
        user_id: str | None = None,
        model_id: str | None = None,
        model_name: str | None = None,
        multi_modal_image: str | None = None,
        blocked: BlockedMetadata | None = None,
    ) -> Any:
        ...


def sse_event(event_type: str, response: Any) -> SseEvent:
    """Encode one wire event as ``{"type": ..., "response": ...}``."""

    return {
        "event": event_type,
        "data": json.dumps({"type": event_type, "response": response}, default=str),
    }


def is_error_result(result: Any) -> bool:
    """Return True when a function result reports a failure."""

    if isinstance(result, dict):
        error = result.get("error")
        if error is True or result.get("success") is False:
            return True
        return isinstance(error, str) and bool(error)
    if isinstance(result, str):
        return FINAL_ERROR_MARKER in result or BLOCKED_BANNER in result
    return False


def _result_content(result: Any, is_error: bool) -> str:
    if is_error and isinstance(result, dict):
        message = result.get("message")
        if isinstance(message, str) and message:
            return message
    return stringify_tool_result(result)


class StreamController:
    """Outbound side of one stream; closing is idempotent."""

    def __init__(self) -> None:
        self._open = True

    @property
    def is_open(self) -> bool:
        return self._open

    def close(self) -> bool:
        """Close the stream; return False if it was already closed."""

        if not self._open:
            return False
        self._open = False
        return True

    def encode(self, event_type: str, response: Any) -> SseEvent | None:
        if not self._open:
            return None
        return sse_event(event_type, response)


class StreamMultiplexer:
    """Translate runner events to SSE and persist the turn's messages.

    Each terminal event (final content or error) produces exactly one
    assistant message; an abort persists nothing.
    """

    def __init__(
        self,
        repository: MessageSink,
        thread: ChatThread,
        *,
        user_id: str,
        assistant_name: str,
        model_name: ModelNameResolver,
    ) -> None:
        self._repo = repository
        self._thread = thread
        self._user_id = user_id
        self._assistant_name = assistant_name
        self._resolve_model_name = model_name
        self._controller = StreamController()
        self._last_message = ""

    @property
    def controller(self) -> StreamController:
        return self._controller

    async def stream(self, runner: CompletionRunner) -> AsyncIterator[SseEvent]:
        """Yield SSE events for the runner's lifetime.

        Closing the generator early (client disconnect) aborts the runner.
        """

        try:
            async for event in runner.events():
                outgoing = await self.handle(event)
                if outgoing is not None:
                    yield outgoing
                if not self._controller.is_open:
                    break
        finally:
            await runner.aclose()
            self._controller.close()

    async def handle(self, event: StreamEvent) -> SseEvent | None:
        if not self._controller.is_open:
            return None

        if isinstance(event, ContentEvent):
            self._last_message = event.text
            return self._controller.encode("content", event.snapshot)

        if isinstance(event, FunctionCallEvent):
            await self._persist_function(event.name, event.arguments)
            return self._controller.encode(
                "functionCall", {"name": event.name, "arguments": event.arguments}
            )

        if isinstance(event, FunctionCallResultEvent):
            failed = is_error_result(event.result)
            await self._persist_function(
                event.name if failed else SUCCESS_RESULT_NAME,
                _result_content(event.result, failed),
            )
            return self._controller.encode("functionCallResult", event.result)

        if isinstance(event, AbortEvent):
            return self._terminate("abort", ABORT_MESSAGE)

        if isinstance(event, ErrorEvent):
            return await self._on_error(event)

        if isinstance(event, FinalContentEvent):
            await self._persist_assistant(event.content)
            return self._terminate("finalContent", event.content)

        logger.warning("Ignoring unknown stream event %r", event)
        return None

    async def _on_error(self, event: ErrorEvent) -> SseEvent | None:
        error = event.error
        message = event.message
        if isinstance(error, SafetyBlockError) or BLOCKED_BANNER in message:
            payload = _blocked_payload(error, message)
            await self._persist_assistant(
                payload.message, blocked=payload.to_blocked_metadata()
            )
            return self._terminate("imageBlocked", payload.to_wire())

        # Keep whatever was streamed before the failure
        await self._persist_assistant(self._last_message)
        return self._terminate("error", message)

    def _terminate(self, event_type: str, response: Any) -> SseEvent | None:
        outgoing = self._controller.encode(event_type, response)
        self._controller.close()
        return outgoing

    async def _persist_function(self, name: str, content: str) -> None:
        try:
            await self._repo.create_message(
                self._thread.id,
                "function",
                name,
                content,
                user_id=self._user_id,
            )
        except Exception as exc:
            logger.error("Failed to persist function message %s: %s", name, exc)

    async def _persist_assistant(
        self, content: str, *, blocked: BlockedMetadata | None = None
    ) -> None:
        model_name = await self._resolve_model_name(self._thread.model_id)
        try:
            await self._repo.create_message(
                self._thread.id,
                "assistant",
                self._assistant_name,
                content,
                user_id=self._user_id,
                model_id=self._thread.model_id,
                model_name=model_name,
                blocked=blocked,
            )
        except Exception as exc:
            logger.error(
                "Failed to persist assistant message for thread %s: %s",
                self._thread.id,
                exc,
            )


def _blocked_payload(error: BaseException, message: str) -> ImageBlockedPayload:
    if isinstance(error, SafetyBlockError):
        payload = error.payload
    else:
        payload = ImageBlockedPayload(source="api_content_filter", message=message)
    return backfill_risk(payload)


__all__ = [
    "ABORT_MESSAGE",
    "MessageSink",
    "ModelNameResolver",
    "StreamController",
    "StreamMultiplexer",
    "is_error_result",
    "sse_event",
]
