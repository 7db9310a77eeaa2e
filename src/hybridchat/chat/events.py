"""Events emitted by the completion runner and consumed by the multiplexer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class ContentEvent:
    """Latest snapshot of the assistant message being streamed."""

    snapshot: dict[str, Any]

    @property
    def text(self) -> str:
        choices = self.snapshot.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""


@dataclass(frozen=True)
class FunctionCallEvent:
    name: str
    arguments: str


@dataclass(frozen=True)
class FunctionCallResultEvent:
    name: str
    result: Any


@dataclass(frozen=True)
class FinalContentEvent:
    content: str


@dataclass(frozen=True)
class ErrorEvent:
    error: BaseException

    @property
    def message(self) -> str:
        return str(self.error) or self.error.__class__.__name__


@dataclass(frozen=True)
class AbortEvent:
    reason: str = "Chat aborted"


StreamEvent = Union[
    ContentEvent,
    FunctionCallEvent,
    FunctionCallResultEvent,
    FinalContentEvent,
    ErrorEvent,
    AbortEvent,
]

TERMINAL_EVENTS = (FinalContentEvent, ErrorEvent, AbortEvent)


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, TERMINAL_EVENTS)


__all__ = [
    "TERMINAL_EVENTS",
    "AbortEvent",
    "ContentEvent",
    "ErrorEvent",
    "FinalContentEvent",
    "FunctionCallEvent",
    "FunctionCallResultEvent",
    "StreamEvent",
    "is_terminal",
]
