"""Type definitions shared by the chat pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

SseEvent = dict[str, str | None]

ToolHandler = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class ToolDefinition:
    """A function the model may call, paired with its implementation."""

    name: str
    description: str
    parameters: dict[str, Any]
    handler: ToolHandler = field(repr=False)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ExtensionProvider(Protocol):
    async def get_tools(self, extension_ids: list[str]) -> list[ToolDefinition]:
        ...


__all__ = ["ExtensionProvider", "SseEvent", "ToolDefinition", "ToolHandler"]
