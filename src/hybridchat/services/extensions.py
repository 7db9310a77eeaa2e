"""Load per-thread tool extensions and call their HTTP endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from ..chat.types import ToolDefinition
from ..schemas.extensions import (
    ExtensionCollection,
    ExtensionDefinition,
    ExtensionFunction,
)

logger = logging.getLogger(__name__)


class ExtensionCallError(RuntimeError):
    """Raised when an extension endpoint fails."""


class ExtensionService:
    """Serve tool definitions for the extensions enabled on a thread."""

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._extensions: dict[str, ExtensionDefinition] = {}
        self._loaded = False
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0), transport=transport
        )

    def _load_from_disk(self) -> None:
        if self._loaded:
            return
        self._loaded = True

        if not self._path.exists():
            self._extensions = {}
            return

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Failed to read extensions file %s: %s", self._path, exc)
            self._extensions = {}
            return

        if isinstance(raw, list):
            raw = {"extensions": raw}
        try:
            collection = ExtensionCollection.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid extensions file %s: %s", self._path, exc)
            self._extensions = {}
            return

        self._extensions = {item.id: item for item in collection.extensions}

    async def list_extensions(self) -> list[ExtensionDefinition]:
        async with self._lock:
            self._load_from_disk()
            return [item.model_copy(deep=True) for item in self._extensions.values()]

    async def get_tools(self, extension_ids: list[str]) -> list[ToolDefinition]:
        async with self._lock:
            self._load_from_disk()
            extensions = dict(self._extensions)

        tools: list[ToolDefinition] = []
        for extension_id in extension_ids:
            extension = extensions.get(extension_id)
            if extension is None:
                logger.warning("Skipping unknown extension %s", extension_id)
                continue
            for function in extension.functions:
                tools.append(
                    ToolDefinition(
                        name=function.name,
                        description=function.description,
                        parameters=function.parameters,
                        handler=self._make_handler(function),
                    )
                )
        return tools

    def _make_handler(self, function: ExtensionFunction):
        async def _call(arguments: dict[str, Any]) -> str:
            return await self.call(function, arguments)

        return _call

    async def call(self, function: ExtensionFunction, arguments: dict[str, Any]) -> str:
        request_kwargs: dict[str, Any] = {"headers": dict(function.headers)}
        if function.method in {"GET", "DELETE"}:
            request_kwargs["params"] = {
                key: value if isinstance(value, str) else json.dumps(value)
                for key, value in arguments.items()
            }
        else:
            request_kwargs["json"] = arguments

        try:
            response = await self._client.request(
                function.method, function.endpoint, **request_kwargs
            )
        except httpx.HTTPError as exc:
            raise ExtensionCallError(f"{function.name} request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ExtensionCallError(
                f"{function.name} returned {response.status_code}: {response.text}"
            )
        return response.text

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["ExtensionCallError", "ExtensionService"]
