"""Azure OpenAI REST client for streaming chat completions and image generation."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Iterable, Mapping, Optional

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADERS = ("apim-request-id", "x-ms-request-id")


class AzureOpenAIError(Exception):
    """Wrap transport or API failures when communicating with Azure OpenAI."""

    def __init__(
        self,
        status_code: int,
        detail: Any,
        *,
        code: str | None = None,
        request_id: str | None = None,
    ):
        super().__init__(_describe_detail(detail))
        self.status_code = status_code
        self.detail = detail
        self.request_id = request_id
        self._code = code

    @property
    def code(self) -> str | None:
        if self._code is not None:
            return self._code
        if isinstance(self.detail, Mapping):
            code = self.detail.get("code")
            if isinstance(code, str):
                return code
        return None

    @property
    def content_filter_results(self) -> dict[str, Any] | None:
        """Return the provider's per-category filter verdicts, if present."""

        if not isinstance(self.detail, Mapping):
            return None
        inner = self.detail.get("inner_error") or self.detail.get("innererror")
        if isinstance(inner, Mapping):
            results = inner.get("content_filter_results")
            if isinstance(results, Mapping):
                return dict(results)
        results = self.detail.get("content_filter_results")
        if isinstance(results, Mapping):
            return dict(results)
        return None


def _describe_detail(detail: Any) -> str:
    if isinstance(detail, Mapping):
        message = detail.get("message")
        if isinstance(message, str) and message:
            return message
        return json.dumps(detail, default=str)
    return str(detail)


@dataclass(frozen=True)
class AzureDeployment:
    """Coordinates of a single Azure OpenAI deployment."""

    endpoint: str
    credential: str
    deployment_name: str
    api_version: str

    def url(self, operation: str) -> str:
        base = self.endpoint.rstrip("/")
        return f"{base}/openai/deployments/{self.deployment_name}/{operation}"


def azure_endpoint(instance_name: str) -> str:
    return f"https://{instance_name}.openai.azure.com/"


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


class AzureOpenAIClient:
    """Client for the Azure OpenAI data-plane REST API."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[float, httpx.AsyncClient] = {}

    def __init__(self, settings: Settings):
        self._timeout = float(settings.request_timeout)

    async def _get_http_client(self) -> httpx.AsyncClient:
        key = self._timeout
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @staticmethod
    def _headers(deployment: AzureDeployment, *, accept: str) -> dict[str, str]:
        return {
            "api-key": deployment.credential,
            "Content-Type": "application/json",
            "Accept": accept,
        }

    async def stream_chat(
        self, deployment: AzureDeployment, payload: dict[str, Any]
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Stream chat completion chunks as decoded JSON dictionaries."""

        url = deployment.url("chat/completions")
        body = dict(payload)
        body["stream"] = True

        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                params={"api-version": deployment.api_version},
                headers=self._headers(deployment, accept="text/event-stream"),
                json=body,
            ) as response:
                if response.status_code >= 400:
                    raw = await response.aread()
                    raise AzureOpenAIError(
                        response.status_code,
                        self._extract_error_detail(raw),
                        request_id=extract_request_id(response.headers),
                    )

                async for event in self._iter_events(response):
                    if not event.data:
                        continue
                    if event.data.strip() == "[DONE]":
                        break
                    try:
                        chunk = json.loads(event.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping non-JSON stream payload: %s", event.data)
                        continue
                    if isinstance(chunk, dict):
                        yield chunk
        except httpx.HTTPError as exc:
            raise AzureOpenAIError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def generate_image(
        self, deployment: AzureDeployment, body: dict[str, Any]
    ) -> dict[str, Any]:
        """Request an image generation and return the raw JSON response."""

        client = await self._get_http_client()
        try:
            response = await client.post(
                deployment.url("images/generations"),
                params={"api-version": deployment.api_version},
                headers=self._headers(deployment, accept="application/json"),
                json=body,
            )
        except httpx.HTTPError as exc:
            raise AzureOpenAIError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            raise AzureOpenAIError(
                response.status_code,
                self._extract_error_detail(response.content),
                request_id=extract_request_id(response.headers),
            )

        try:
            return response.json()
        except ValueError as exc:
            raise AzureOpenAIError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug("Error closing pooled HTTP client: %s", exc)

    async def _iter_events(
        self, response: httpx.Response
    ) -> AsyncGenerator[ServerSentEvent, None]:
        buffer: list[str] = []
        async for line in response.aiter_lines():
            if not line:
                if buffer:
                    yield parse_event(buffer)
                    buffer.clear()
                continue
            if line.startswith(":"):
                continue
            buffer.append(line)
        if buffer:
            yield parse_event(buffer)

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Azure OpenAI returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


def parse_event(lines: Iterable[str]) -> ServerSentEvent:
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: list[str] = []

    for line in lines:
        field, _, value = line.partition(":")
        value = value.lstrip(" ")
        if field == "event":
            event_name = value or None
        elif field == "data":
            data_lines.append(value)
        elif field == "id":
            event_id = value or None

    return ServerSentEvent(
        data="\n".join(data_lines), event=event_name or "message", event_id=event_id
    )


def extract_request_id(headers: Mapping[str, str]) -> str | None:
    for name in REQUEST_ID_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


__all__ = [
    "AzureDeployment",
    "AzureOpenAIClient",
    "AzureOpenAIError",
    "ServerSentEvent",
    "azure_endpoint",
    "extract_request_id",
    "parse_event",
]
