"""The ``create_img`` tool: image generation behind a layered safety pipeline."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Protocol
from uuid import uuid4

from ..azure_openai import AzureOpenAIClient, AzureOpenAIError
from ..schemas.chat import ChatThread
from ..services.blob_store import BlobStore
from ..services.image_models import ImageModelCatalog, ImageModelConfig
from .errors import (
    SafetyBlockError,
    ToolProviderError,
    ToolStorageError,
    ToolValidationError,
)
from .safety import (
    ContentFilterDiagnostics,
    is_content_filter_error,
    model_refusal_payload,
)
from .types import ToolDefinition

logger = logging.getLogger(__name__)

IMAGE_TOOL_NAME = "create_img"
MAX_PROMPT_LENGTH = 4000


class ImageProvider(Protocol):
    async def generate(self, model: ImageModelConfig, prompt: str) -> dict[str, Any]:
        ...


class AzureImageProvider:
    """Generate images through an Azure OpenAI deployment."""

    def __init__(self, client: AzureOpenAIClient) -> None:
        self._client = client

    async def generate(self, model: ImageModelConfig, prompt: str) -> dict[str, Any]:
        return await self._client.generate_image(
            model.deployment(), model.build_request(prompt)
        )


class ImageGenerationTool:
    """Validate, generate, classify failures, and store the resulting image."""

    def __init__(
        self,
        catalog: ImageModelCatalog,
        provider: ImageProvider,
        blob_store: BlobStore,
        *,
        diagnostics: ContentFilterDiagnostics | None = None,
    ) -> None:
        self._catalog = catalog
        self._provider = provider
        self._blob_store = blob_store
        self._diagnostics = diagnostics or ContentFilterDiagnostics()

    def definition(self, thread: ChatThread, user_message: str) -> ToolDefinition:
        available = self._catalog.available()
        listing = ", ".join(f"{model.id} ({model.name})" for model in available)

        async def _handler(arguments: dict[str, Any]) -> dict[str, Any]:
            return await self.execute(thread, user_message, arguments)

        return ToolDefinition(
            name=IMAGE_TOOL_NAME,
            description=(
                "You must only use this tool if the user asks you to create an "
                "image. You must only use this tool once per message. Images must "
                f"be displayed inline. Available models: {listing}"
            ),
            parameters={
                "type": "object",
                "properties": {
                    "prompt": {"type": "string"},
                    "model": {
                        "type": "string",
                        "enum": [model.id for model in available],
                        "description": (
                            "The image generation model to use. If not specified, "
                            "uses the chat thread's default image model."
                        ),
                    },
                },
                "required": ["prompt"],
            },
            handler=_handler,
        )

    async def execute(
        self,
        thread: ChatThread,
        user_message: str,
        arguments: dict[str, Any],
    ) -> dict[str, Any]:
        # The verbatim user message wins over any prompt the model rewrote
        prompt = (user_message or str(arguments.get("prompt") or "")).strip()
        if not prompt:
            raise ToolValidationError(IMAGE_TOOL_NAME, "No prompt provided")
        if len(prompt) >= MAX_PROMPT_LENGTH:
            raise ToolValidationError(
                IMAGE_TOOL_NAME,
                f"Prompt is too long, it must be less than {MAX_PROMPT_LENGTH} characters",
            )

        model = self.resolve_model(thread, arguments.get("model"))
        logger.info("Generating image for thread %s with %s", thread.id, model.id)

        try:
            response = await self._provider.generate(model, prompt)
        except AzureOpenAIError as exc:
            if is_content_filter_error(
                code=exc.code,
                status_code=exc.status_code,
                filter_results=exc.content_filter_results,
            ):
                payload = self._diagnostics.build(
                    prompt,
                    request_id=exc.request_id,
                    provider_message=str(exc) or None,
                    filter_results=exc.content_filter_results,
                )
                logger.info(
                    "Image blocked by content filter (thread=%s, block=%s)",
                    thread.id,
                    payload.block_id,
                )
                raise SafetyBlockError(IMAGE_TOOL_NAME, payload) from exc
            raise self._provider_error(exc) from exc
        except Exception as exc:
            raise self._provider_error(exc) from exc

        image_b64 = _first_image(response)
        if image_b64 is None:
            payload = model_refusal_payload(prompt)
            logger.info("Image model returned no data (thread=%s)", thread.id)
            raise SafetyBlockError(IMAGE_TOOL_NAME, payload)

        revised_prompt = response["data"][0].get("revised_prompt")
        filename = f"{uuid4().hex}.png"
        try:
            data = base64.b64decode(image_b64, validate=False)
            await self._blob_store.upload(thread.id, filename, data)
            url = await self._blob_store.get_url(thread.id, filename)
        except (binascii.Error, ValueError, OSError, RuntimeError) as exc:
            raise ToolStorageError(
                IMAGE_TOOL_NAME,
                f"There was an error storing the image: {exc} Please try again or "
                "contact support if the issue persists.",
            ) from exc

        return {"revised_prompt": revised_prompt, "url": url}

    def resolve_model(
        self, thread: ChatThread, requested: Any = None
    ) -> ImageModelConfig:
        """Pick the thread's model, then the requested one, then the first available."""

        available = self._catalog.available()
        selected = thread.image_model_id or (requested if isinstance(requested, str) else None)
        if not selected and available:
            selected = available[0].id
        if not selected:
            raise ToolValidationError(
                IMAGE_TOOL_NAME, "No image generation models are available"
            )

        model = self._catalog.get(selected)
        if model is None:
            names = ", ".join(item.id for item in available)
            raise ToolValidationError(
                IMAGE_TOOL_NAME,
                f"Invalid image model: {selected}. Available models: {names}",
            )
        return model

    @staticmethod
    def _provider_error(exc: Exception) -> ToolProviderError:
        return ToolProviderError(
            IMAGE_TOOL_NAME,
            f"There was an error creating the image: {exc} Return this message to "
            "the user and halt execution.",
            status_code=getattr(exc, "status_code", None),
        )


def _first_image(response: Any) -> str | None:
    if not isinstance(response, dict):
        return None
    data = response.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    value = data[0].get("b64_json")
    return value if isinstance(value, str) else None


__all__ = [
    "IMAGE_TOOL_NAME",
    "MAX_PROMPT_LENGTH",
    "AzureImageProvider",
    "ImageGenerationTool",
    "ImageProvider",
]
