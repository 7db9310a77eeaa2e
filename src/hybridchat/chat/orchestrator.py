"""High-level coordination of a chat turn."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator

from ..azure_openai import AzureOpenAIClient
from ..config import PROJECT_ROOT, Settings
from ..repository import ChatRepository
from ..schemas.chat import (
    ChatThread,
    ChatUser,
    ImageBlockedPayload,
    ModelSummary,
    ThreadCreateRequest,
    UserPrompt,
)
from ..services.blob_store import BlobStore, GcsBlobStore, LocalBlobStore
from ..services.extensions import ExtensionService
from ..services.image_models import ImageModelCatalog
from ..services.model_registry import (
    ModelConnection,
    ModelDisabledError,
    ModelNotFoundError,
    ModelRegistry,
)
from ..services.similarity_search import (
    AzureSearchClient,
    DisabledSimilaritySearch,
    SimilaritySearch,
)
from ..services.token_counter import TokenCounter
from .context import ContextAssembler
from .errors import (
    ChatRequestError,
    ModelSetupRequiredError,
    ModelUnavailableError,
    ThreadNotFoundError,
    UnsupportedImageError,
)
from .image_tool import AzureImageProvider, ImageGenerationTool, ImageProvider
from .modes import ChatMode, select_chat_mode
from .multiplexer import StreamMultiplexer, sse_event
from .prompts import persona_prompt
from .runner import ChatProvider, CompletionRunner, build_messages
from .safety import ContentFilterDiagnostics, prevalidate
from .types import ExtensionProvider, SseEvent, ToolDefinition

logger = logging.getLogger(__name__)

IMAGE_DATA_URL_PATTERN = re.compile(r"^data:image/([a-zA-Z]+);base64,")
SUPPORTED_IMAGE_EXTENSIONS = frozenset({"JPEG", "JPG", "PNG", "WEBP"})
PREVALIDATION_MESSAGE_NAME = "system"


def _resolve_path(path: Path) -> Path:
    return path if path.is_absolute() else PROJECT_ROOT / path


def _default_blob_store(settings: Settings) -> BlobStore:
    if settings.gcs_bucket_name:
        return GcsBlobStore(
            settings.gcs_bucket_name,
            project_id=settings.gcp_project_id,
            credentials_path=settings.google_application_credentials,
            url_ttl=timedelta(hours=settings.image_url_ttl_hours),
        )
    return LocalBlobStore(
        _resolve_path(settings.image_storage_dir), str(settings.public_base_url)
    )


def _default_search(settings: Settings) -> SimilaritySearch:
    if not settings.search_enabled:
        return DisabledSimilaritySearch()
    assert settings.azure_search_api_key is not None
    return AzureSearchClient(
        str(settings.azure_search_endpoint),
        settings.azure_search_api_key.get_secret_value(),
        settings.azure_search_index_name or "",
        api_version=settings.azure_search_api_version,
        timeout=settings.request_timeout,
    )


def validate_multimodal_image(image: str | None) -> None:
    """Reject attached images that are not JPEG, PNG or WEBP data URLs."""

    if not image:
        return
    match = IMAGE_DATA_URL_PATTERN.match(image)
    if match is None:
        raise UnsupportedImageError("Missing File Extension")
    if match.group(1).upper() not in SUPPORTED_IMAGE_EXTENSIONS:
        raise UnsupportedImageError("Filetype is not supported")


async def _single_event(event: SseEvent) -> AsyncIterator[SseEvent]:
    yield event


class ChatOrchestrator:
    """Entry point for chat turns and the thread operations around them."""

    def __init__(
        self,
        settings: Settings,
        *,
        repository: ChatRepository | None = None,
        provider: ChatProvider | None = None,
        registry: ModelRegistry | None = None,
        search: SimilaritySearch | None = None,
        extensions: ExtensionProvider | None = None,
        blob_store: BlobStore | None = None,
        image_catalog: ImageModelCatalog | None = None,
        image_provider: ImageProvider | None = None,
        token_counter: TokenCounter | None = None,
        diagnostics: ContentFilterDiagnostics | None = None,
    ):
        self._settings = settings
        self._repo = repository or ChatRepository(
            _resolve_path(settings.chat_database_path)
        )
        self._client = AzureOpenAIClient(settings)
        self._provider: ChatProvider = provider or self._client
        self._registry = registry or ModelRegistry(
            self._repo,
            ttl=settings.model_cache_ttl_seconds,
            setup_ttl=settings.setup_cache_ttl_seconds,
        )
        self._search = search or _default_search(settings)
        self._extensions = extensions or ExtensionService(
            _resolve_path(settings.extensions_path),
            timeout=settings.request_timeout,
        )
        self._blob_store = blob_store or _default_blob_store(settings)
        self._image_catalog = image_catalog or ImageModelCatalog.from_settings(settings)
        self._image_tool = ImageGenerationTool(
            self._image_catalog,
            image_provider or AzureImageProvider(self._client),
            self._blob_store,
            diagnostics=diagnostics,
        )
        self._context = ContextAssembler(
            self._repo,
            self._search,
            self._extensions,
            history_limit=settings.history_limit,
            document_top_k=settings.document_top_k,
        )
        self._token_counter = token_counter
        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def initialize(self) -> None:
        """Initialize the database once."""

        async with self._init_lock:
            if self._ready.is_set():
                return

            await self._repo.initialize()
            self._ready.set()
            status = await self._registry.check_setup()
            logger.info(
                "Chat orchestrator ready: %d enabled model(s), %d image model(s)",
                status.enabled_count,
                len(self._image_catalog.available()),
            )

    async def shutdown(self) -> None:
        """Clean up held resources."""

        for name, closer in (
            ("Azure OpenAI client", self._client.aclose),
            ("extension client", getattr(self._extensions, "aclose", None)),
            ("search client", getattr(self._search, "aclose", None)),
        ):
            if closer is None:
                continue
            try:
                await asyncio.wait_for(closer(), timeout=2.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing %s: %s", name, exc)

        try:
            await asyncio.wait_for(self._repo.close(), timeout=2.0)
        except (asyncio.TimeoutError, Exception) as exc:
            logger.warning("Error closing repository: %s", exc)

        self._ready.clear()

    async def wait_until_ready(self) -> None:
        """Block until initialization has completed."""

        await self._ready.wait()

    @property
    def repository(self) -> ChatRepository:
        return self._repo

    @property
    def models(self) -> ModelRegistry:
        return self._registry

    @property
    def image_models(self) -> ImageModelCatalog:
        return self._image_catalog

    @property
    def blob_store(self) -> BlobStore:
        return self._blob_store

    # Threads -----------------------------------------------------------

    async def get_thread(self, thread_id: str, user: ChatUser) -> ChatThread:
        """Return the thread if the caller owns it (admins see every thread)."""

        await self._ready.wait()
        thread = await self._repo.get_thread(
            thread_id, user_id=None if user.is_admin else user.id
        )
        if thread is None:
            raise ThreadNotFoundError(f"Chat thread {thread_id} not found")
        return thread

    async def create_thread(
        self, user: ChatUser, request: ThreadCreateRequest
    ) -> ChatThread:
        await self._ready.wait()
        model_id = request.model_id
        if not model_id:
            default = await self._registry.get_default_config()
            model_id = default.id if default is not None else None
        return await self._repo.create_thread(
            user.id,
            user_name=user.name,
            name=request.name,
            persona_message=request.persona_message,
            persona_message_title=request.persona_message_title,
            model_id=model_id,
            image_model_id=request.image_model_id,
            extension=request.extension,
        )

    async def delete_thread(self, thread_id: str, user: ChatUser) -> int:
        thread = await self.get_thread(thread_id, user)
        return await self._repo.soft_delete_thread(thread.id)

    async def set_image_model(
        self, thread_id: str, user: ChatUser, image_model_id: str | None
    ) -> ChatThread:
        thread = await self.get_thread(thread_id, user)
        if image_model_id and image_model_id not in self._image_catalog.available_ids():
            raise ChatRequestError(f"Invalid image model: {image_model_id}")
        await self._repo.update_image_model(thread.id, image_model_id or None)
        return thread.model_copy(update={"image_model_id": image_model_id or None})

    async def list_models(self) -> list[ModelSummary]:
        await self._ready.wait()
        return [
            ModelSummary(
                id=config.id,
                friendly_name=config.friendly_name,
                description=config.description,
                is_default=config.is_default,
            )
            for config in await self._registry.list_enabled()
        ]

    # Turns -------------------------------------------------------------

    async def start_turn(
        self, prompt: UserPrompt, user: ChatUser
    ) -> AsyncIterator[SseEvent]:
        """Validate the request and return the turn's SSE event stream.

        Request-level failures raise :class:`ChatRequestError` before any
        event is produced.
        """

        await self._ready.wait()

        status = await self._registry.check_setup()
        if not status.is_configured:
            raise ModelSetupRequiredError(status.message or "Models not configured")

        thread = await self.get_thread(prompt.id, user)
        validate_multimodal_image(prompt.multimodal_image)

        history, documents, extension_tools = await asyncio.gather(
            self._context.history(thread),
            self._context.documents(thread),
            self._context.extension_tools(thread),
        )
        persona = persona_prompt(self._settings.assistant_name, thread.persona_message)

        check = prevalidate(
            prompt.message, self._settings.image_prevalidation_risk_threshold
        )
        if check is not None and check.blocked:
            payload = check.to_payload(prompt.message)
            await self._persist_prevalidation_block(
                thread, user, prompt, payload, guidance=check.guidance
            )
            return _single_event(sse_event("imageBlocked", payload.to_wire()))

        mode = select_chat_mode(
            bool(prompt.multimodal_image), len(documents), len(extension_tools)
        )
        tools: list[ToolDefinition] = []
        if mode is ChatMode.EXTENSIONS:
            tools = [
                self._image_tool.definition(thread, prompt.message),
                *extension_tools,
            ]
        # A rejected turn must not leave an unanswered user message behind
        connection = await self._resolve_connection(thread)

        await self._repo.create_message(
            thread.id,
            "user",
            user.name,
            prompt.message,
            user_id=user.id,
            multi_modal_image=prompt.multimodal_image,
        )
        logger.info("Starting %s turn for thread %s", mode.value, thread.id)

        document_context = ""
        if mode is ChatMode.HYBRID:
            context = await self._context.document_context(
                thread, user.id, prompt.message, model_id=thread.model_id
            )
            document_context = context.text

        messages = build_messages(
            mode,
            persona=persona,
            history=history,
            message=prompt.message,
            multimodal_image=prompt.multimodal_image,
            document_context=document_context,
        )
        runner = CompletionRunner(
            self._provider,
            connection,
            messages,
            tools=tools,
            max_completion_tokens=self._settings.max_completion_tokens,
            tool_hop_limit=self._settings.tool_hop_limit,
            timeout=self._settings.turn_timeout_seconds,
            token_counter=self._token_counter,
        )
        multiplexer = StreamMultiplexer(
            self._repo,
            thread,
            user_id=user.id,
            assistant_name=self._settings.assistant_name,
            model_name=self._registry.friendly_name,
        )
        return multiplexer.stream(runner)

    async def _persist_prevalidation_block(
        self,
        thread: ChatThread,
        user: ChatUser,
        prompt: UserPrompt,
        payload: ImageBlockedPayload,
        *,
        guidance: str,
    ) -> None:
        logger.info(
            "Pre-validation blocked image request (thread=%s, score=%.3f)",
            thread.id,
            payload.risk_score or 0.0,
        )
        await self._repo.create_message(
            thread.id,
            "user",
            user.name,
            prompt.message,
            user_id=user.id,
            multi_modal_image=prompt.multimodal_image,
        )
        await self._repo.create_message(
            thread.id,
            "assistant",
            PREVALIDATION_MESSAGE_NAME,
            guidance,
            user_id=user.id,
            model_id=thread.model_id,
            model_name=await self._registry.friendly_name(thread.model_id),
            blocked=payload.to_blocked_metadata(),
        )

    async def _resolve_connection(self, thread: ChatThread) -> ModelConnection:
        try:
            return await self._registry.resolve(thread.model_id)
        except ModelDisabledError as exc:
            raise ModelUnavailableError(str(exc)) from exc
        except ModelNotFoundError as exc:
            if not thread.model_id:
                raise ModelSetupRequiredError(str(exc)) from exc
            logger.warning(
                "Model %s for thread %s not found, using default",
                thread.model_id,
                thread.id,
            )
        try:
            return await self._registry.get_default()
        except ModelNotFoundError as exc:
            raise ModelSetupRequiredError(str(exc)) from exc


__all__ = [
    "IMAGE_DATA_URL_PATTERN",
    "SUPPORTED_IMAGE_EXTENSIONS",
    "ChatOrchestrator",
    "validate_multimodal_image",
]
