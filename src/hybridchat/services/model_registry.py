"""Resolve admin-managed chat models to Azure OpenAI connection parameters."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..azure_openai import AzureDeployment, azure_endpoint
from ..repository import ChatRepository
from ..schemas.chat import ModelConfig
from .cache import Clock, ExpiringCache

logger = logging.getLogger(__name__)

SETUP_REQUIRED_MESSAGE = (
    "No AI models are configured yet. An administrator needs to set up at least "
    "one AI model before chat functionality will be available."
)

_ENABLED_KEY = "enabled"
_DEFAULT_KEY = "default"
_SETUP_KEY = "setup"


class ModelRegistryError(RuntimeError):
    """Base error raised for model lookup failures."""


class ModelNotFoundError(ModelRegistryError):
    def __init__(self, model_id: str | None):
        if model_id:
            message = f"Model {model_id} not found"
        else:
            message = "No default model configured"
        super().__init__(message)
        self.model_id = model_id


class ModelDisabledError(ModelRegistryError):
    def __init__(self, model_id: str):
        super().__init__(f"Model {model_id} is disabled")
        self.model_id = model_id


class CredentialCipher(Protocol):
    def decrypt(self, value: str) -> str:
        ...


class PlaintextCredentials:
    """Cipher used when credentials are stored without at-rest encryption."""

    def decrypt(self, value: str) -> str:
        return value


@dataclass(frozen=True)
class ModelConnection(AzureDeployment):
    """Everything needed to call a configured chat model."""

    model_id: str = ""
    friendly_name: str = ""


@dataclass(frozen=True)
class ModelSetupStatus:
    is_configured: bool
    enabled_count: int
    has_default: bool
    message: str | None = None


def _sort_key(config: ModelConfig) -> tuple[int, str]:
    return (config.sort_order if config.sort_order is not None else 100, config.friendly_name)


class ModelRegistry:
    """Cached read access to model configs with invalidation on every write."""

    def __init__(
        self,
        repository: ChatRepository,
        *,
        ttl: float = 60.0,
        setup_ttl: float = 5.0,
        clock: Clock | None = None,
        cipher: CredentialCipher | None = None,
    ) -> None:
        self._repo = repository
        self._cache: ExpiringCache[object] = ExpiringCache(ttl, clock=clock)
        self._setup_cache: ExpiringCache[ModelSetupStatus] = ExpiringCache(
            setup_ttl, clock=clock
        )
        self._cipher: CredentialCipher = cipher or PlaintextCredentials()

    async def list_enabled(self) -> list[ModelConfig]:
        cached = self._cache.get(_ENABLED_KEY)
        if cached is not None:
            return list(cached)  # type: ignore[call-overload]

        models = [config for config in await self._repo.list_models() if config.enabled]
        models.sort(key=_sort_key)
        self._cache.set(_ENABLED_KEY, tuple(models))
        return models

    async def get_default_config(self) -> ModelConfig | None:
        cached = self._cache.get(_DEFAULT_KEY)
        if cached is not None:
            return cached  # type: ignore[return-value]

        enabled = await self.list_enabled()
        default = next((config for config in enabled if config.is_default), None)
        if default is not None:
            self._cache.set(_DEFAULT_KEY, default)
        return default

    async def get_default(self) -> ModelConnection:
        default = await self.get_default_config()
        if default is None:
            raise ModelNotFoundError(None)
        return self._connect(default)

    async def resolve(self, model_id: str | None = None) -> ModelConnection:
        """Return connection parameters for ``model_id`` or the default model."""

        if not model_id:
            return await self.get_default()

        config = await self._repo.get_model(model_id)
        if config is None:
            raise ModelNotFoundError(model_id)
        if not config.enabled:
            raise ModelDisabledError(model_id)
        return self._connect(config)

    async def friendly_name(self, model_id: str | None) -> str | None:
        try:
            connection = await self.resolve(model_id)
        except ModelRegistryError as exc:
            logger.warning("Could not resolve model name for %s: %s", model_id, exc)
            return None
        return connection.friendly_name

    async def check_setup(self) -> ModelSetupStatus:
        cached = self._setup_cache.get(_SETUP_KEY)
        if cached is not None:
            return cached

        enabled = await self.list_enabled()
        has_default = any(config.is_default for config in enabled)
        is_configured = bool(enabled)
        status = ModelSetupStatus(
            is_configured=is_configured,
            enabled_count=len(enabled),
            has_default=has_default,
            message=None if is_configured else SETUP_REQUIRED_MESSAGE,
        )
        self._setup_cache.set(_SETUP_KEY, status)
        return status

    async def upsert_model(self, config: ModelConfig) -> None:
        await self._repo.upsert_model(config)
        self.invalidate()

    async def set_default(self, model_id: str) -> None:
        config = await self._repo.get_model(model_id)
        if config is None:
            raise ModelNotFoundError(model_id)
        if not config.enabled:
            raise ModelDisabledError(model_id)
        await self._repo.set_default_model(model_id)
        self.invalidate()

    async def delete_model(self, model_id: str) -> bool:
        deleted = await self._repo.delete_model(model_id)
        self.invalidate()
        return deleted

    def invalidate(self) -> None:
        self._cache.clear()
        self._setup_cache.clear()

    def _connect(self, config: ModelConfig) -> ModelConnection:
        return ModelConnection(
            endpoint=azure_endpoint(config.instance_name),
            credential=self._cipher.decrypt(config.api_key),
            deployment_name=config.deployment_name,
            api_version=config.api_version,
            model_id=config.id,
            friendly_name=config.friendly_name,
        )


__all__ = [
    "SETUP_REQUIRED_MESSAGE",
    "CredentialCipher",
    "ModelConnection",
    "ModelDisabledError",
    "ModelNotFoundError",
    "ModelRegistry",
    "ModelRegistryError",
    "ModelSetupStatus",
    "PlaintextCredentials",
]
