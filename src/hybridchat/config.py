"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Public URL the browser uses to fetch generated images
    public_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("http://localhost:8000"),
        validation_alias=AliasChoices("PUBLIC_BASE_URL", "NEXTAUTH_URL", "public_base_url"),
    )
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        validation_alias=AliasChoices("CORS_ALLOW_ORIGINS", "cors_allow_origins"),
    )
    assistant_name: str = Field(
        default="Hybrid Chat",
        validation_alias=AliasChoices("AI_NAME", "assistant_name"),
    )

    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/chat.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )
    image_storage_dir: Path = Field(
        default_factory=lambda: Path("data/images"),
        validation_alias=AliasChoices("IMAGE_STORAGE_DIR", "image_storage_dir"),
    )
    # Optional Google Cloud Storage bucket for generated images
    gcs_bucket_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )
    image_url_ttl_hours: int = Field(
        default=24 * 7,
        ge=1,
        validation_alias=AliasChoices("IMAGE_URL_TTL_HOURS", "image_url_ttl_hours"),
    )
    extensions_path: Path = Field(
        default_factory=lambda: Path("data/extensions.json"),
        validation_alias=AliasChoices("EXTENSIONS_PATH", "extensions_path"),
    )

    request_timeout: float = Field(
        default=120.0,
        validation_alias=AliasChoices("AZURE_OPENAI_TIMEOUT", "timeout"),
        ge=1,
    )
    turn_timeout_seconds: float = Field(
        default=300.0,
        validation_alias=AliasChoices("CHAT_TURN_TIMEOUT", "turn_timeout_seconds"),
        ge=1,
    )
    history_limit: int = Field(
        default=30,
        validation_alias=AliasChoices("CHAT_HISTORY_LIMIT", "history_limit"),
        ge=1,
    )
    document_top_k: int = Field(
        default=5,
        validation_alias=AliasChoices("DOCUMENT_TOP_K", "document_top_k"),
        ge=1,
    )
    max_completion_tokens: int = Field(
        default=8192,
        validation_alias=AliasChoices(
            "MAX_COMPLETION_TOKENS", "max_completion_tokens"
        ),
        ge=1,
    )
    tool_hop_limit: int = Field(
        default=8,
        validation_alias=AliasChoices("TOOL_HOP_LIMIT", "tool_hop_limit"),
        ge=1,
    )
    image_prevalidation_risk_threshold: float = Field(
        default=0.45,
        validation_alias=AliasChoices(
            "IMAGE_PREVALIDATION_RISK_THRESHOLD",
            "image_prevalidation_risk_threshold",
        ),
        ge=0,
        le=1,
    )
    tokenizer_model: str = Field(
        default="gpt-4",
        validation_alias=AliasChoices("TOKENIZER_MODEL", "tokenizer_model"),
    )

    model_cache_ttl_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices("MODEL_CACHE_TTL", "model_cache_ttl_seconds"),
        ge=0,
    )
    setup_cache_ttl_seconds: float = Field(
        default=5.0,
        validation_alias=AliasChoices("SETUP_CACHE_TTL", "setup_cache_ttl_seconds"),
        ge=0,
    )

    # DALL-E 3 image model
    dalle_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_OPENAI_DALLE_API_KEY"),
    )
    dalle_instance_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_OPENAI_DALLE_API_INSTANCE_NAME"),
    )
    dalle_deployment_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_OPENAI_DALLE_API_DEPLOYMENT_NAME"),
    )
    dalle_api_version: str = Field(
        default="2023-12-01-preview",
        validation_alias=AliasChoices("AZURE_OPENAI_DALLE_API_VERSION"),
    )

    # GPT-Image-1 image model
    gpt_image_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("IMAGE_GEN_OAI_API_KEY"),
    )
    gpt_image_instance_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("IMAGE_GEN_OAI_INSTANCE_NAME"),
    )
    gpt_image_deployment_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("IMAGE_GEN_OAI_DEPLOYMENT_NAME"),
    )
    gpt_image_api_version: str = Field(
        default="2025-04-01-preview",
        validation_alias=AliasChoices("IMAGE_GEN_OAI_AZURE_API_VERSION"),
    )

    # Azure AI Search (document similarity search)
    azure_search_endpoint: Optional[AnyHttpUrl] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_SEARCH_ENDPOINT", "azure_search_endpoint"),
    )
    azure_search_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_SEARCH_API_KEY"),
    )
    azure_search_index_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("AZURE_SEARCH_INDEX_NAME"),
    )
    azure_search_api_version: str = Field(
        default="2023-11-01",
        validation_alias=AliasChoices("AZURE_SEARCH_API_VERSION"),
    )

    @property
    def search_enabled(self) -> bool:
        return bool(
            self.azure_search_endpoint
            and self.azure_search_api_key
            and self.azure_search_index_name
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
