"""Image generation models configured from the environment."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..azure_openai import AzureDeployment, azure_endpoint
from ..config import Settings

DALLE_3 = "dall-e-3"
GPT_IMAGE_1 = "gpt-image-1"


@dataclass(frozen=True)
class ImageModelConfig:
    id: str
    name: str
    description: str
    api_key: str | None
    instance_name: str | None
    deployment_name: str | None
    api_version: str

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    @property
    def is_valid(self) -> bool:
        return bool(self.api_key and self.instance_name and self.deployment_name)

    def deployment(self) -> AzureDeployment:
        if not self.is_valid:
            raise ValueError(f"Image model {self.id} is not fully configured")
        return AzureDeployment(
            endpoint=azure_endpoint(self.instance_name or ""),
            credential=self.api_key or "",
            deployment_name=self.deployment_name or "",
            api_version=self.api_version,
        )

    def build_request(self, prompt: str) -> dict[str, Any]:
        """Return the provider request body, always asking for base64 output."""

        if self.id == GPT_IMAGE_1:
            # gpt-image-1 always returns base64 and rejects response_format
            return {
                "prompt": prompt,
                "model": GPT_IMAGE_1,
                "size": "1024x1024",
                "n": 1,
                "quality": "high",
            }
        return {
            "prompt": prompt,
            "size": "1024x1024",
            "quality": "standard",
            "style": "vivid",
            "n": 1,
            "response_format": "b64_json",
        }


def _secret(value: Any) -> str | None:
    if value is None:
        return None
    return value.get_secret_value() or None


class ImageModelCatalog:
    """Expose the image models whose credentials are present."""

    def __init__(self, models: list[ImageModelConfig]) -> None:
        self._models = {model.id: model for model in models}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ImageModelCatalog":
        return cls(
            [
                ImageModelConfig(
                    id=DALLE_3,
                    name="DALL-E 3",
                    description="OpenAI's DALL-E 3 model for high-quality image generation",
                    api_key=_secret(settings.dalle_api_key),
                    instance_name=settings.dalle_instance_name,
                    deployment_name=settings.dalle_deployment_name,
                    api_version=settings.dalle_api_version,
                ),
                ImageModelConfig(
                    id=GPT_IMAGE_1,
                    name="GPT-Image-1",
                    description="OpenAI's GPT-Image-1 model with advanced capabilities",
                    api_key=_secret(settings.gpt_image_api_key),
                    instance_name=settings.gpt_image_instance_name,
                    deployment_name=settings.gpt_image_deployment_name,
                    api_version=settings.gpt_image_api_version,
                ),
            ]
        )

    def available(self) -> list[ImageModelConfig]:
        return [model for model in self._models.values() if model.is_available]

    def available_ids(self) -> list[str]:
        return [model.id for model in self.available()]

    def get(self, model_id: str) -> ImageModelConfig | None:
        model = self._models.get(model_id)
        if model is None or not model.is_available:
            return None
        return model


__all__ = ["DALLE_3", "GPT_IMAGE_1", "ImageModelCatalog", "ImageModelConfig"]
