"""Model resolution and the HTTP providers behind agent and image-gen nodes."""

import json
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError, NodeExecutionError, ProviderConfigurationError
from .logging import get_logger


logger = get_logger(__name__)

PROVIDER_TYPES = ("openai", "anthropic", "google", "ollama", "openai-compatible")

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com/v1",
    "google": "https://generativelanguage.googleapis.com/v1beta/openai",
    "ollama": "http://localhost:11434/v1",
}

# Local servers usually run without credentials.
KEYLESS_PROVIDER_TYPES = ("ollama", "openai-compatible")


class ProviderSettings(BaseModel):
    """A configured model provider."""
    id: str = Field(..., description="Provider identifier used as model id prefix")
    type: str = Field("openai-compatible", description="Provider API flavour")
    name: Optional[str] = Field(None, description="Display name")
    base_url: Optional[str] = Field(None, description="API base URL, defaults per type")
    api_key: Optional[str] = Field(None, description="API key")
    enabled: bool = Field(True, description="Whether the provider may be used")

    def resolved_base_url(self) -> str:
        base_url = self.base_url or DEFAULT_BASE_URLS.get(self.type)
        if not base_url:
            raise ProviderConfigurationError(f"Provider '{self.id}' has no base URL configured")
        return base_url.rstrip("/")


class ModelProvider(ABC):
    """A backend able to stream text completions and generate images."""

    @abstractmethod
    def stream(self, model: str, prompt: str, system: str = "") -> AsyncIterator[str]:
        """Yield completion text chunks for ``prompt``."""
        raise NotImplementedError

    @abstractmethod
    async def generate_image(self, model: str, prompt: str, size: str = "1024x1024") -> str:
        """Return a URL or data URI for the generated image."""
        raise NotImplementedError


class OpenAICompatibleProvider(ModelProvider):
    """
    Talks to any server exposing the OpenAI chat-completions and images API.

    OpenAI, Ollama, Google's OpenAI endpoint and Anthropic's compatibility
    layer are all reached through this class; only authentication headers
    and default base URLs differ.
    """

    def __init__(self, settings: ProviderSettings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client
        self.base_url = settings.resolved_base_url()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.settings.api_key:
            if self.settings.type == "anthropic":
                headers["x-api-key"] = self.settings.api_key
                headers["anthropic-version"] = "2023-06-01"
            else:
                headers["Authorization"] = f"Bearer {self.settings.api_key}"
        return headers

    async def stream(self, model: str, prompt: str, system: str = "") -> AsyncIterator[str]:
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})
        payload = {"model": model, "messages": messages, "stream": True}

        async with self.client.stream(
            "POST",
            f"{self.base_url}/chat/completions",
            json=payload,
            headers=self._headers(),
        ) as response:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise NodeExecutionError(
                    f"Provider '{self.settings.id}' returned HTTP {response.status_code}",
                    details={"body": body[:500], "model": model},
                )

            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[5:].strip()
                if not data:
                    continue
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed stream event from {self.settings.id}: {data[:100]}")
                    continue
                choices = chunk.get("choices") or []
                if not choices:
                    continue
                text = (choices[0].get("delta") or {}).get("content")
                if text:
                    yield text

    async def generate_image(self, model: str, prompt: str, size: str = "1024x1024") -> str:
        response = await self.client.post(
            f"{self.base_url}/images/generations",
            json={"model": model, "prompt": prompt, "size": size, "n": 1},
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise NodeExecutionError(
                f"Provider '{self.settings.id}' returned HTTP {response.status_code} for image generation",
                details={"body": response.text[:500], "model": model},
            )

        try:
            image = response.json()["data"][0]
        except (ValueError, KeyError, IndexError, TypeError):
            raise NodeExecutionError("Image generation response did not contain an image")

        if image.get("url"):
            return image["url"]
        if image.get("b64_json"):
            return f"data:image/png;base64,{image['b64_json']}"
        raise NodeExecutionError("Image generation response did not contain an image")


class BoundModel:
    """A provider paired with one of its model names."""

    def __init__(self, provider: ModelProvider, model: str, model_id: str):
        self.provider = provider
        self.model = model
        self.model_id = model_id

    def stream(self, prompt: str, system: str = "") -> AsyncIterator[str]:
        return self.provider.stream(self.model, prompt, system)

    async def generate_image(self, prompt: str, size: str = "1024x1024") -> str:
        return await self.provider.generate_image(self.model, prompt, size)


class ModelResolver:
    """
    Resolves ``providerId:modelId`` strings to callable models.

    Every configuration problem is reported as ProviderConfigurationError
    before any request is sent.
    """

    def __init__(
        self,
        providers: Optional[List[ProviderSettings]] = None,
        default_provider: Optional[str] = None,
        default_model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0
    ):
        self._providers: Dict[str, ProviderSettings] = {p.id: p for p in (providers or [])}
        self.default_provider = default_provider
        self.default_model = default_model
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: Any, client: Optional[httpx.AsyncClient] = None) -> "ModelResolver":
        try:
            providers = [ProviderSettings(**p) for p in config.providers]
        except ValidationError as e:
            raise ConfigurationError(f"Invalid provider settings: {e}", config_key="providers")
        return cls(
            providers=providers,
            default_provider=config.default_provider,
            default_model=config.default_model,
            client=client,
            timeout=config.request_timeout,
        )

    @property
    def providers(self) -> List[ProviderSettings]:
        return list(self._providers.values())

    def add_provider(self, settings: ProviderSettings):
        if settings.type not in PROVIDER_TYPES:
            raise ProviderConfigurationError(f"Unsupported provider type '{settings.type}'")
        self._providers[settings.id] = settings

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    def split_model_id(self, model_id: Optional[str]):
        model_id = (model_id or self.default_model or "").strip()
        if not model_id:
            raise ProviderConfigurationError("No active provider: no model selected")
        if ":" in model_id:
            provider_id, model = model_id.split(":", 1)
        else:
            provider_id, model = self.default_provider, model_id
        return provider_id, model, model_id

    def resolve(self, model_id: Optional[str] = None) -> BoundModel:
        """
        Resolve a model id to a bound model.

        Args:
            model_id: ``providerId:modelId`` or a bare model name; falls back to
                the configured default model when empty

        Returns:
            BoundModel ready to stream or generate images

        Raises:
            ProviderConfigurationError: If no enabled, usable provider matches
        """
        provider_id, model, full_id = self.split_model_id(model_id)
        settings = self._providers.get(provider_id) if provider_id else None

        if settings is None:
            raise ProviderConfigurationError(
                f"No active provider for model '{full_id}'", model_id=full_id
            )
        if not settings.enabled:
            raise ProviderConfigurationError(
                f"No active provider: provider '{settings.id}' is disabled", model_id=full_id
            )
        if settings.type not in PROVIDER_TYPES:
            raise ProviderConfigurationError(
                f"No active provider: unsupported provider type '{settings.type}'", model_id=full_id
            )
        if settings.type not in KEYLESS_PROVIDER_TYPES and not settings.api_key:
            raise ProviderConfigurationError(
                f"No active provider: provider '{settings.id}' has no API key", model_id=full_id
            )
        if not model:
            raise ProviderConfigurationError(f"No model name given for provider '{settings.id}'", model_id=full_id)

        return BoundModel(OpenAICompatibleProvider(settings, self._get_client()), model, full_id)

    async def generate_image(self, prompt: str, size: str = "1024x1024", model_id: Optional[str] = None) -> str:
        return await self.resolve(model_id).generate_image(prompt, size)

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
