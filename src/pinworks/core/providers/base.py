"""Base classes and registry for provider adapters.

Every external service that can serve a pipeline stage is wrapped by a
provider adapter.  Adapters share one interface with four async capabilities:

- :meth:`ProviderAdapterBase.describe_image` (image description, vision)
- :meth:`ProviderAdapterBase.generate_content` (titles/descriptions/keywords)
- :meth:`ProviderAdapterBase.generate_image` (text-to-image)
- :meth:`ProviderAdapterBase.generate_alt_text` (accessibility text, vision)

An adapter advertises which of these it implements through
:attr:`ProviderAdapterBase.stages`.  Calling an unsupported capability
raises :class:`UnsupportedStageError`.

Every capability returns a :class:`ProviderResult` carrying the parsed value
together with a request summary and the raw provider response, which the row
processor records as a stage call.  Any transport or protocol failure is
raised as :class:`StageError` with the raw error body in ``detail``.

Registry
--------
Adapter classes register themselves with the global :data:`provider_registry`
at import time, keyed by ``provider_type`` (the value stored on each
credential).  :class:`ProviderPool` instantiates adapters lazily, sharing a
single ``httpx.AsyncClient``.

Usage Example
-------------
    >>> from pinworks.core.providers import ProviderPool, provider_registry
    >>> async with httpx.AsyncClient() as client:
    ...     pool = ProviderPool(config, client)
    ...     adapter = pool.adapter_for("openai")
    ...     result = await adapter.describe_image(secret, "gpt-4o", image_url)
    ...     print(result.value)
"""

from __future__ import annotations

import json
import logging
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx

from pinworks.core.config import PinworksConfig
from pinworks.core.errors import StageError, UnsupportedStageError
from pinworks.core.models import PinContent, Stage

logger = logging.getLogger(__name__)

T = TypeVar("T")

ALT_TEXT_MAX_LENGTH = 125

DESCRIBE_PROMPT = (
    "Describe this image in detail, focusing on the main subject, colors, textures, "
    "composition, and mood. Be specific and vivid in your description."
)

CONTENT_SYSTEM_PROMPT = (
    "You are a creative Pinterest marketing expert. Generate diverse, unique variations "
    "that are distinctly different from each other. Avoid repetitive phrases and ensure "
    "each variation has its own personality and appeal. Always return valid JSON only."
)

CONTENT_PROMPT = """Based on the following image description and keywords, generate {count} Pinterest pin variations.

Image Description: {description}
Base Keywords: {keywords}

For each variation, create:
- A compelling title (30-70 characters)
- An engaging description (150-250 characters) with a call to action
- 5-8 relevant keywords

Return ONLY a valid JSON array with this exact format:
[
  {{
    "title": "Your Title Here",
    "description": "Your description here with call to action.",
    "keywords": ["keyword1", "keyword2", "keyword3", "keyword4", "keyword5"]
  }}
]"""

ALT_TEXT_PROMPT = """Generate a concise, descriptive alt text for this image for accessibility purposes.
The alt text should:
- Be maximum 125 characters
- Describe the key visual elements
- Be suitable for screen readers
- Focus on what's visible in the image

Image title: {title}

Return ONLY the alt text, nothing else."""

IMAGE_PROMPT = "Create a Pinterest-style image for: {title}. {description}"


@dataclass
class ProviderResult(Generic[T]):
    """Parsed value of a provider call plus its audit payloads."""

    value: T
    request: dict[str, Any] = field(default_factory=dict)
    response: Any = None


def build_image_prompt(content: PinContent) -> str:
    return IMAGE_PROMPT.format(title=content.title, description=content.description)


def trim_alt_text(text: str) -> str:
    """Clamp alt text to 125 characters, ending in an ellipsis when cut."""
    text = text.strip()
    if len(text) > ALT_TEXT_MAX_LENGTH:
        return text[: ALT_TEXT_MAX_LENGTH - 3] + "..."
    return text


def extract_json_array(text: str) -> list[Any]:
    """Return the first JSON array embedded in *text*.

    Completions often wrap the array in prose or Markdown fences, so every
    ``[`` is tried as a starting point until one decodes to a list.

    Raises:
        ValueError: If no JSON array is found.
    """
    decoder = json.JSONDecoder()
    start = text.find("[")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, list):
            return value
        start = text.find("[", start + 1)
    raise ValueError("No JSON array found in response")


def parse_pin_contents(text: str) -> list[PinContent]:
    """Parse a content completion into pin variations.

    Accepts ``title``/``Title``, ``description``/``Description`` and
    ``keywords``/``Keywords`` keys; keywords may be a list or a
    comma-separated string.  Entries without a title are skipped.

    Raises:
        ValueError: If no usable variation is present.
    """
    contents: list[PinContent] = []
    for item in extract_json_array(text):
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or item.get("Title") or "").strip()
        description = str(item.get("description") or item.get("Description") or "").strip()
        raw_keywords = item.get("keywords", item.get("Keywords")) or []
        if isinstance(raw_keywords, str):
            keywords = [k.strip() for k in raw_keywords.split(",") if k.strip()]
        else:
            keywords = [str(k).strip() for k in raw_keywords if str(k).strip()]
        if title:
            contents.append(PinContent(title=title, description=description, keywords=keywords))
    if not contents:
        raise ValueError("JSON array contained no pin variations")
    return contents


class ProviderAdapterBase(ABC):
    """Abstract base class for provider adapters.

    Attributes
    ----------
    provider_type : str
        Registry key, matching ``Credential.provider_type``
    description : str
        Human-readable summary
    stages : frozenset[Stage]
        Capabilities this provider implements
    default_models : dict[Stage, str]
        Model used when neither the job nor the credential names one
    """

    provider_type: str = "base"
    description: str = "Base class for provider adapters"
    stages: frozenset[Stage] = frozenset()
    default_models: dict[Stage, str] = {}

    def __init__(self, config: PinworksConfig, client: httpx.AsyncClient) -> None:
        self.config = config
        self.client = client

    @classmethod
    def supports(cls, stage: Stage) -> bool:
        return stage in cls.stages

    @classmethod
    def default_model(cls, stage: Stage) -> str | None:
        return cls.default_models.get(stage)

    async def describe_image(self, secret: str, model: str, image_url: str) -> ProviderResult[str]:
        raise self._unsupported(Stage.IMAGE_DESCRIPTION)

    async def generate_content(
        self,
        secret: str,
        model: str,
        keywords: str,
        image_description: str,
        count: int = 5,
    ) -> ProviderResult[list[PinContent]]:
        raise self._unsupported(Stage.CONTENT)

    async def generate_image(
        self,
        secret: str,
        model: str,
        prompt: str,
        width: int,
        height: int,
    ) -> ProviderResult[str]:
        """Return the URL (or ``data:`` URL) of one generated image."""
        raise self._unsupported(Stage.IMAGE_GENERATION)

    async def generate_alt_text(
        self, secret: str, model: str, image_url: str, title: str
    ) -> ProviderResult[str]:
        raise self._unsupported(Stage.ALT_TEXT)

    def _unsupported(self, stage: Stage) -> UnsupportedStageError:
        return UnsupportedStageError(
            f"Provider '{self.provider_type}' does not support {stage.value}",
            stage=stage.value,
            provider=self.provider_type,
        )

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        stage: Stage,
        headers: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        """Send a JSON request and decode the JSON response.

        Raises:
            StageError: On transport errors, non-2xx statuses, or
                non-JSON bodies.
        """
        try:
            response = await self.client.request(method, url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise StageError(
                f"{self.provider_type} request failed: {e}",
                stage=stage.value,
                provider=self.provider_type,
            ) from e

        if response.status_code >= 400:
            raise StageError(
                f"{self.provider_type} error {response.status_code}: {response.text[:300]}",
                stage=stage.value,
                provider=self.provider_type,
                detail=_safe_body(response),
            )
        try:
            return response.json()
        except ValueError as e:
            raise StageError(
                f"{self.provider_type} returned non-JSON body: {response.text[:300]}",
                stage=stage.value,
                provider=self.provider_type,
                detail=response.text[:2000],
            ) from e

    @classmethod
    def get_class_info(cls) -> dict[str, Any]:
        return {
            "provider_type": cls.provider_type,
            "description": cls.description,
            "stages": sorted(s.value for s in cls.stages),
            "default_models": {s.value: m for s, m in cls.default_models.items()},
        }


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


class ProviderRegistry:
    """Registry of provider adapter classes keyed by provider type."""

    def __init__(self) -> None:
        self._adapters: dict[str, type[ProviderAdapterBase]] = {}

    def register(self, adapter_class: type[ProviderAdapterBase]) -> None:
        provider_type = adapter_class.provider_type
        if provider_type in self._adapters:
            logger.warning(f"Provider adapter '{provider_type}' is already registered, overwriting")
        self._adapters[provider_type] = adapter_class
        logger.debug(f"Registered provider adapter: {provider_type}")

    def instantiate(
        self, provider_type: str, config: PinworksConfig, client: httpx.AsyncClient
    ) -> ProviderAdapterBase:
        """Create an adapter instance.

        Raises:
            KeyError: If *provider_type* is not registered
        """
        if provider_type not in self._adapters:
            available = ", ".join(self.list_available())
            raise KeyError(f"Provider '{provider_type}' not found. Available providers: {available}")
        return self._adapters[provider_type](config=config, client=client)

    def get_adapter_class(self, provider_type: str) -> type[ProviderAdapterBase] | None:
        return self._adapters.get(provider_type)

    def list_available(self) -> list[str]:
        return list(self._adapters.keys())

    def supports(self, provider_type: str, stage: Stage) -> bool:
        adapter_class = self._adapters.get(provider_type)
        return adapter_class is not None and adapter_class.supports(stage)

    def get_adapter_info(self, provider_type: str) -> dict[str, Any] | None:
        adapter_class = self._adapters.get(provider_type)
        return adapter_class.get_class_info() if adapter_class else None


class ProviderPool:
    """Lazily instantiated adapters sharing one HTTP client."""

    def __init__(
        self,
        config: PinworksConfig,
        client: httpx.AsyncClient,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.registry = registry or provider_registry
        self._instances: dict[str, ProviderAdapterBase] = {}

    def adapter_for(self, provider_type: str) -> ProviderAdapterBase:
        if provider_type not in self._instances:
            self._instances[provider_type] = self.registry.instantiate(
                provider_type, self.config, self.client
            )
        return self._instances[provider_type]


# Global provider registry instance
provider_registry = ProviderRegistry()
