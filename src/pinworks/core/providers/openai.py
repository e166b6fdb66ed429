"""OpenAI adapter: vision description, content, alt text and image generation.

Also provides :class:`ChatCompletionsAdapter`, the shared implementation of
the OpenAI-compatible ``/chat/completions`` protocol reused by DeepSeek.
"""

from __future__ import annotations

import logging
from typing import Any

from pinworks.core.errors import StageError
from pinworks.core.models import PinContent, Stage
from pinworks.core.providers.base import (
    ALT_TEXT_PROMPT,
    CONTENT_PROMPT,
    CONTENT_SYSTEM_PROMPT,
    DESCRIBE_PROMPT,
    ProviderAdapterBase,
    ProviderResult,
    parse_pin_contents,
    provider_registry,
    trim_alt_text,
)

logger = logging.getLogger(__name__)

# Sizes the images endpoint accepts, per model family.
IMAGE_SIZES: dict[str, tuple[tuple[int, int], ...]] = {
    "gpt-image": ((1024, 1024), (1536, 1024), (1024, 1536)),
    "dall-e-3": ((1024, 1024), (1792, 1024), (1024, 1792)),
    "dall-e-2": ((256, 256), (512, 512), (1024, 1024)),
}


def image_size_for(model: str, width: int, height: int) -> str:
    """Pick the supported size closest in aspect ratio to ``width x height``.

    Ties go to the size closest in area.  Unknown models use the
    ``gpt-image`` sizes.
    """
    sizes = IMAGE_SIZES["gpt-image"]
    for family, candidates in IMAGE_SIZES.items():
        if model.startswith(family):
            sizes = candidates
            break
    ratio = width / height
    best = min(sizes, key=lambda s: (abs(s[0] / s[1] - ratio), abs(s[0] * s[1] - width * height)))
    return f"{best[0]}x{best[1]}"


def _summarize_image(image_url: str) -> str:
    # data URLs can be megabytes; keep only the header in audit records
    if image_url.startswith("data:"):
        return image_url.split(",", 1)[0] + ",..."
    return image_url


class ChatCompletionsAdapter(ProviderAdapterBase):
    """Adapter for any OpenAI-compatible chat completions endpoint."""

    @property
    def base_url(self) -> str:
        raise NotImplementedError

    def _headers(self, secret: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {secret}", "Content-Type": "application/json"}

    async def _chat(self, secret: str, payload: dict[str, Any], stage: Stage) -> tuple[str, Any]:
        data = await self._request_json(
            "POST",
            f"{self.base_url}/chat/completions",
            stage=stage,
            headers=self._headers(secret),
            payload=payload,
        )
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise StageError(
                "Chat completion response has no message content",
                stage=stage.value,
                provider=self.provider_type,
                detail=data,
            ) from e
        if not isinstance(content, str) or not content.strip():
            raise StageError(
                "Chat completion returned empty content",
                stage=stage.value,
                provider=self.provider_type,
                detail=data,
            )
        return content, data

    async def generate_content(
        self,
        secret: str,
        model: str,
        keywords: str,
        image_description: str,
        count: int = 5,
    ) -> ProviderResult[list[PinContent]]:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": CONTENT_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": CONTENT_PROMPT.format(
                        count=count, description=image_description, keywords=keywords
                    ),
                },
            ],
            "temperature": 0.9,
            "max_tokens": 2000,
        }
        text, data = await self._chat(secret, payload, Stage.CONTENT)
        try:
            contents = parse_pin_contents(text)
        except ValueError as e:
            raise StageError(
                str(e), stage=Stage.CONTENT.value, provider=self.provider_type, detail=data
            ) from e

        logger.info(f"{self.provider_type} generated {len(contents)} content variations")
        request = {
            "endpoint": f"{self.base_url}/chat/completions",
            "keywords": keywords,
            "image_description": image_description[:100],
            "count": count,
        }
        return ProviderResult(value=contents, request=request, response=data)


class OpenAIAdapter(ChatCompletionsAdapter):
    """OpenAI chat (vision) and image generation."""

    provider_type = "openai"
    description = "OpenAI chat completions, vision and image generation"
    stages = frozenset(
        {Stage.IMAGE_DESCRIPTION, Stage.CONTENT, Stage.IMAGE_GENERATION, Stage.ALT_TEXT}
    )
    default_models = {
        Stage.IMAGE_DESCRIPTION: "gpt-4o",
        Stage.CONTENT: "gpt-4o",
        Stage.IMAGE_GENERATION: "gpt-image-1",
        Stage.ALT_TEXT: "gpt-4o",
    }

    @property
    def base_url(self) -> str:
        return self.config.openai_base_url.rstrip("/")

    async def describe_image(self, secret: str, model: str, image_url: str) -> ProviderResult[str]:
        payload = {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": DESCRIBE_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url}},
                    ],
                }
            ],
            "max_tokens": 500,
        }
        text, data = await self._chat(secret, payload, Stage.IMAGE_DESCRIPTION)
        request = {"image_url": _summarize_image(image_url), "max_tokens": 500}
        return ProviderResult(value=text.strip(), request=request, response=data)

    async def generate_alt_text(
        self, secret: str, model: str, image_url: str, title: str
    ) -> ProviderResult[str]:
        payload = {
            "model": model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ALT_TEXT_PROMPT.format(title=title)},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "low"}},
                    ],
                }
            ],
            "max_tokens": 100,
        }
        text, data = await self._chat(secret, payload, Stage.ALT_TEXT)
        request = {"image_url": _summarize_image(image_url), "title": title}
        return ProviderResult(value=trim_alt_text(text), request=request, response=data)

    async def generate_image(
        self,
        secret: str,
        model: str,
        prompt: str,
        width: int,
        height: int,
    ) -> ProviderResult[str]:
        payload = {
            "model": model,
            "prompt": prompt,
            "n": 1,
            "size": image_size_for(model, width, height),
        }
        data = await self._request_json(
            "POST",
            f"{self.base_url}/images/generations",
            stage=Stage.IMAGE_GENERATION,
            headers=self._headers(secret),
            payload=payload,
        )
        items = data.get("data") if isinstance(data, dict) else None
        first = items[0] if items and isinstance(items[0], dict) else {}
        if first.get("url"):
            url = first["url"]
        elif first.get("b64_json"):
            url = f"data:image/png;base64,{first['b64_json']}"
        else:
            raise StageError(
                "No image returned from OpenAI",
                stage=Stage.IMAGE_GENERATION.value,
                provider=self.provider_type,
                detail=data,
            )
        # b64 payloads are dropped from the audit copy
        audit = {k: v for k, v in data.items() if k != "data"}
        audit["data"] = [{k: v for k, v in item.items() if k != "b64_json"} for item in items]
        return ProviderResult(value=url, request=payload, response=audit)


provider_registry.register(OpenAIAdapter)
