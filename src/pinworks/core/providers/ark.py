"""BytePlus ModelArk adapter (``images/generations``)."""

from __future__ import annotations

from pinworks.core.errors import StageError
from pinworks.core.models import Stage
from pinworks.core.providers.base import ProviderAdapterBase, ProviderResult, provider_registry


class ArkAdapter(ProviderAdapterBase):
    provider_type = "ark"
    description = "BytePlus ModelArk image generation"
    stages = frozenset({Stage.IMAGE_GENERATION})
    default_models = {Stage.IMAGE_GENERATION: "seedream-3-0-t2i-250415"}

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
            "response_format": "url",
            "size": f"{width}x{height}",
            "stream": False,
            "watermark": False,
        }
        data = await self._request_json(
            "POST",
            f"{self.config.ark_base_url.rstrip('/')}/images/generations",
            stage=Stage.IMAGE_GENERATION,
            headers={"Authorization": f"Bearer {secret}", "Content-Type": "application/json"},
            payload=payload,
        )
        items = data.get("data") if isinstance(data, dict) else None
        if not items or not isinstance(items[0], dict) or not items[0].get("url"):
            raise StageError(
                "No image returned from ModelArk",
                stage=Stage.IMAGE_GENERATION.value,
                provider=self.provider_type,
                detail=data,
            )
        return ProviderResult(value=items[0]["url"], request=payload, response=data)


provider_registry.register(ArkAdapter)
