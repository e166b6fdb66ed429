"""fal.ai adapter using the queue API.

A generation is submitted to ``{fal_queue_url}/{model}``; the response names
a ``status_url`` and a ``response_url``.  The status URL is polled every
``config.poll_interval`` seconds until the request is ``COMPLETED`` (then the
result is fetched from the response URL), reports a failure, or
``config.poll_max_wait`` elapses.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from pinworks.core.errors import StageError
from pinworks.core.models import Stage
from pinworks.core.providers.base import ProviderAdapterBase, ProviderResult, provider_registry

logger = logging.getLogger(__name__)

_FAILED_STATES = {"failed", "error", "cancelled"}


class FalAdapter(ProviderAdapterBase):
    provider_type = "fal"
    description = "fal.ai queue-based image generation"
    stages = frozenset({Stage.IMAGE_GENERATION})
    default_models = {Stage.IMAGE_GENERATION: "fal-ai/flux-pro/v1.1"}

    def _headers(self, secret: str) -> dict[str, str]:
        return {"Authorization": f"Key {secret}", "Content-Type": "application/json"}

    async def generate_image(
        self,
        secret: str,
        model: str,
        prompt: str,
        width: int,
        height: int,
    ) -> ProviderResult[str]:
        payload = {
            "prompt": prompt,
            "image_size": {"width": width, "height": height},
            "num_inference_steps": 30,
            "num_images": 1,
            "seed": random.randint(0, 99999),
        }
        headers = self._headers(secret)
        submit_url = f"{self.config.fal_queue_url.rstrip('/')}/{model}"

        submitted = await self._request_json(
            "POST", submit_url, stage=Stage.IMAGE_GENERATION, headers=headers, payload=payload
        )
        # Synchronous endpoints answer with the result directly
        if _first_image_url(submitted):
            return ProviderResult(value=_first_image_url(submitted), request=payload, response=submitted)

        status_url = submitted.get("status_url") if isinstance(submitted, dict) else None
        response_url = submitted.get("response_url") if isinstance(submitted, dict) else None
        if not status_url or not response_url:
            raise StageError(
                "fal.ai submit response has no status_url/response_url",
                stage=Stage.IMAGE_GENERATION.value,
                provider=self.provider_type,
                detail=submitted,
            )
        logger.info(f"Submitted fal.ai request {submitted.get('request_id')} for {model}")

        await self._wait_until_complete(status_url, headers)

        result = await self._request_json(
            "GET", response_url, stage=Stage.IMAGE_GENERATION, headers=headers
        )
        url = _first_image_url(result)
        if not url:
            raise StageError(
                "No images returned from fal.ai",
                stage=Stage.IMAGE_GENERATION.value,
                provider=self.provider_type,
                detail=result,
            )
        return ProviderResult(value=url, request=payload, response=result)

    async def _wait_until_complete(self, status_url: str, headers: dict[str, str]) -> None:
        waited = 0.0
        while waited < self.config.poll_max_wait:
            status_payload = await self._request_json(
                "GET", status_url, stage=Stage.IMAGE_GENERATION, headers=headers
            )
            status = str(status_payload.get("status", "")).lower()
            if status == "completed":
                return
            if status in _FAILED_STATES:
                raise StageError(
                    f"fal.ai generation {status}",
                    stage=Stage.IMAGE_GENERATION.value,
                    provider=self.provider_type,
                    detail=status_payload,
                )
            logger.debug(f"fal.ai status {status or 'unknown'} after {waited:.0f}s")
            await asyncio.sleep(self.config.poll_interval)
            waited += self.config.poll_interval

        raise StageError(
            f"fal.ai generation timed out after {self.config.poll_max_wait:.0f}s",
            stage=Stage.IMAGE_GENERATION.value,
            provider=self.provider_type,
        )


def _first_image_url(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    images = payload.get("images") or []
    if images and isinstance(images[0], dict) and images[0].get("url"):
        return images[0]["url"]
    return None


provider_registry.register(FalAdapter)
