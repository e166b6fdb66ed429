"""Shared pytest fixtures for Pinworks tests."""

import asyncio
import io
import json
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator

import httpx
import pytest
from PIL import Image

from pinworks.core.config import PinworksConfig
from pinworks.core.credentials import CredentialStore
from pinworks.core.job_store import JobStore
from pinworks.core.permissions import UserStore
from pinworks.core.templates import TemplateStore


def _png(width: int = 64, height: int = 64, color: str = "#CC6633") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeProviderAPI:
    """In-memory stand-in for the OpenAI, DeepSeek, fal.ai and ARK endpoints.

    Attach :meth:`handler` to an ``httpx.MockTransport``.  Chat completion
    requests are told apart by their messages: a system message means
    content generation, otherwise the prompt text separates image
    description from alt text.

    Attributes:
        requests: Every request seen, in order.
        fail: Stage names (``image_description``, ``content``, ``alt_text``,
            ``image_generation``) answered with HTTP 500.
        image_failures: Number of upcoming image generations to fail.
        content_text: Raw completion text returned for content generation.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail: set[str] = set()
        self.image_failures = 0
        self.images_generated = 0
        self.description = "A bright kitchen with copper pans hanging over a wooden table"
        self.alt_text = "Copper pans hanging above a wooden kitchen table"
        self.variations = [
            {
                "title": "Cozy Copper Kitchen Ideas",
                "description": "Warm up your kitchen with copper accents. Save for later!",
                "keywords": ["kitchen", "copper", "decor"],
            },
            {
                "title": "Rustic Kitchen Inspiration",
                "description": "Wooden tables and copper pans for a rustic look. Pin it now!",
                "keywords": ["rustic", "kitchen"],
            },
        ]
        self.content_text: str | None = None

    # -- Inspection ------------------------------------------------------

    def chat_payloads(self, stage: str) -> list[dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith("/chat/completions")
            and self.chat_stage(json.loads(r.content)) == stage
        ]

    @staticmethod
    def chat_stage(payload: dict) -> str:
        messages = payload["messages"]
        if messages[0]["role"] == "system":
            return "content"
        text = messages[0]["content"][0]["text"]
        return "alt_text" if text.startswith("Generate a concise") else "image_description"

    # -- Transport -------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "images.test":
            return httpx.Response(200, content=_png(), headers={"content-type": "image/png"})

        if path.endswith("/chat/completions"):
            payload = json.loads(request.content)
            stage = self.chat_stage(payload)
            if stage in self.fail:
                return httpx.Response(500, json={"error": {"message": f"{stage} unavailable"}})
            if stage == "content":
                text = self.content_text
                if text is None:
                    text = "Here are your variations:\n" + json.dumps(self.variations)
            elif stage == "alt_text":
                text = self.alt_text
            else:
                text = self.description
            return httpx.Response(
                200,
                json={"id": "chatcmpl-1", "choices": [{"message": {"role": "assistant", "content": text}}]},
            )

        if path.endswith("/images/generations") or host == "fal.test":
            if "image_generation" in self.fail or self.image_failures > 0:
                self.image_failures = max(0, self.image_failures - 1)
                return httpx.Response(500, json={"error": {"message": "generation failed"}})
            self.images_generated += 1
            url = f"https://images.test/gen/{self.images_generated}.png"
            if host == "fal.test":
                return httpx.Response(200, json={"images": [{"url": url}], "seed": 7})
            return httpx.Response(200, json={"created": 1, "data": [{"url": url}]})

        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PinworksConfig:
    """Create a test configuration with temporary directories.

    Provider endpoints point at ``*.test`` hosts served by
    :class:`FakeProviderAPI`.

    Args:
        temp_dir: Temporary directory from fixture

    Returns:
        PinworksConfig instance for testing
    """
    return PinworksConfig(
        data_dir=temp_dir / "data",
        database_path=temp_dir / "data" / "test.db",
        outputs_dir=temp_dir / "outputs",
        uploads_dir=temp_dir / "uploads",
        assets_dir=temp_dir / "assets",
        public_base_url="https://pins.example.com",
        default_width=512,
        default_height=768,
        openai_base_url="https://openai.test/v1",
        deepseek_base_url="https://deepseek.test/v1",
        fal_queue_url="https://fal.test",
        ark_base_url="https://ark.test/api/v3",
        poll_interval=0.01,
        poll_max_wait=0.5,
        http_timeout=5.0,
        admin_user_id="admin",
        admin_email="admin@example.com",
    )


@pytest.fixture
def job_store(test_config: PinworksConfig) -> JobStore:
    return JobStore(test_config.database_path)


@pytest.fixture
def credential_store(test_config: PinworksConfig) -> CredentialStore:
    return CredentialStore(test_config.database_path)


@pytest.fixture
def template_store(test_config: PinworksConfig) -> TemplateStore:
    return TemplateStore(test_config.database_path)


@pytest.fixture
def user_store(test_config: PinworksConfig) -> UserStore:
    return UserStore(test_config.database_path)


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    """Factory returning PNG bytes of a solid-colour image."""
    return _png


@pytest.fixture
def source_image(test_config: PinworksConfig) -> str:
    """Store a source image in the uploads directory.

    Returns:
        The ``/uploads/...`` reference of the image.
    """
    (test_config.uploads_dir / "source.png").write_bytes(_png(80, 120))
    return "/uploads/source.png"


@pytest.fixture
def fake_api() -> FakeProviderAPI:
    return FakeProviderAPI()


@pytest.fixture
def http_client(fake_api: FakeProviderAPI) -> Generator[httpx.AsyncClient, None, None]:
    """AsyncClient whose requests are answered by ``fake_api``."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(fake_api.handler))
    yield client
    asyncio.run(client.aclose())
