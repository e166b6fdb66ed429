"""Unit tests for pinworks.core.storage — uploads, references and downloads."""

from __future__ import annotations

import asyncio
import base64

import httpx
import pytest
from PIL import Image

from pinworks.core.errors import ConfigurationError, StageError
from pinworks.core.storage import ArtifactStorage, decode_data_url, extension_from_url


@pytest.fixture
def storage(test_config) -> ArtifactStorage:
    return ArtifactStorage(test_config)


class TestHelpers:
    def test_extension_from_url(self):
        assert extension_from_url("https://cdn.test/a/b.JPG?sig=1") == ".jpg"
        assert extension_from_url("https://cdn.test/render") == ".png"

    def test_decode_data_url(self):
        data, ext = decode_data_url("data:image/jpeg;base64," + base64.b64encode(b"xyz").decode())
        assert data == b"xyz"
        assert ext == ".jpg"


class TestUploads:
    """Test storing and referencing uploaded source images."""

    def test_save_upload_returns_reference(self, storage, make_png, test_config):
        reference = storage.save_upload("kitchen.png", make_png())

        assert reference.startswith("/uploads/upload_")
        assert reference.endswith(".png")
        assert storage.resolve_local_reference(reference).parent == test_config.uploads_dir.resolve()

    def test_save_upload_rejects_non_images(self, storage):
        with pytest.raises(ConfigurationError):
            storage.save_upload("notes.txt", b"hello")

    def test_validate_reference(self, storage, source_image):
        """http(s) URLs and existing uploads are accepted."""
        storage.validate_reference("https://example.com/a.jpg")
        storage.validate_reference(source_image)
        with pytest.raises(ConfigurationError):
            storage.validate_reference("/uploads/missing.png")
        with pytest.raises(ConfigurationError):
            storage.validate_reference("/etc/passwd")

    def test_traversal_is_not_resolved(self, storage):
        assert storage.resolve_local_reference("/uploads/../data/test.db") is None

    def test_local_reference_becomes_data_url(self, storage, source_image):
        url = storage.to_provider_url(source_image)
        assert url.startswith("data:image/png;base64,")
        assert storage.to_provider_url("https://example.com/a.jpg") == "https://example.com/a.jpg"

    def test_missing_local_reference(self, storage):
        with pytest.raises(FileNotFoundError):
            storage.to_provider_url("/uploads/missing.png")


class TestArtifacts:
    """Test artifact paths and downloads."""

    def test_paths_and_public_url(self, storage, test_config):
        path = storage.new_artifact_path("job-1", "final_0", ".png")
        assert path.parent == test_config.bulk_outputs_dir / "job-1"
        assert storage.relative_path(path).startswith("bulk/job-1/final_0_")
        assert storage.public_url(path).startswith("/generated/bulk/job-1/")
        assert storage.resolve_output(storage.relative_path(path)) == path.resolve()

    def test_artifact_names_are_unique(self, storage):
        assert storage.new_artifact_path("job-1", "x") != storage.new_artifact_path("job-1", "x")

    def test_download(self, storage, make_png):
        png = make_png()

        def handler(request):
            return httpx.Response(200, content=png)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await storage.download(client, "https://cdn.test/img.webp", "job-1", "original_0")

        path = asyncio.run(go())
        assert path.suffix == ".webp"
        assert path.read_bytes() == png

    def test_download_data_url(self, storage):
        url = "data:image/png;base64," + base64.b64encode(b"png-bytes").decode()

        async def go():
            async with httpx.AsyncClient() as client:
                return await storage.download(client, url, "job-1", "original_0")

        assert asyncio.run(go()).read_bytes() == b"png-bytes"

    def test_download_failure_is_stage_error(self, storage):
        def handler(request):
            return httpx.Response(404)

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await storage.download(client, "https://cdn.test/gone.png", "job-1", "original_0")

        with pytest.raises(StageError) as excinfo:
            asyncio.run(go())
        assert excinfo.value.stage == "download"

    def test_download_fits_to_size(self, storage, make_png):
        """Images of other dimensions are cover-fitted; matching ones are kept."""
        images = iter([make_png(64, 64), make_png(120, 180)])

        def handler(request):
            return httpx.Response(200, content=next(images))

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                fitted = await storage.download(
                    client, "https://cdn.test/a.png", "job-1", "original_0", size=(120, 180)
                )
                kept = await storage.download(
                    client, "https://cdn.test/b.png", "job-1", "original_1", size=(120, 180)
                )
                return fitted, kept

        fitted, kept = asyncio.run(go())
        with Image.open(fitted) as image:
            assert image.size == (120, 180)
            assert image.format == "PNG"
        assert kept.read_bytes() == make_png(120, 180)

    def test_undecodable_image_with_size_is_stage_error(self, storage):
        def handler(request):
            return httpx.Response(200, content=b"not an image")

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                await storage.download(
                    client, "https://cdn.test/x.png", "job-1", "original_0", size=(100, 100)
                )

        with pytest.raises(StageError, match="Failed to download"):
            asyncio.run(go())
