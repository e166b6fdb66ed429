"""Unit tests for pinworks.core.metadata — EXIF and PNG text embedding."""

from __future__ import annotations

import random
from datetime import datetime, timedelta

import pytest
from PIL import Image
from PIL.ExifTags import Base

from pinworks.core.metadata import CAMERAS, CITIES, MetadataEmbedder, random_camera_profile
from pinworks.core.models import PinContent


@pytest.fixture
def content() -> PinContent:
    return PinContent(
        title="Cozy Copper Kitchen",
        description="Warm copper accents for every kitchen.",
        keywords=["kitchen", "copper"],
    )


class TestRandomCameraProfile:
    """Test the randomized camera profile."""

    def test_profile_values_are_plausible(self):
        """Capture time is daytime within 180 days; GPS is near a known city."""
        now = datetime(2024, 6, 1, 12, 0, 0)
        rng = random.Random(42)
        for _ in range(50):
            profile = random_camera_profile(rng, now=now)
            assert (profile.make, profile.model, profile.lens) in CAMERAS
            assert 8 <= profile.captured_at.hour <= 17
            assert now - timedelta(days=181) < profile.captured_at <= now.replace(hour=23)
            city = next(c for c in CITIES if c[0] == profile.city)
            assert abs(profile.latitude - city[1]) <= 0.01
            assert abs(profile.longitude - city[2]) <= 0.01
            assert 10 <= profile.altitude <= 210
            assert profile.software.startswith("Adobe Photoshop Lightroom Classic 12.")

    def test_seeded_rng_is_reproducible(self):
        now = datetime(2024, 6, 1)
        first = random_camera_profile(random.Random(7), now=now)
        second = random_camera_profile(random.Random(7), now=now)
        assert first == second


class TestMetadataEmbedder:
    """Test writing metadata into final images."""

    def test_png_gets_exif_and_text_chunks(self, temp_dir, make_png, content):
        path = temp_dir / "final.png"
        path.write_bytes(make_png(40, 60))

        embedder = MetadataEmbedder(embed_camera=True, rng=random.Random(1))
        assert embedder.embed_metadata(path, content) is True

        with Image.open(path) as image:
            assert image.size == (40, 60)
            assert image.text["Title"] == "Cozy Copper Kitchen"
            assert image.text["Keywords"] == "kitchen, copper"
            exif = image.getexif()
            assert exif[Base.ImageDescription] == "Warm copper accents for every kitchen."
            assert exif[Base.Make] in {camera[0] for camera in CAMERAS}

    def test_camera_profile_can_be_disabled(self, temp_dir, make_png, content):
        path = temp_dir / "final.png"
        path.write_bytes(make_png())

        assert MetadataEmbedder(embed_camera=False).embed_metadata(path, content) is True

        with Image.open(path) as image:
            exif = image.getexif()
            assert Base.Make not in exif
            assert exif[Base.ImageDescription] == content.description

    def test_jpeg_supported(self, temp_dir, content):
        path = temp_dir / "final.jpg"
        Image.new("RGB", (32, 32), "blue").save(path, format="JPEG")

        assert MetadataEmbedder(rng=random.Random(3)).embed_metadata(path, content) is True

        with Image.open(path) as image:
            assert image.format == "JPEG"
            assert image.getexif()[Base.ImageDescription] == content.description

    def test_failure_returns_false(self, temp_dir, content):
        """Unreadable files are reported, not raised."""
        path = temp_dir / "broken.png"
        path.write_bytes(b"not an image")

        assert MetadataEmbedder().embed_metadata(path, content) is False
        assert path.read_bytes() == b"not an image"
        assert not (temp_dir / ".broken.png.tmp").exists()

    def test_oversized_image_returns_false(self, temp_dir, make_png, content, monkeypatch):
        """Pillow's decompression bomb guard is reported like any other failure."""
        path = temp_dir / "large.png"
        original = make_png(200, 200)
        path.write_bytes(original)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 10000)

        assert MetadataEmbedder().embed_metadata(path, content) is False
        assert path.read_bytes() == original
