"""Unit tests for pinworks.core.compositor and template persistence."""

from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image
from pydantic import ValidationError

from pinworks.core.compositor import TemplateCompositor
from pinworks.core.errors import CompositingError, TemplateNotFoundError
from pinworks.core.templates import ImageSlot, LayerType, OverlayTemplate, TemplateLayer


@pytest.fixture
def base_image(temp_dir, make_png) -> Path:
    path = temp_dir / "base.png"
    path.write_bytes(make_png(100, 100, "#00FF00"))
    return path


@pytest.fixture
def compositor(test_config) -> TemplateCompositor:
    return TemplateCompositor(test_config.assets_dir)


class TestTemplateModels:
    """Test template validation."""

    def test_image_layer_requires_file(self):
        with pytest.raises(ValidationError):
            TemplateLayer(type=LayerType.LOGO)

    def test_text_layer_requires_text(self):
        with pytest.raises(ValidationError):
            TemplateLayer(type=LayerType.TEXT)

    def test_default_slot_covers_canvas(self):
        template = OverlayTemplate(name="Plain")
        assert template.slots == [ImageSlot(name="image_1", x=0, y=0, width=100, height=100)]


class TestTemplateStore:
    """Test template CRUD."""

    def test_round_trip_and_ownership(self, template_store):
        """A template resolves for its owner only."""
        template = OverlayTemplate(
            name="Banner",
            layers=[TemplateLayer(type=LayerType.TEXT_WITH_BACKGROUND, text_content="Sale", position_y=90)],
        )
        stored = template_store.create_template("user-1", template)

        resolved = template_store.resolve(stored.id, "user-1")
        assert resolved.name == "Banner"
        assert resolved.layers[0].type is LayerType.TEXT_WITH_BACKGROUND
        assert resolved.user_id == "user-1"
        with pytest.raises(TemplateNotFoundError):
            template_store.resolve(stored.id, "user-2")

    def test_delete(self, template_store):
        stored = template_store.create_template("user-1", OverlayTemplate(name="Gone"))
        assert template_store.delete_template(stored.id, "user-2") is False
        assert template_store.delete_template(stored.id, "user-1") is True
        assert template_store.list_templates("user-1") == []


class TestTemplateCompositor:
    """Test Pillow rendering of templates."""

    def test_no_template_passes_through(self, compositor, base_image, temp_dir):
        """Without a template the base image path is returned unchanged."""
        result = compositor.composite(base_image, None, (200, 300), temp_dir / "out.png")
        assert result == base_image
        assert not (temp_dir / "out.png").exists()

    def test_output_has_requested_size(self, compositor, base_image, temp_dir):
        """The final image has the job's output dimensions."""
        template = OverlayTemplate(name="Full")
        result = compositor.composite(base_image, template, (200, 300), temp_dir / "out.png")

        with Image.open(result) as image:
            assert image.size == (200, 300)
            assert image.mode == "RGB"
            assert image.getpixel((100, 150)) == (0, 255, 0)

    def test_slot_and_background(self, compositor, base_image, temp_dir):
        """Slots receive the base image; the rest shows the background colour."""
        template = OverlayTemplate(
            name="Framed",
            background_color="#FF0000",
            slots=[ImageSlot(x=25, y=25, width=50, height=50)],
        )
        result = compositor.composite(base_image, template, (200, 200), temp_dir / "out.png")

        with Image.open(result) as image:
            assert image.getpixel((5, 5)) == (255, 0, 0)
            assert image.getpixel((100, 100)) == (0, 255, 0)

    def test_text_bar_snaps_to_bottom(self, compositor, base_image, temp_dir):
        """A text bar with position_y above 66 sits at the bottom edge."""
        template = OverlayTemplate(
            name="Caption",
            layers=[
                TemplateLayer(
                    type=LayerType.TEXT_WITH_BACKGROUND,
                    text_content="Hello",
                    position_y=90,
                    background_color="#0000FF",
                )
            ],
        )
        result = compositor.composite(base_image, template, (200, 200), temp_dir / "out.png")

        with Image.open(result) as image:
            assert image.getpixel((2, 198)) == (0, 0, 255)
            assert image.getpixel((2, 2)) == (0, 255, 0)

    def test_logo_layer(self, compositor, base_image, temp_dir, test_config, make_png):
        """Logo assets are placed at their percentage box."""
        (test_config.assets_dir / "logo.png").write_bytes(make_png(10, 10, "#FFFFFF"))
        template = OverlayTemplate(
            name="Branded",
            layers=[
                TemplateLayer(
                    type=LayerType.LOGO,
                    file_path="logo.png",
                    position_x=0,
                    position_y=0,
                    width=10,
                    height=10,
                )
            ],
        )
        result = compositor.composite(base_image, template, (200, 200), temp_dir / "out.png")

        with Image.open(result) as image:
            assert image.getpixel((5, 5)) == (255, 255, 255)
            assert image.getpixel((100, 100)) == (0, 255, 0)

    def test_missing_asset_raises(self, compositor, base_image, temp_dir):
        """A missing asset is a compositing error, not a crash."""
        template = OverlayTemplate(
            name="Broken",
            layers=[TemplateLayer(type=LayerType.WATERMARK, file_path="nope.png")],
        )
        with pytest.raises(CompositingError):
            compositor.composite(base_image, template, (200, 200), temp_dir / "out.png")

    def test_asset_outside_assets_dir_rejected(self, compositor, base_image, temp_dir):
        template = OverlayTemplate(
            name="Escape",
            layers=[TemplateLayer(type=LayerType.OVERLAY_IMAGE, file_path="../base.png")],
        )
        with pytest.raises(CompositingError):
            compositor.composite(base_image, template, (200, 200), temp_dir / "out.png")
