"""Template compositing with Pillow.

:meth:`TemplateCompositor.composite` renders an :class:`OverlayTemplate`
around a generated base image:

1. A canvas of the job's output size is filled with the template background
   colour, then covered with the background image if one is set.
2. The base image is cropped-to-fill into every image slot.
3. Layers are drawn in template order.
4. The canvas is flattened to RGB and written as a fresh PNG.  No EXIF or
   text chunks are carried over from any input.

Without a template the base image is returned untouched.

Any failure while loading assets or rendering raises
:class:`CompositingError`, which fails only the current pin.
"""

from __future__ import annotations

import logging
from pathlib import Path

from PIL import Image, ImageColor, ImageDraw, ImageFont, ImageOps, UnidentifiedImageError

from pinworks.core.errors import CompositingError
from pinworks.core.templates import LayerType, OverlayTemplate, TemplateLayer

logger = logging.getLogger(__name__)

DEFAULT_OVERLAY_OPACITY = 0.1


class TemplateCompositor:
    """Render overlay templates around generated images.

    Args:
        assets_dir: Root directory for template asset paths
    """

    def __init__(self, assets_dir: Path):
        self.assets_dir = Path(assets_dir)

    def composite(
        self,
        base_image_path: Path,
        template: OverlayTemplate | None,
        output_dims: tuple[int, int],
        output_path: Path,
    ) -> Path:
        """Produce the final artifact for one pin.

        Args:
            base_image_path: Downloaded provider image
            template: Template to apply, or None for pass-through
            output_dims: ``(width, height)`` of the canvas
            output_path: Where to write the composited PNG

        Returns:
            Path of the final image (``base_image_path`` when no template)

        Raises:
            CompositingError: If rendering fails
        """
        if template is None:
            return Path(base_image_path)

        width, height = output_dims
        try:
            canvas = Image.new("RGBA", (width, height), _color(template.background_color))
            if template.background_image:
                with Image.open(self._asset(template.background_image)) as background:
                    fitted = ImageOps.fit(background.convert("RGBA"), (width, height), Image.Resampling.LANCZOS)
                canvas.alpha_composite(fitted)

            with Image.open(base_image_path) as base:
                base_rgba = base.convert("RGBA")
            for slot in template.slots:
                box = _percent_box(slot.x, slot.y, slot.width, slot.height, width, height)
                slot_size = (max(1, box[2]), max(1, box[3]))
                _paste(canvas, ImageOps.fit(base_rgba, slot_size, Image.Resampling.LANCZOS), box[0], box[1])

            for layer in template.layers:
                self._draw_layer(canvas, layer)

            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            canvas.convert("RGB").save(output_path, format="PNG", optimize=True)
        except (OSError, ValueError, UnidentifiedImageError) as e:
            raise CompositingError(f"Failed to apply template '{template.name}': {e}") from e

        logger.debug(f"Composited {base_image_path} with template {template.id or template.name}")
        return output_path

    def _asset(self, relative: str) -> Path:
        root = self.assets_dir.resolve()
        path = (root / relative.lstrip("/")).resolve()
        if root not in path.parents:
            raise ValueError(f"Asset path escapes assets directory: {relative}")
        if not path.is_file():
            raise FileNotFoundError(f"Template asset not found: {relative}")
        return path

    def _font(self, layer: TemplateLayer, size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
        if layer.font_path:
            return ImageFont.truetype(str(self._asset(layer.font_path)), size)
        return ImageFont.load_default(size=size)

    def _draw_layer(self, canvas: Image.Image, layer: TemplateLayer) -> None:
        width, height = canvas.size

        if layer.type is LayerType.OVERLAY_IMAGE:
            with Image.open(self._asset(layer.file_path)) as source:
                overlay = source.convert("RGBA").resize((width, height), Image.Resampling.LANCZOS)
            opacity = DEFAULT_OVERLAY_OPACITY if layer.opacity is None else layer.opacity
            canvas.alpha_composite(_with_opacity(overlay, opacity))

        elif layer.type in (LayerType.WATERMARK, LayerType.LOGO):
            box = _percent_box(layer.position_x, layer.position_y, layer.width, layer.height, width, height)
            with Image.open(self._asset(layer.file_path)) as source:
                logo = ImageOps.contain(
                    source.convert("RGBA"), (max(1, box[2]), max(1, box[3])), Image.Resampling.LANCZOS
                )
            if layer.opacity is not None:
                logo = _with_opacity(logo, layer.opacity)
            _paste(canvas, logo, box[0], box[1])

        elif layer.type is LayerType.TEXT:
            font_px = max(1, int(height * layer.font_size / 100))
            font = self._font(layer, font_px)
            draw = ImageDraw.Draw(canvas)
            text = _wrap(draw, layer.text_content or "", font, int(width * 0.9))
            lines = text.count("\n") + 1
            top = int(height * layer.position_y / 100)
            draw.multiline_text(
                (width // 2, top + font_px * lines // 2 + font_px // 2),
                text,
                font=font,
                fill=_color(layer.font_color or "#000000"),
                anchor="mm",
                align="center",
            )

        elif layer.type is LayerType.TEXT_WITH_BACKGROUND:
            font_px = max(1, int(height * layer.font_size / 100))
            font = self._font(layer, font_px)
            draw = ImageDraw.Draw(canvas)
            text = _wrap(draw, layer.text_content or "", font, int(width * 0.9))
            lines = text.count("\n") + 1
            bar_height = min(height, font_px * (lines + 2))
            if layer.position_y <= 33:
                top = 0
            elif layer.position_y <= 66:
                top = (height - bar_height) // 2
            else:
                top = height - bar_height
            draw.rectangle(
                [0, top, width, top + bar_height], fill=_color(layer.background_color or "#000000")
            )
            draw.multiline_text(
                (width // 2, top + bar_height // 2),
                text,
                font=font,
                fill=_color(layer.font_color or "#FFFFFF"),
                anchor="mm",
                align="center",
            )


def _color(value: str) -> tuple[int, ...]:
    return ImageColor.getcolor(value, "RGBA")


def _percent_box(x: float, y: float, w: float, h: float, width: int, height: int) -> tuple[int, int, int, int]:
    return (
        int(width * x / 100),
        int(height * y / 100),
        int(width * w / 100),
        int(height * h / 100),
    )


def _with_opacity(image: Image.Image, opacity: float) -> Image.Image:
    alpha = image.getchannel("A").point(lambda a: int(a * opacity))
    result = image.copy()
    result.putalpha(alpha)
    return result


def _paste(canvas: Image.Image, layer: Image.Image, left: int, top: int) -> None:
    """Alpha-composite *layer* at ``(left, top)``, clipped to the canvas."""
    right = min(canvas.width, left + layer.width)
    bottom = min(canvas.height, top + layer.height)
    if right <= left or bottom <= top:
        return
    clipped = layer.crop((0, 0, right - left, bottom - top))
    canvas.alpha_composite(clipped, dest=(left, top))


def _wrap(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> str:
    lines: list[str] = []
    for paragraph in text.splitlines() or [""]:
        current = ""
        for word in paragraph.split():
            candidate = f"{current} {word}".strip()
            if current and draw.textlength(candidate, font=font) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
    return "\n".join(lines)
