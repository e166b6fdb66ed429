"""Overlay templates: declarative layouts composited around generated images.

A template describes a canvas of the job's output size.  The canvas has a
background (a colour, optionally covered by an image), one or more named
*slots* that receive the generated base image, and an ordered stack of
*layers* drawn on top.

Positions and sizes are expressed as percentages of the canvas, so one
template renders correctly at any output size.

Layer types
-----------
- ``OVERLAY_IMAGE``: an image stretched over the full canvas at a given
  opacity (defaults to 0.1).
- ``WATERMARK`` / ``LOGO``: an image scaled to ``width`` x ``height``
  percent of the canvas (aspect preserved) with its top-left corner at
  ``position_x`` / ``position_y`` percent.
- ``TEXT``: centred text whose top edge sits at ``position_y`` percent.
- ``TEXT_WITH_BACKGROUND``: a full-width bar snapped to the top, centre or
  bottom of the canvas (``position_y`` <= 33, <= 66, otherwise) holding
  centred text.

File paths of image layers and the background image are relative to
``config.assets_dir``.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from pinworks.core.database import SQLiteStore
from pinworks.core.errors import TemplateNotFoundError
from pinworks.core.models import utcnow_iso

logger = logging.getLogger(__name__)


class LayerType(str, Enum):
    OVERLAY_IMAGE = "OVERLAY_IMAGE"
    WATERMARK = "WATERMARK"
    LOGO = "LOGO"
    TEXT = "TEXT"
    TEXT_WITH_BACKGROUND = "TEXT_WITH_BACKGROUND"

    @property
    def is_image(self) -> bool:
        return self in (LayerType.OVERLAY_IMAGE, LayerType.WATERMARK, LayerType.LOGO)


class ImageSlot(BaseModel):
    """A rectangle of the canvas that receives the generated image."""

    name: str = Field(default="image_1", min_length=1)
    x: float = Field(default=0.0, ge=0, le=100)
    y: float = Field(default=0.0, ge=0, le=100)
    width: float = Field(default=100.0, gt=0, le=100)
    height: float = Field(default=100.0, gt=0, le=100)


class TemplateLayer(BaseModel):
    """One element drawn on top of the slots."""

    type: LayerType
    file_path: str | None = Field(default=None, description="Asset path for image layers.")
    position_x: float = Field(default=50.0, ge=0, le=100)
    position_y: float = Field(default=50.0, ge=0, le=100)
    width: float = Field(default=20.0, gt=0, le=100)
    height: float = Field(default=20.0, gt=0, le=100)
    opacity: float | None = Field(default=None, ge=0, le=1)
    text_content: str | None = None
    font_size: float = Field(default=8.0, gt=0, le=50, description="Percent of canvas height.")
    font_color: str | None = None
    font_path: str | None = Field(default=None, description="TrueType font in the assets dir.")
    background_color: str | None = None

    @model_validator(mode="after")
    def _check_content(self) -> TemplateLayer:
        if self.type.is_image and not self.file_path:
            raise ValueError(f"{self.type.value} layer requires file_path")
        if not self.type.is_image and not self.text_content:
            raise ValueError(f"{self.type.value} layer requires text_content")
        return self


class OverlayTemplate(BaseModel):
    """A reusable layout owned by one user."""

    id: str = ""
    user_id: str = ""
    name: str = Field(..., min_length=1, max_length=200)
    background_color: str = "#FFFFFF"
    background_image: str | None = None
    slots: list[ImageSlot] = Field(default_factory=lambda: [ImageSlot()], min_length=1)
    layers: list[TemplateLayer] = Field(default_factory=list)
    created_at: str = ""


class TemplateStore(SQLiteStore):
    """Persist overlay templates as JSON documents."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS overlay_templates (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            definition TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_overlay_templates_user ON overlay_templates(user_id)",
    )

    def create_template(self, user_id: str, template: OverlayTemplate) -> OverlayTemplate:
        stored = template.model_copy(
            update={"id": str(uuid.uuid4()), "user_id": user_id, "created_at": utcnow_iso()}
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO overlay_templates (id, user_id, name, definition, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (stored.id, user_id, stored.name, stored.model_dump_json(), stored.created_at),
            )
        logger.info(f"Created template {stored.id} ({stored.name}) for user {user_id}")
        return stored

    def get_template(self, template_id: str) -> OverlayTemplate | None:
        with self._connect() as conn:
            record = conn.execute(
                "SELECT * FROM overlay_templates WHERE id = ?", (template_id,)
            ).fetchone()
        return _template_from_record(record) if record else None

    def list_templates(self, user_id: str) -> list[OverlayTemplate]:
        with self._connect() as conn:
            records = conn.execute(
                "SELECT * FROM overlay_templates WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [_template_from_record(r) for r in records]

    def delete_template(self, template_id: str, user_id: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM overlay_templates WHERE id = ? AND user_id = ?", (template_id, user_id)
            )
            return cursor.rowcount > 0

    def resolve(self, template_id: str, user_id: str) -> OverlayTemplate:
        """Return a template owned by *user_id*.

        Raises:
            TemplateNotFoundError: If the template is missing or foreign.
        """
        template = self.get_template(template_id)
        if template is None or template.user_id != user_id:
            raise TemplateNotFoundError(template_id)
        return template


def _template_from_record(record: sqlite3.Row) -> OverlayTemplate:
    template = OverlayTemplate.model_validate_json(record["definition"])
    return template.model_copy(
        update={"id": record["id"], "user_id": record["user_id"], "created_at": record["created_at"]}
    )
