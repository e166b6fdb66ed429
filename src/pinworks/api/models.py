"""Pydantic request models for the Pinworks API.

FastAPI uses these models for request validation and OpenAPI generation.
Responses are plain dictionaries built by the serialisers in
:mod:`pinworks.api.main`.

Models
------
ApiKeyCreateRequest
    Payload for ``POST /api/api-keys``.
TemplateCreateRequest
    Payload for ``POST /api/templates``.
BulkGenerationCreateRequest
    Payload for ``POST /api/bulk-generations``: provider selections plus
    the rows to generate.
DuplicateRequest
    Payload for ``POST /api/bulk-generations/{id}/duplicate``.
ChangeTemplateRequest
    Payload for ``POST /api/generated-pins/{id}/change-template``.
UserCreateRequest
    Payload for ``POST /api/users``.
PermissionsUpdateRequest
    Payload for ``PUT /api/users/{id}/permissions``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator

from pinworks.core.permissions import Action, Module, Role
from pinworks.core.templates import ImageSlot, TemplateLayer


class ApiKeyCreateRequest(BaseModel):
    """Request body for registering a provider API key.

    Attributes:
        name: Display name of the key.
        provider_type: Provider adapter key (``openai``, ``deepseek``,
            ``fal`` or ``ark``).
        api_key: The secret itself.  Never returned by the API.
        model_name: Optional default model used with this key.
    """

    name: str = Field(..., min_length=1, max_length=200)
    provider_type: str = Field(..., min_length=1, description="Provider adapter key.")
    api_key: str = Field(..., min_length=1)
    model_name: str | None = Field(default=None, max_length=200)


class ApiKeyUpdateRequest(BaseModel):
    """Request body for enabling or disabling an API key."""

    is_active: bool


class TemplateCreateRequest(BaseModel):
    """Request body for creating an overlay template."""

    name: str = Field(..., min_length=1, max_length=200)
    background_color: str = Field(default="#FFFFFF")
    background_image: str | None = None
    slots: list[ImageSlot] = Field(default_factory=lambda: [ImageSlot()], min_length=1)
    layers: list[TemplateLayer] = Field(default_factory=list)


class BulkRowRequest(BaseModel):
    """One row of a bulk generation request.

    Attributes:
        keywords: Base keywords for content generation.
        image_url: Source image: an http(s) URL or an ``/uploads/...``
            reference returned by ``POST /api/uploads``.
        quantity: Number of pins to generate for this row.
        title: Optional title replacing the generated ones.
        description: Optional description replacing the generated ones.
        alt_text: Optional alt text; skips alt text generation.
        scheduled_at: Optional publish time, stored as given.
    """

    keywords: str = Field(..., min_length=1)
    image_url: str = Field(..., min_length=1)
    quantity: int = Field(default=1, ge=1)
    title: str | None = None
    description: str | None = None
    alt_text: str | None = None
    scheduled_at: str | None = None

    @field_validator("keywords", "image_url")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("title", "description", "alt_text", "scheduled_at")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class BulkGenerationCreateRequest(BaseModel):
    """Request body for ``POST /api/bulk-generations``.

    Each stage takes an API key id and an optional model override.  When
    the override is absent the key's model name is used, then the
    provider's default model.
    """

    name: str = Field(..., min_length=1, max_length=200)
    image_desc_api_key_id: str = Field(..., min_length=1)
    keyword_api_key_id: str = Field(..., min_length=1)
    image_gen_api_key_id: str = Field(..., min_length=1)
    image_desc_model: str | None = None
    keyword_model: str | None = None
    image_gen_model: str | None = None
    template_id: str | None = None
    image_width: int | None = Field(default=None, ge=256, le=4096)
    image_height: int | None = Field(default=None, ge=256, le=4096)
    rows: list[BulkRowRequest] = Field(..., min_length=1)


class DuplicateRequest(BaseModel):
    """Target users receiving copies of a bulk generation."""

    target_user_ids: list[str] = Field(..., min_length=1)


class ChangeTemplateRequest(BaseModel):
    template_id: str = Field(..., min_length=1)


class UserCreateRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=320)
    name: str | None = None
    role: Role = Role.USER


class ModulePermissionRequest(BaseModel):
    module: Module
    actions: list[Action] = Field(default_factory=list)
    enabled: bool = True


class PermissionsUpdateRequest(BaseModel):
    permissions: list[ModulePermissionRequest] = Field(..., min_length=1)
