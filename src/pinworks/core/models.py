"""Domain data models for bulk pin generation.

These dataclasses are the in-memory representation of what the stores
persist.  They carry no persistence logic themselves; :mod:`pinworks.core.job_store`
and :mod:`pinworks.core.credentials` convert between rows and these types.

Status values
-------------
Job-level statuses (:class:`JobStatus`) and row-level statuses
(:class:`RowStatus`) are string enums so they serialise directly into
SQLite columns and JSON responses.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pinworks.core.templates import OverlayTemplate

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle of a bulk generation job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)


class RowStatus(str, Enum):
    """Lifecycle of a single row within a job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RowStatus.COMPLETED, RowStatus.FAILED)


class Stage(str, Enum):
    """Pipeline stages recorded in stage-call audit entries."""

    IMAGE_DESCRIPTION = "image_description"
    CONTENT = "content"
    IMAGE_GENERATION = "image_generation"
    DOWNLOAD = "download"
    COMPOSITING = "compositing"
    ALT_TEXT = "alt_text"
    METADATA = "metadata"


PIN_STATUS_COMPLETED = "completed"


def utcnow_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


@dataclass
class Credential:
    """An API key registered by a user for one provider."""

    id: str
    user_id: str
    name: str
    provider_type: str
    secret: str
    model_name: str | None = None
    is_active: bool = True
    created_at: str = ""

    def to_public_dict(self) -> dict[str, Any]:
        """Serialise without exposing the full secret."""
        tail = self.secret[-4:] if len(self.secret) >= 8 else ""
        return {
            "id": self.id,
            "name": self.name,
            "provider_type": self.provider_type,
            "model_name": self.model_name,
            "is_active": self.is_active,
            "secret_hint": f"...{tail}" if tail else "****",
            "created_at": self.created_at,
        }


@dataclass
class StageCall:
    """Audit record for one provider call.

    Attributes:
        stage: :class:`Stage` value.
        provider: Provider type (``openai``, ``fal``, ...).
        model: Model identifier sent to the provider.
        request: Summary of the request payload (secrets and image bytes
            are never stored).
        response: Raw provider response, when the call succeeded.
        error: Error text, when the call failed.
        started_at: ISO timestamp of the call start.
        duration_ms: Wall time of the call.
    """

    stage: str
    provider: str = ""
    model: str = ""
    request: dict[str, Any] = field(default_factory=dict)
    response: Any = None
    error: str | None = None
    started_at: str = field(default_factory=utcnow_iso)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageCall:
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class PinContent:
    """Title, description and keywords for one pin variation."""

    title: str
    description: str
    keywords: list[str] = field(default_factory=list)


@dataclass
class BulkRow:
    """One user-specified generation unit within a job."""

    id: str
    job_id: str
    position: int
    keywords: str
    image_url: str
    quantity: int = 1
    title: str | None = None
    description: str | None = None
    alt_text: str | None = None
    scheduled_at: str | None = None
    status: RowStatus = RowStatus.PENDING
    completed_pins: int = 0
    failed_pins: int = 0
    error: str | None = None
    stage_calls: list[StageCall] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""


@dataclass
class GeneratedPin:
    """One generated artifact (image + metadata) produced for a row."""

    id: str
    row_id: str
    title: str
    description: str
    keywords: list[str] = field(default_factory=list)
    alt_text: str | None = None
    image_path: str = ""
    image_url: str = ""
    source_path: str | None = None
    template_id: str | None = None
    stage_calls: list[StageCall] = field(default_factory=list)
    status: str = PIN_STATUS_COMPLETED
    error: str | None = None
    created_at: str = ""


@dataclass
class BulkJob:
    """A bulk generation request comprising many rows."""

    id: str
    user_id: str
    name: str
    image_desc_credential_id: str
    keyword_credential_id: str
    image_gen_credential_id: str
    image_desc_model: str | None = None
    keyword_model: str | None = None
    image_gen_model: str | None = None
    template_id: str | None = None
    image_width: int = 1000
    image_height: int = 1500
    status: JobStatus = JobStatus.PENDING
    total_rows: int = 0
    completed_rows: int = 0
    failed_rows: int = 0
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class StageSelection:
    """Resolved provider credential and model for one stage."""

    credential: Credential
    model: str

    @property
    def provider_type(self) -> str:
        return self.credential.provider_type


@dataclass
class JobConfig:
    """Everything the row processor needs that is shared across rows."""

    job_id: str
    user_id: str
    image_description: StageSelection
    content: StageSelection
    image_generation: StageSelection
    width: int
    height: int
    template: OverlayTemplate | None = None


@dataclass
class RowResult:
    """Outcome of processing one row."""

    status: RowStatus
    pins: list[GeneratedPin] = field(default_factory=list)
    failed_pins: int = 0
    error: str | None = None
    stage_calls: list[StageCall] = field(default_factory=list)
