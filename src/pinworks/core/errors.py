"""Exception hierarchy for Pinworks.

Errors fall into four groups, each handled at a different boundary:

- **Configuration errors** (:class:`ConfigurationError` and subclasses) are
  raised while validating a job definition and surface synchronously to the
  HTTP caller before any row is created.
- **Stage errors** (:class:`StageError`, :class:`CompositingError`) are
  raised by provider adapters and the compositor.  The row processor catches
  them and records them against the row or pin.
- **Persistence errors** (:class:`JobStoreError`) wrap ``sqlite3.Error`` and
  propagate out of the orchestrator to the queue worker, which logs them.
- **Lookup/state errors** (:class:`JobNotFoundError`, :class:`JobActiveError`)
  are translated into 404/409 responses by the API layer.
"""

from __future__ import annotations

from typing import Any


class PinworksError(Exception):
    """Base class for all Pinworks errors."""


class ConfigurationError(PinworksError):
    """A job definition or its referenced resources are invalid."""


class CredentialNotFoundError(ConfigurationError):
    """The credential is missing, inactive, or owned by another user."""

    def __init__(self, credential_id: str):
        super().__init__(f"API key not found: {credential_id}")
        self.credential_id = credential_id


class TemplateNotFoundError(ConfigurationError):
    """The overlay template is missing or owned by another user."""

    def __init__(self, template_id: str):
        super().__init__(f"Template not found: {template_id}")
        self.template_id = template_id


class StageError(PinworksError):
    """A provider call for a pipeline stage failed.

    Attributes:
        stage: Pipeline stage name (``image_description``, ``content``, ...).
        provider: Provider type that served the call.
        detail: Raw provider error payload or text, kept for audit.
    """

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        provider: str = "",
        detail: Any = None,
    ):
        super().__init__(message)
        self.stage = stage
        self.provider = provider
        self.detail = detail


class UnsupportedStageError(StageError):
    """The provider has no implementation for the requested stage."""


class CompositingError(PinworksError):
    """Rendering a template around a generated image failed."""


class JobStoreError(PinworksError):
    """The job store could not read or write state."""


class JobNotFoundError(PinworksError):
    """No job with the given id exists."""

    def __init__(self, job_id: str):
        super().__init__(f"Bulk generation not found: {job_id}")
        self.job_id = job_id


class JobActiveError(PinworksError):
    """The job, or one of its rows, is still running and cannot be deleted."""

    def __init__(self, job_id: str, status: str, message: str | None = None):
        super().__init__(message or f"Bulk generation {job_id} is {status}; cancel it first")
        self.job_id = job_id
        self.status = status


class UserNotFoundError(PinworksError):
    """No user with the given id exists."""

    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id
