"""Pinworks - FastAPI Application.

This module is the single entry point for the web application.  It defines
the FastAPI ``app`` instance, all REST API routes, and the ``main()`` CLI
function that launches the uvicorn server.

Architecture
------------
- **Persistence** is a single SQLite database shared by the job, credential,
  template and user stores.
- **Bulk generation** is asynchronous: ``POST /api/bulk-generations``
  validates the request, stores the job and enqueues its id on the
  in-process :class:`~pinworks.core.job_queue.JobQueue`.  Clients poll
  ``GET /api/bulk-generations/{id}`` for progress.
- **Provider calls** share one ``httpx.AsyncClient`` created in the lifespan.
- **Artifacts** (generated images and uploads) are served by FastAPI's
  ``StaticFiles`` at ``/generated/...`` and ``/uploads/...``.
- **Identity** comes from the ``X-User-Id`` header; every route except the
  health check runs the permission policy.

Endpoints
---------
========  ========================================  ==============================
Method    Path                                      Purpose
========  ========================================  ==============================
GET       ``/api/health``                           Liveness and version
GET       ``/api/providers``                        Registered provider adapters
POST      ``/api/uploads``                          Store a source image
GET       ``/api/api-keys``                         List the caller's API keys
POST      ``/api/api-keys``                         Register an API key
PATCH     ``/api/api-keys/{id}``                    Enable or disable an API key
DELETE    ``/api/api-keys/{id}``                    Remove an API key
GET       ``/api/templates``                        List overlay templates
POST      ``/api/templates``                        Create an overlay template
GET       ``/api/templates/{id}``                   Single template
DELETE    ``/api/templates/{id}``                   Remove a template
GET       ``/api/bulk-generations``                 Paginated job history
POST      ``/api/bulk-generations``                 Create and enqueue a job
GET       ``/api/bulk-generations/{id}``            Job with rows and pins
DELETE    ``/api/bulk-generations/{id}``            Cancel (active) or delete
POST      ``/api/bulk-generations/{id}/duplicate``  Copy a job to other users
GET       ``/api/bulk-generations/{id}/download``   ZIP export
GET       ``/api/bulk-generations/{id}/export-csv`` Pinterest CSV export
POST      ``/api/pins/{id}/change-template``        Re-apply a template to a pin
GET       ``/api/logs``                             Caller's activity log
GET       ``/api/permissions``                      Caller's permissions
GET       ``/api/users``                            List users
POST      ``/api/users``                            Create a user
PUT       ``/api/users/{id}/permissions``           Set module permissions
========  ========================================  ==============================

Usage
-----
CLI (installed entry point)::

    pinworks

Direct invocation::

    python -m pinworks.api.main
"""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from typing import Any

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles

from pinworks import __version__
from pinworks.api.models import (
    ApiKeyCreateRequest,
    ApiKeyUpdateRequest,
    BulkGenerationCreateRequest,
    ChangeTemplateRequest,
    DuplicateRequest,
    PermissionsUpdateRequest,
    TemplateCreateRequest,
    UserCreateRequest,
)
from pinworks.api.security import get_current_user, require_admin, require_permission
from pinworks.core.activity_log import ActivityLogStore, LogLevel, LogModule
from pinworks.core.compositor import TemplateCompositor
from pinworks.core.config import PinworksConfig, config
from pinworks.core.credentials import CredentialStore
from pinworks.core.errors import (
    CompositingError,
    ConfigurationError,
    CredentialNotFoundError,
    JobActiveError,
    JobNotFoundError,
    JobStoreError,
    TemplateNotFoundError,
    UserNotFoundError,
)
from pinworks.core.exports import build_csv, build_zip
from pinworks.core.job_queue import JobQueue
from pinworks.core.job_store import JobStore
from pinworks.core.metadata import MetadataEmbedder
from pinworks.core.models import BulkJob, BulkRow, GeneratedPin, JobStatus
from pinworks.core.orchestrator import BulkJobOrchestrator, resolve_job_config
from pinworks.core.permissions import Action, Module, PermissionPolicy, Role, User, UserStore
from pinworks.core.providers import ProviderPool, ProviderRegistry, provider_registry
from pinworks.core.row_processor import RowProcessor
from pinworks.core.storage import ArtifactStorage
from pinworks.core.templates import OverlayTemplate, TemplateStore

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Objects shared by all requests, created in the lifespan."""

    config: PinworksConfig
    registry: ProviderRegistry
    jobs: JobStore
    credentials: CredentialStore
    templates: TemplateStore
    users: UserStore
    policy: PermissionPolicy
    storage: ArtifactStorage
    row_processor: RowProcessor
    activity: ActivityLogStore
    queue: JobQueue
    http_client: httpx.AsyncClient


def _services(request: Request) -> AppServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Serialisation helpers.
# ---------------------------------------------------------------------------


def _job_dict(job: BulkJob) -> dict[str, Any]:
    data = asdict(job)
    data["status"] = job.status.value
    processed = job.completed_rows + job.failed_rows
    data["progress"] = round(100 * processed / job.total_rows) if job.total_rows else 0
    return data


def _row_dict(row: BulkRow, pins: list[GeneratedPin]) -> dict[str, Any]:
    data = asdict(row)
    data["status"] = row.status.value
    data["pins"] = [asdict(pin) for pin in pins]
    return data


def _user_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role.value,
        "created_at": user.created_at,
    }


def _export_filename(job: BulkJob, extension: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9_-]+", "_", job.name).strip("_") or job.id
    return f"bulk-{stem}{extension}"


def _visible_job(services: AppServices, job_id: str, user: User) -> BulkJob:
    """Return a job the caller owns (or any job, for admins).

    Raises:
        JobNotFoundError: If the job does not exist or belongs to another user.
    """
    job = services.jobs.get_job(job_id)
    if job.user_id != user.id and not user.is_admin:
        raise JobNotFoundError(job_id)
    return job


def _remove_job_artifacts(services: AppServices, job_id: str) -> None:
    """Delete a job's artifact directory unless a duplicate still uses it."""
    job_dir = services.config.bulk_outputs_dir / job_id
    prefix = services.storage.relative_path(job_dir) + "/"
    if services.jobs.count_pins_under(prefix):
        logger.info(f"Keeping artifacts of job {job_id}: shared with a duplicate")
        return
    shutil.rmtree(job_dir, ignore_errors=True)


# ---------------------------------------------------------------------------
# Route handlers.
# ---------------------------------------------------------------------------

router = APIRouter(prefix="/api")


@router.get("/health")
async def health(request: Request) -> dict:
    """Return service status; requires no identity."""
    services = _services(request)
    return {
        "status": "ok",
        "version": __version__,
        "queue_running": services.queue.is_running,
    }


@router.get("/providers")
async def list_providers(
    request: Request,
    user: User = Depends(require_permission(Module.API_KEYS, Action.VIEW)),
) -> dict:
    """List registered provider adapters and the stages they serve."""
    registry = _services(request).registry
    return {"providers": [registry.get_adapter_info(name) for name in registry.list_available()]}


@router.post("/uploads", status_code=201)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.CREATE)),
) -> dict:
    """Store a source image for use as a row's ``image_url``.

    Returns:
        Dictionary with the ``image_url`` reference (``/uploads/...``).

    Raises:
        HTTPException: 413 if the file exceeds ``max_upload_bytes``; 400 if
            it is not an image.
    """
    services = _services(request)
    data = await file.read()
    if len(data) > services.config.max_upload_bytes:
        raise HTTPException(status_code=413, detail="Uploaded file is too large")
    image_url = services.storage.save_upload(file.filename or "upload", data)
    return {"image_url": image_url}


# --- API keys --------------------------------------------------------------


@router.get("/api-keys")
async def list_api_keys(
    request: Request,
    user: User = Depends(require_permission(Module.API_KEYS, Action.VIEW)),
) -> dict:
    credentials = _services(request).credentials.list_credentials(user.id)
    return {"api_keys": [c.to_public_dict() for c in credentials]}


@router.post("/api-keys", status_code=201)
async def create_api_key(
    req: ApiKeyCreateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.API_KEYS, Action.CREATE)),
) -> dict:
    """Register a provider API key for the caller.

    Raises:
        HTTPException: 400 if the provider type is not registered.
    """
    services = _services(request)
    if services.registry.get_adapter_class(req.provider_type) is None:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown provider '{req.provider_type}'. "
            f"Available: {services.registry.list_available()}",
        )
    credential = services.credentials.create_credential(
        user.id, req.name, req.provider_type, req.api_key, req.model_name
    )
    services.activity.log(
        user.id,
        LogLevel.SUCCESS,
        LogModule.API_KEY,
        "create",
        f"API key added: {credential.name}",
        resource_id=credential.id,
        details={"provider_type": credential.provider_type},
    )
    return credential.to_public_dict()


@router.patch("/api-keys/{credential_id}")
async def update_api_key(
    credential_id: str,
    req: ApiKeyUpdateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.API_KEYS, Action.EDIT)),
) -> dict:
    """Enable or disable an API key.  Jobs cannot resolve disabled keys."""
    services = _services(request)
    credentials = services.credentials
    if not credentials.set_active(credential_id, user.id, req.is_active):
        raise HTTPException(status_code=404, detail="API key not found")
    services.activity.log(
        user.id,
        LogLevel.INFO,
        LogModule.API_KEY,
        "update",
        f"API key {'enabled' if req.is_active else 'disabled'}",
        resource_id=credential_id,
    )
    return credentials.get_credential(credential_id).to_public_dict()


@router.delete("/api-keys/{credential_id}")
async def delete_api_key(
    credential_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.API_KEYS, Action.DELETE)),
) -> dict:
    services = _services(request)
    if not services.credentials.delete_credential(credential_id, user.id):
        raise HTTPException(status_code=404, detail="API key not found")
    services.activity.log(
        user.id, LogLevel.INFO, LogModule.API_KEY, "delete", "API key removed", resource_id=credential_id
    )
    return {"success": True, "id": credential_id}


# --- Templates -------------------------------------------------------------


@router.get("/templates")
async def list_templates(
    request: Request,
    user: User = Depends(require_permission(Module.TEMPLATES, Action.VIEW)),
) -> dict:
    templates = _services(request).templates.list_templates(user.id)
    return {"templates": [t.model_dump() for t in templates]}


@router.post("/templates", status_code=201)
async def create_template(
    req: TemplateCreateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.TEMPLATES, Action.CREATE)),
) -> dict:
    services = _services(request)
    template = OverlayTemplate(**req.model_dump())
    stored = services.templates.create_template(user.id, template)
    services.activity.log(
        user.id,
        LogLevel.SUCCESS,
        LogModule.TEMPLATE,
        "create",
        f"Template created: {stored.name}",
        resource_id=stored.id,
    )
    return stored.model_dump()


@router.get("/templates/{template_id}")
async def get_template(
    template_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.TEMPLATES, Action.VIEW)),
) -> dict:
    return _services(request).templates.resolve(template_id, user.id).model_dump()


@router.delete("/templates/{template_id}")
async def delete_template(
    template_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.TEMPLATES, Action.DELETE)),
) -> dict:
    services = _services(request)
    if not services.templates.delete_template(template_id, user.id):
        raise TemplateNotFoundError(template_id)
    services.activity.log(
        user.id, LogLevel.INFO, LogModule.TEMPLATE, "delete", "Template deleted", resource_id=template_id
    )
    return {"success": True, "id": template_id}


# --- Bulk generations ------------------------------------------------------


@router.get("/bulk-generations")
async def list_bulk_generations(
    request: Request,
    page: int = 1,
    per_page: int = 20,
    status: JobStatus | None = None,
    user_id: str | None = None,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.VIEW)),
) -> dict:
    """Return a paginated job history, newest first.

    Non-admin callers always see their own jobs.  Admins see every job, or
    one user's jobs when ``user_id`` is given.

    Returns:
        Dictionary with keys ``total``, ``page``, ``per_page``, ``pages``,
        and ``jobs``.
    """
    owner = user_id if user.is_admin else user.id
    page = max(1, page)
    per_page = max(1, min(100, per_page))
    jobs, total = _services(request).jobs.list_jobs(
        user_id=owner, status=status, page=page, per_page=per_page
    )
    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page if total > 0 else 1,
        "jobs": [_job_dict(job) for job in jobs],
    }


@router.post("/bulk-generations", status_code=201)
async def create_bulk_generation(
    req: BulkGenerationCreateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.CREATE)),
) -> dict:
    """Validate, persist and enqueue a bulk generation job.

    Everything that can be checked up front is checked here, so a job that
    is accepted only fails later because of provider or file errors.

    Raises:
        HTTPException: 400 for too many rows, a quantity above the limit, an
            unusable image reference or a provider that cannot serve its
            stage; 404 for an unknown API key or template.
    """
    services = _services(request)
    cfg = services.config

    if len(req.rows) > cfg.max_rows_per_job:
        raise HTTPException(
            status_code=400,
            detail=f"Too many rows ({len(req.rows)}); the maximum is {cfg.max_rows_per_job}",
        )
    for index, row in enumerate(req.rows, start=1):
        if row.quantity > cfg.max_quantity_per_row:
            raise HTTPException(
                status_code=400,
                detail=f"Row {index}: quantity {row.quantity} exceeds {cfg.max_quantity_per_row}",
            )
        try:
            services.storage.validate_reference(row.image_url)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=f"Row {index}: {e}") from e

    job = BulkJob(
        id="",
        user_id=user.id,
        name=req.name,
        image_desc_credential_id=req.image_desc_api_key_id,
        keyword_credential_id=req.keyword_api_key_id,
        image_gen_credential_id=req.image_gen_api_key_id,
        image_desc_model=req.image_desc_model,
        keyword_model=req.keyword_model,
        image_gen_model=req.image_gen_model,
        template_id=req.template_id,
        image_width=req.image_width or cfg.default_width,
        image_height=req.image_height or cfg.default_height,
    )
    # Fails fast on keys, providers and templates before anything is stored.
    resolve_job_config(job, services.credentials, services.templates, services.registry)

    rows = [
        BulkRow(
            id="",
            job_id="",
            position=position,
            keywords=row.keywords,
            image_url=row.image_url,
            quantity=row.quantity,
            title=row.title,
            description=row.description,
            alt_text=row.alt_text,
            scheduled_at=row.scheduled_at,
        )
        for position, row in enumerate(req.rows)
    ]
    job = services.jobs.create_job(job, rows)
    services.queue.enqueue(job.id)
    services.activity.log(
        user.id,
        LogLevel.INFO,
        LogModule.GENERATION,
        "create_bulk",
        f"Bulk generation queued: {job.name}",
        resource_id=job.id,
        details={"total_rows": job.total_rows},
    )
    return _job_dict(job)


@router.get("/bulk-generations/{job_id}")
async def get_bulk_generation(
    job_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.VIEW)),
) -> dict:
    """Return a job with its rows, each row carrying its pins."""
    services = _services(request)
    job = _visible_job(services, job_id, user)

    pins_by_row: dict[str, list[GeneratedPin]] = {}
    for pin in services.jobs.list_job_pins(job.id):
        pins_by_row.setdefault(pin.row_id, []).append(pin)

    data = _job_dict(job)
    data["rows"] = [
        _row_dict(row, pins_by_row.get(row.id, [])) for row in services.jobs.list_rows(job.id)
    ]
    return data


@router.delete("/bulk-generations/{job_id}")
async def delete_bulk_generation(
    job_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.DELETE)),
) -> dict:
    """Cancel an active job, or delete a finished one.

    Cancelling leaves rows and pins in place; the worker stops before the
    next row.  Deleting removes the job, its rows, its pins and (when no
    duplicate shares them) its artifact files.
    """
    services = _services(request)
    job = _visible_job(services, job_id, user)

    if job.status.is_active:
        status = services.jobs.cancel_job(job.id)
        if status is JobStatus.CANCELLED:
            services.activity.log(
                user.id,
                LogLevel.WARNING,
                LogModule.GENERATION,
                "cancel_bulk",
                f"Bulk generation cancelled: {job.name}",
                resource_id=job.id,
            )
            return {"success": True, "action": "cancelled", "status": status.value}
        # finished between the read and the cancel

    services.jobs.delete_job(job.id)
    _remove_job_artifacts(services, job.id)
    services.activity.log(
        user.id,
        LogLevel.INFO,
        LogModule.GENERATION,
        "delete_bulk",
        f"Bulk generation deleted: {job.name}",
        resource_id=job.id,
    )
    return {"success": True, "action": "deleted", "id": job.id}


@router.post("/bulk-generations/{job_id}/duplicate", status_code=201)
async def duplicate_bulk_generation(
    job_id: str,
    req: DuplicateRequest,
    request: Request,
    admin: User = Depends(require_admin),
) -> dict:
    """Copy a job, with its rows and pins, to each target user.

    Raises:
        HTTPException: 404 if the job or any target user does not exist.
    """
    services = _services(request)
    services.jobs.get_job(job_id)
    for target in req.target_user_ids:
        if services.users.get_user(target) is None:
            raise UserNotFoundError(target)

    copies = [services.jobs.duplicate_job(job_id, target) for target in req.target_user_ids]
    logger.info(f"Admin {admin.id} duplicated job {job_id} to {len(copies)} user(s)")
    services.activity.log(
        admin.id,
        LogLevel.SUCCESS,
        LogModule.GENERATION,
        "duplicate_bulk",
        f"Bulk generation duplicated to {len(copies)} user(s)",
        resource_id=job_id,
        details={"copies": {copy.user_id: copy.id for copy in copies}},
    )
    return {"jobs": [_job_dict(copy) for copy in copies]}


@router.get("/bulk-generations/{job_id}/download")
def download_bulk_generation(
    job_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.VIEW)),
) -> Response:
    """Return the job's pins as a ZIP archive (one folder per pin)."""
    services = _services(request)
    job = _visible_job(services, job_id, user)
    archive = build_zip(services.jobs.list_job_pins(job.id), services.storage)
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{_export_filename(job, ".zip")}"'},
    )


@router.get("/bulk-generations/{job_id}/export-csv")
def export_bulk_generation_csv(
    job_id: str,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.VIEW)),
) -> Response:
    """Return the Pinterest bulk-upload CSV for the job's pins."""
    services = _services(request)
    job = _visible_job(services, job_id, user)
    text = build_csv(services.jobs.list_job_pins(job.id), services.config.public_base_url)
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{_export_filename(job, ".csv")}"'},
    )


# --- Generated pins --------------------------------------------------------


@router.post("/pins/{pin_id}/change-template")
async def change_pin_template(
    pin_id: str,
    req: ChangeTemplateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.BULK_GENERATION, Action.EDIT)),
) -> dict:
    """Re-composite a generated pin from its source image with another template.

    The template must belong to the owner of the pin's job.

    Raises:
        HTTPException: 404 if the pin is unknown or not visible to the
            caller; 422 if the source image is gone or compositing fails.
    """
    services = _services(request)
    found = services.jobs.find_pin(pin_id)
    if found is None or (found[1].user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Pin not found")
    pin, job = found
    template = services.templates.resolve(req.template_id, job.user_id)

    try:
        pin = await services.row_processor.change_template(pin, job, template)
    except CompositingError as e:
        services.activity.log(
            user.id,
            LogLevel.ERROR,
            LogModule.IMAGE_PROCESSING,
            "change_template",
            "Changing template failed",
            resource_id=pin_id,
            error=str(e),
            details={"template_id": template.id},
        )
        raise HTTPException(status_code=422, detail=str(e)) from e

    services.activity.log(
        user.id,
        LogLevel.SUCCESS,
        LogModule.IMAGE_PROCESSING,
        "change_template",
        f"Template changed to {template.name}",
        resource_id=pin_id,
        details={"template_id": template.id, "image_url": pin.image_url},
    )
    return asdict(pin)


# --- Activity log ----------------------------------------------------------


@router.get("/logs")
async def list_logs(
    request: Request,
    page: int = 1,
    per_page: int = 20,
    level: LogLevel | None = None,
    module: LogModule | None = None,
    resource_id: str | None = None,
    user_id: str | None = None,
    user: User = Depends(require_permission(Module.LOGS, Action.VIEW)),
) -> dict:
    """Return a paginated activity log, newest first.

    Non-admin callers always see their own entries.  Admins see every
    entry, or one user's entries when ``user_id`` is given.
    """
    owner = user_id if user.is_admin else user.id
    page = max(1, page)
    per_page = max(1, min(100, per_page))
    logs, total = _services(request).activity.list_logs(
        user_id=owner,
        level=level,
        module=module,
        resource_id=resource_id,
        page=page,
        per_page=per_page,
    )
    return {
        "total": total,
        "page": page,
        "per_page": per_page,
        "pages": (total + per_page - 1) // per_page if total > 0 else 1,
        "logs": [entry.to_dict() for entry in logs],
    }


# --- Users and permissions -------------------------------------------------


@router.get("/permissions")
async def get_permissions(request: Request, user: User = Depends(get_current_user)) -> dict:
    """Return the caller's identity and effective permissions."""
    permissions = _services(request).users.get_user_permissions(user.id)
    data = permissions.to_dict()
    data["user"] = _user_dict(user)
    data["modules"] = [m.value for m in permissions.accessible_modules()]
    return data


@router.get("/users")
async def list_users(
    request: Request,
    user: User = Depends(require_permission(Module.USERS, Action.VIEW)),
) -> dict:
    return {"users": [_user_dict(u) for u in _services(request).users.list_users()]}


@router.post("/users", status_code=201)
async def create_user(
    req: UserCreateRequest,
    request: Request,
    user: User = Depends(require_permission(Module.USERS, Action.CREATE)),
) -> dict:
    users = _services(request).users
    if any(existing.email == req.email for existing in users.list_users()):
        raise HTTPException(status_code=409, detail=f"Email already registered: {req.email}")
    if req.role is Role.ADMIN and not user.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can create admins")
    created = users.create_user(req.email, req.name, req.role)
    return _user_dict(created)


@router.put("/users/{user_id}/permissions")
async def update_user_permissions(
    user_id: str,
    req: PermissionsUpdateRequest,
    request: Request,
    admin: User = Depends(require_admin),
) -> dict:
    """Replace the listed module permissions of a user.  Admins only.

    Modules not mentioned in the request keep their current actions.

    Raises:
        HTTPException: 404 if the user does not exist.
    """
    services = _services(request)
    users = services.users
    for entry in req.permissions:
        users.set_module_permissions(user_id, entry.module, entry.actions, entry.enabled)
    logger.info(f"Admin {admin.id} updated permissions of {user_id}")
    services.activity.log(
        admin.id,
        LogLevel.INFO,
        LogModule.USERS,
        "update_permissions",
        f"Permissions updated for {user_id}",
        resource_id=user_id,
        details={"modules": [entry.module.value for entry in req.permissions]},
    )
    return users.get_user_permissions(user_id).to_dict()


# ---------------------------------------------------------------------------
# Error mapping.
# ---------------------------------------------------------------------------


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


ERROR_STATUS: dict[type[Exception], int] = {
    ConfigurationError: 400,
    CredentialNotFoundError: 404,
    TemplateNotFoundError: 404,
    JobNotFoundError: 404,
    UserNotFoundError: 404,
    JobActiveError: 409,
    JobStoreError: 503,
}


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: PinworksConfig | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    registry: ProviderRegistry | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Configuration to use (defaults to the global ``config``).
        http_client: Client for provider calls.  When omitted the lifespan
            creates one and closes it on shutdown.
        registry: Provider registry (defaults to ``provider_registry``).

    Returns:
        A configured FastAPI application.
    """
    cfg = cfg or config
    registry = registry or provider_registry

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application startup and shutdown lifecycle.

        On startup:
            Opens the stores, creates the shared HTTP client, wires the
            pipeline and starts the job queue (re-enqueueing PENDING jobs).

        On shutdown:
            Stops the queue workers and closes the HTTP client.
        """
        # --- Startup -------------------------------------------------------
        client = http_client or httpx.AsyncClient(timeout=cfg.http_timeout)
        jobs = JobStore(cfg.database_path)
        credentials = CredentialStore(cfg.database_path)
        templates = TemplateStore(cfg.database_path)
        users = UserStore(cfg.database_path)
        storage = ArtifactStorage(cfg)

        if cfg.admin_user_id and users.get_user(cfg.admin_user_id) is None:
            users.create_user(cfg.admin_email, "Administrator", Role.ADMIN, user_id=cfg.admin_user_id)

        row_processor = RowProcessor(
            jobs,
            ProviderPool(cfg, client, registry),
            storage,
            TemplateCompositor(cfg.assets_dir),
            MetadataEmbedder(embed_camera=cfg.embed_camera_metadata),
        )
        activity = ActivityLogStore(cfg.database_path)
        orchestrator = BulkJobOrchestrator(
            jobs, credentials, templates, row_processor, registry, activity=activity
        )
        queue = JobQueue(orchestrator, workers=cfg.queue_workers)
        queue.start()
        queue.recover_pending(jobs)

        app.state.services = AppServices(
            config=cfg,
            registry=registry,
            jobs=jobs,
            credentials=credentials,
            templates=templates,
            users=users,
            policy=PermissionPolicy(users),
            storage=storage,
            row_processor=row_processor,
            activity=activity,
            queue=queue,
            http_client=client,
        )
        logger.info(f"Pinworks {__version__} started (database {cfg.database_path})")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        await queue.stop()
        if http_client is None:
            await client.aclose()
        logger.info("Pinworks stopped.")

    application = FastAPI(
        title="Pinworks",
        description="Multi-tenant bulk Pinterest pin generation API.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow cross-origin requests so a dashboard can be served from a
    # different port during development.
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for error_type, status_code in ERROR_STATUS.items():
        application.add_exception_handler(error_type, _error_handler(status_code))

    application.include_router(router)

    # Generated artifacts and uploads are served as plain files.
    application.mount("/generated", StaticFiles(directory=str(cfg.outputs_dir)), name="generated")
    application.mount("/uploads", StaticFiles(directory=str(cfg.uploads_dir)), name="uploads")
    return application


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~pinworks.core.config.config` (which
    loads from ``PINWORKS_SERVER_HOST`` and ``PINWORKS_SERVER_PORT``
    environment variables).  Defaults to ``0.0.0.0:7860``.

    This function is registered as the ``pinworks`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "pinworks.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
