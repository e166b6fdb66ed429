"""Bulk job orchestration.

:meth:`BulkJobOrchestrator.process_bulk_generation` drives one job from
PENDING to a terminal status:

1. Atomically claim the job (PENDING -> PROCESSING).  A job that is not
   PENDING is left alone, so duplicate triggers are harmless.
2. Resolve the job configuration (credentials, models, template).  A
   failure here is a job-level fault: the job becomes FAILED.
3. Process the PENDING rows in creation order.  Each row is started with
   :meth:`JobStore.start_row`, which only succeeds while the job is still
   PROCESSING; a cancelled job stops there and its unstarted rows stay
   PENDING.  A started row keeps the job undeletable until it settles.
4. After each row, record the row's terminal state and bump the matching
   job counter in one transaction.
5. Mark the job COMPLETED when the loop finishes, unless it was cancelled
   meanwhile.  Rows that FAILED do not change this.

Completion, failure and cancellation are written to the activity log.

Row and stage errors never escape.  :class:`JobStoreError` does: the job is
left in its last persisted state and the caller (the job queue) logs it.
"""

from __future__ import annotations

import logging

from pinworks.core.activity_log import ActivityLogStore, LogLevel, LogModule
from pinworks.core.credentials import CredentialStore
from pinworks.core.errors import ConfigurationError, JobStoreError
from pinworks.core.job_store import JobStore
from pinworks.core.models import (
    BulkJob,
    BulkRow,
    JobConfig,
    JobStatus,
    RowResult,
    RowStatus,
    Stage,
    StageSelection,
)
from pinworks.core.providers.base import ProviderRegistry, provider_registry
from pinworks.core.row_processor import RowProcessor
from pinworks.core.templates import TemplateStore

logger = logging.getLogger(__name__)


def resolve_job_config(
    job: BulkJob,
    credentials: CredentialStore,
    templates: TemplateStore,
    registry: ProviderRegistry | None = None,
) -> JobConfig:
    """Resolve everything a job needs that is shared by all its rows.

    The model of each stage is the job's override, else the credential's
    model name, else the provider default.

    Raises:
        ConfigurationError: If a credential or template cannot be resolved,
            or a provider cannot serve the stage it was chosen for.
    """
    registry = registry or provider_registry

    def select(stage: Stage, credential_id: str, override: str | None) -> StageSelection:
        credential = credentials.resolve(credential_id, job.user_id)
        adapter_class = registry.get_adapter_class(credential.provider_type)
        if adapter_class is None:
            raise ConfigurationError(
                f"Unknown provider '{credential.provider_type}' for API key {credential.name}"
            )
        if not adapter_class.supports(stage):
            raise ConfigurationError(
                f"Provider '{credential.provider_type}' cannot be used for {stage.value}"
            )
        model = override or credential.model_name or adapter_class.default_model(stage)
        if not model:
            raise ConfigurationError(f"No model configured for {stage.value}")
        return StageSelection(credential=credential, model=model)

    template = None
    if job.template_id:
        template = templates.resolve(job.template_id, job.user_id)

    return JobConfig(
        job_id=job.id,
        user_id=job.user_id,
        image_description=select(
            Stage.IMAGE_DESCRIPTION, job.image_desc_credential_id, job.image_desc_model
        ),
        content=select(Stage.CONTENT, job.keyword_credential_id, job.keyword_model),
        image_generation=select(
            Stage.IMAGE_GENERATION, job.image_gen_credential_id, job.image_gen_model
        ),
        width=job.image_width,
        height=job.image_height,
        template=template,
    )


class BulkJobOrchestrator:
    """Run bulk jobs row by row."""

    def __init__(
        self,
        store: JobStore,
        credentials: CredentialStore,
        templates: TemplateStore,
        row_processor: RowProcessor,
        registry: ProviderRegistry | None = None,
        activity: ActivityLogStore | None = None,
    ):
        self.store = store
        self.credentials = credentials
        self.templates = templates
        self.row_processor = row_processor
        self.registry = registry or provider_registry
        self.activity = activity

    async def process_bulk_generation(self, job_id: str) -> JobStatus | None:
        """Process a job to completion.

        Returns:
            The job's final status, or None if the job could not be claimed.

        Raises:
            JobStoreError: If job state cannot be read or written.
        """
        if not self.store.claim_job(job_id):
            logger.info(f"Skipping bulk job {job_id}: not PENDING")
            return None

        job = self.store.get_job(job_id)
        try:
            job_config = resolve_job_config(job, self.credentials, self.templates, self.registry)
        except ConfigurationError as e:
            logger.warning(f"Bulk job {job_id} configuration failed: {e}")
            if self.store.update_job_status(
                job_id, JobStatus.FAILED, str(e), only_if=JobStatus.PROCESSING
            ):
                self._record(
                    job, LogLevel.ERROR, "bulk_generation_failed", "Bulk generation failed", error=str(e)
                )
                return JobStatus.FAILED
            return self._settled_status(job_id)

        rows = self.store.list_rows(job_id, statuses=[RowStatus.PENDING])
        logger.info(f"Processing bulk job {job_id} ({job.name}): {len(rows)} pending rows")

        for row in rows:
            if not self.store.start_row(job_id, row.id):
                logger.info(f"Bulk job {job_id} cancelled; stopping before row {row.position}")
                self._record(
                    job, LogLevel.WARNING, "bulk_generation_cancelled", "Bulk generation cancelled"
                )
                return JobStatus.CANCELLED

            result = await self._run_row(row, job_config)
            self.store.finish_row(
                job_id,
                row.id,
                result.status,
                error=result.error,
                stage_calls=result.stage_calls,
                failed_pins=result.failed_pins,
            )

        if self.store.update_job_status(job_id, JobStatus.COMPLETED, only_if=JobStatus.PROCESSING):
            final = self.store.get_job(job_id)
            logger.info(
                f"Bulk job {job_id} COMPLETED: {final.completed_rows} rows completed, "
                f"{final.failed_rows} failed"
            )
            self._record(
                job,
                LogLevel.SUCCESS,
                "bulk_generation_complete",
                f"Bulk generation completed: {job.name}",
                details={"completed_rows": final.completed_rows, "failed_rows": final.failed_rows},
            )
            return JobStatus.COMPLETED
        return self._settled_status(job_id)

    def _settled_status(self, job_id: str) -> JobStatus:
        # a job that vanished mid-run was cancelled first, then deleted
        job = self.store.find_job(job_id)
        return job.status if job is not None else JobStatus.CANCELLED

    async def _run_row(self, row: BulkRow, job_config: JobConfig) -> RowResult:
        try:
            return await self.row_processor.process_row(row, job_config)
        except JobStoreError:
            raise
        except Exception as e:
            # any other fault fails only this row
            logger.exception(f"Unexpected error processing row {row.id}")
            return RowResult(status=RowStatus.FAILED, error=f"Unexpected error: {e}")

    def _record(
        self,
        job: BulkJob,
        level: LogLevel,
        action: str,
        message: str,
        *,
        error: str | None = None,
        details: dict | None = None,
    ) -> None:
        if self.activity is not None:
            self.activity.log(
                job.user_id,
                level,
                LogModule.GENERATION,
                action,
                message,
                resource_id=job.id,
                error=error,
                details=details,
            )
