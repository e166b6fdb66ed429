"""Unit tests for pinworks.core.orchestrator and pinworks.core.job_queue."""

from __future__ import annotations

import asyncio
import random

import pytest

from pinworks.core.activity_log import ActivityLogStore, LogLevel, LogModule
from pinworks.core.compositor import TemplateCompositor
from pinworks.core.errors import (
    ConfigurationError,
    CredentialNotFoundError,
    JobActiveError,
    TemplateNotFoundError,
)
from pinworks.core.job_queue import JobQueue
from pinworks.core.metadata import MetadataEmbedder
from pinworks.core.models import BulkJob, BulkRow, JobStatus, RowStatus, Stage
from pinworks.core.orchestrator import BulkJobOrchestrator, resolve_job_config
from pinworks.core.providers import ProviderPool
from pinworks.core.row_processor import RowProcessor
from pinworks.core.storage import ArtifactStorage


class CancellingRowProcessor(RowProcessor):
    """Cancels the job right after its first row finishes."""

    async def process_row(self, row, job_config):
        result = await super().process_row(row, job_config)
        self.store.cancel_job(row.job_id)
        return result


class ExplodingRowProcessor(RowProcessor):
    """Raises an unexpected error on the first row only."""

    async def process_row(self, row, job_config):
        if row.position == 0:
            raise RuntimeError("disk on fire")
        return await super().process_row(row, job_config)


class DeleteDuringRowProcessor(RowProcessor):
    """Cancels the job and tries to delete it while its first row runs."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delete_errors: list[JobActiveError] = []

    async def process_row(self, row, job_config):
        self.store.cancel_job(row.job_id)
        try:
            self.store.delete_job(row.job_id)
        except JobActiveError as e:
            self.delete_errors.append(e)
        return await super().process_row(row, job_config)


@pytest.fixture
def credentials(credential_store) -> dict:
    return {
        "openai": credential_store.create_credential("user-1", "OpenAI", "openai", "sk-test"),
        "deepseek": credential_store.create_credential(
            "user-1", "DeepSeek", "deepseek", "ds-test", model_name="deepseek-reasoner"
        ),
        "fal": credential_store.create_credential("user-1", "fal", "fal", "fal-test"),
    }


@pytest.fixture
def build_orchestrator(job_store, credential_store, template_store, test_config, http_client):
    def factory(processor_class=RowProcessor, activity=None) -> BulkJobOrchestrator:
        processor = processor_class(
            job_store,
            ProviderPool(test_config, http_client),
            ArtifactStorage(test_config),
            TemplateCompositor(test_config.assets_dir),
            MetadataEmbedder(rng=random.Random(0)),
        )
        return BulkJobOrchestrator(
            job_store, credential_store, template_store, processor, activity=activity
        )

    return factory


@pytest.fixture
def create_job(job_store, credentials, source_image):
    def factory(rows: int = 2, **overrides) -> BulkJob:
        fields = {
            "image_desc_credential_id": credentials["openai"].id,
            "keyword_credential_id": credentials["deepseek"].id,
            "image_gen_credential_id": credentials["fal"].id,
        }
        fields.update(overrides)
        job = BulkJob(id="", user_id="user-1", name="Kitchen batch", **fields)
        bulk_rows = [
            BulkRow(id="", job_id="", position=0, keywords=f"kitchen {i}", image_url=source_image)
            for i in range(rows)
        ]
        return job_store.create_job(job, bulk_rows)

    return factory


def _process(orchestrator: BulkJobOrchestrator, job_id: str):
    return asyncio.run(orchestrator.process_bulk_generation(job_id))


class TestResolveJobConfig:
    """Test credential, model and template resolution."""

    def test_model_precedence(self, create_job, credential_store, template_store):
        """Override, then the key's model name, then the provider default."""
        job = create_job(image_desc_model="gpt-4o-mini")
        config = resolve_job_config(job, credential_store, template_store)

        assert config.image_description.model == "gpt-4o-mini"
        assert config.content.model == "deepseek-reasoner"
        assert config.image_generation.model == "fal-ai/flux-pro/v1.1"
        assert config.template is None

    def test_provider_must_support_stage(self, create_job, credentials, credential_store, template_store):
        job = create_job(image_gen_credential_id=credentials["deepseek"].id)
        with pytest.raises(ConfigurationError, match=Stage.IMAGE_GENERATION.value):
            resolve_job_config(job, credential_store, template_store)

    def test_foreign_credential(self, create_job, credential_store, template_store):
        other = credential_store.create_credential("user-2", "Theirs", "openai", "sk-theirs")
        job = create_job(image_desc_credential_id=other.id)
        with pytest.raises(CredentialNotFoundError):
            resolve_job_config(job, credential_store, template_store)

    def test_missing_template(self, create_job, credential_store, template_store):
        job = create_job(template_id="missing")
        with pytest.raises(TemplateNotFoundError):
            resolve_job_config(job, credential_store, template_store)


class TestProcessBulkGeneration:
    """Test driving jobs to a terminal status."""

    def test_all_rows_complete(self, build_orchestrator, create_job, job_store):
        job = create_job(rows=2)
        status = _process(build_orchestrator(), job.id)

        assert status is JobStatus.COMPLETED
        stored = job_store.get_job(job.id)
        assert (stored.completed_rows, stored.failed_rows) == (2, 0)
        assert all(r.status is RowStatus.COMPLETED for r in job_store.list_rows(job.id))
        assert len(job_store.list_job_pins(job.id)) == 2

    def test_failed_rows_still_complete_job(self, build_orchestrator, create_job, job_store, fake_api):
        """Row failures are counted; the job itself still completes."""
        fake_api.fail.add("image_description")
        job = create_job(rows=3)
        status = _process(build_orchestrator(), job.id)

        assert status is JobStatus.COMPLETED
        stored = job_store.get_job(job.id)
        assert (stored.completed_rows, stored.failed_rows) == (0, 3)
        assert stored.error is None
        rows = job_store.list_rows(job.id)
        assert all(r.status is RowStatus.FAILED for r in rows)
        assert all(r.stage_calls for r in rows)

    def test_configuration_failure_fails_job(self, build_orchestrator, create_job, job_store, fake_api):
        """A job whose keys cannot be resolved fails before any row runs."""
        job = create_job(keyword_credential_id="deleted-key")
        status = _process(build_orchestrator(), job.id)

        assert status is JobStatus.FAILED
        stored = job_store.get_job(job.id)
        assert "API key not found" in stored.error
        assert all(r.status is RowStatus.PENDING for r in job_store.list_rows(job.id))
        assert fake_api.requests == []

    def test_cancellation_stops_before_next_row(self, build_orchestrator, create_job, job_store):
        """Rows not yet started stay PENDING after a cancel."""
        job = create_job(rows=3)
        status = _process(build_orchestrator(CancellingRowProcessor), job.id)

        assert status is JobStatus.CANCELLED
        stored = job_store.get_job(job.id)
        assert stored.status is JobStatus.CANCELLED
        assert (stored.completed_rows, stored.failed_rows) == (1, 0)
        statuses = [r.status for r in job_store.list_rows(job.id)]
        assert statuses == [RowStatus.COMPLETED, RowStatus.PENDING, RowStatus.PENDING]

    def test_unexpected_row_error_fails_only_that_row(self, build_orchestrator, create_job, job_store):
        job = create_job(rows=2)
        status = _process(build_orchestrator(ExplodingRowProcessor), job.id)

        assert status is JobStatus.COMPLETED
        rows = job_store.list_rows(job.id)
        assert rows[0].status is RowStatus.FAILED
        assert "disk on fire" in rows[0].error
        assert rows[1].status is RowStatus.COMPLETED

    def test_delete_waits_for_running_row(self, build_orchestrator, create_job, job_store):
        """A cancelled job cannot be deleted until its current row settles."""
        job = create_job(rows=2)
        orchestrator = build_orchestrator(DeleteDuringRowProcessor)
        status = _process(orchestrator, job.id)

        assert status is JobStatus.CANCELLED
        assert len(orchestrator.row_processor.delete_errors) == 1
        assert "still processing" in str(orchestrator.row_processor.delete_errors[0])
        rows = job_store.list_rows(job.id)
        assert [r.status for r in rows] == [RowStatus.COMPLETED, RowStatus.PENDING]
        assert len(job_store.list_job_pins(job.id)) == 1

        job_store.delete_job(job.id)
        assert job_store.find_job(job.id) is None

    def test_outcomes_are_written_to_activity_log(
        self, build_orchestrator, create_job, job_store, test_config
    ):
        activity = ActivityLogStore(test_config.database_path)
        completed = create_job(rows=1)
        broken = create_job(rows=1, keyword_credential_id="deleted-key")
        orchestrator = build_orchestrator(activity=activity)

        _process(orchestrator, completed.id)
        _process(orchestrator, broken.id)

        logs, total = activity.list_logs(user_id="user-1", module=LogModule.GENERATION)
        assert total == 2
        by_job = {entry.resource_id: entry for entry in logs}
        assert by_job[completed.id].action == "bulk_generation_complete"
        assert by_job[completed.id].level is LogLevel.SUCCESS
        assert by_job[completed.id].details == {"completed_rows": 1, "failed_rows": 0}
        assert by_job[broken.id].action == "bulk_generation_failed"
        assert "API key not found" in by_job[broken.id].error

    def test_job_is_processed_once(self, build_orchestrator, create_job, fake_api):
        """A second trigger for the same job does nothing."""
        job = create_job(rows=1)
        orchestrator = build_orchestrator()

        assert _process(orchestrator, job.id) is JobStatus.COMPLETED
        requests_after_first = len(fake_api.requests)
        assert _process(orchestrator, job.id) is None
        assert len(fake_api.requests) == requests_after_first

    def test_counters_never_exceed_total(self, build_orchestrator, create_job, job_store):
        job = create_job(rows=2)
        _process(build_orchestrator(), job.id)

        stored = job_store.get_job(job.id)
        assert stored.completed_rows + stored.failed_rows == stored.total_rows
        assert job_store.increment_job_counters(job.id, completed=1) is False


class TestJobQueue:
    """Test the asyncio worker pool."""

    def test_enqueue_requires_running_queue(self, build_orchestrator):
        queue = JobQueue(build_orchestrator())
        with pytest.raises(RuntimeError):
            queue.enqueue("job")

    def test_workers_process_jobs(self, build_orchestrator, create_job, job_store):
        first = create_job(rows=1)
        second = create_job(rows=1)
        queue = JobQueue(build_orchestrator(), workers=2)

        async def go():
            queue.start()
            queue.enqueue(first.id)
            queue.enqueue(second.id)
            await queue.join()
            await queue.stop()

        asyncio.run(go())

        assert job_store.get_job_status(first.id) is JobStatus.COMPLETED
        assert job_store.get_job_status(second.id) is JobStatus.COMPLETED
        assert queue.is_running is False

    def test_recover_pending_jobs(self, build_orchestrator, create_job, job_store):
        """Jobs left PENDING are picked up again; PROCESSING ones are not."""
        pending = create_job(rows=1)
        stuck = create_job(rows=1)
        job_store.claim_job(stuck.id)
        stuck_row = job_store.list_rows(stuck.id)[0]
        job_store.start_row(stuck.id, stuck_row.id)
        queue = JobQueue(build_orchestrator())

        async def go():
            queue.start()
            recovered = queue.recover_pending(job_store)
            await queue.join()
            await queue.stop()
            return recovered

        assert asyncio.run(go()) == 1
        assert job_store.get_job_status(pending.id) is JobStatus.COMPLETED
        assert job_store.get_job_status(stuck.id) is JobStatus.PROCESSING
        # the interrupted row no longer blocks cancel-then-delete
        assert job_store.get_row(stuck_row.id).status is RowStatus.PENDING
        job_store.cancel_job(stuck.id)
        job_store.delete_job(stuck.id)
