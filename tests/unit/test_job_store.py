"""Unit tests for pinworks.core.job_store — SQLite job, row and pin persistence."""

from __future__ import annotations

import pytest

from pinworks.core.errors import JobActiveError, JobNotFoundError
from pinworks.core.job_store import JobStore
from pinworks.core.models import (
    BulkJob,
    BulkRow,
    GeneratedPin,
    JobStatus,
    RowStatus,
    StageCall,
)


def _job(user_id: str = "user-1", name: str = "Spring kitchen") -> BulkJob:
    return BulkJob(
        id="",
        user_id=user_id,
        name=name,
        image_desc_credential_id="cred-desc",
        keyword_credential_id="cred-content",
        image_gen_credential_id="cred-image",
    )


def _rows(count: int) -> list[BulkRow]:
    return [
        BulkRow(
            id="",
            job_id="",
            position=0,
            keywords=f"kitchen {i}",
            image_url=f"https://example.com/{i}.jpg",
            quantity=2,
        )
        for i in range(count)
    ]


def _pin(row_id: str, title: str = "Pin") -> GeneratedPin:
    return GeneratedPin(
        id="",
        row_id=row_id,
        title=title,
        description="A description",
        keywords=["a", "b"],
        image_path="bulk/job/final.png",
        image_url="/generated/bulk/job/final.png",
        stage_calls=[StageCall(stage="image_generation", provider="openai", model="gpt-image-1")],
    )


@pytest.fixture
def created(job_store: JobStore) -> BulkJob:
    return job_store.create_job(_job(), _rows(3))


class TestCreateJob:
    """Test job creation."""

    def test_create_job_sets_pending_and_totals(self, job_store, created):
        """A new job is PENDING with total_rows equal to the row count."""
        job = job_store.get_job(created.id)
        assert job.status is JobStatus.PENDING
        assert job.total_rows == 3
        assert job.completed_rows == 0
        assert job.failed_rows == 0

    def test_rows_keep_creation_order(self, job_store, created):
        """Rows are listed by position in the order they were given."""
        rows = job_store.list_rows(created.id)
        assert [r.position for r in rows] == [0, 1, 2]
        assert [r.keywords for r in rows] == ["kitchen 0", "kitchen 1", "kitchen 2"]
        assert all(r.status is RowStatus.PENDING for r in rows)

    def test_get_missing_job_raises(self, job_store):
        """Unknown ids raise JobNotFoundError; find_job returns None."""
        with pytest.raises(JobNotFoundError):
            job_store.get_job("missing")
        assert job_store.find_job("missing") is None


class TestClaimAndStatus:
    """Test atomic claiming and guarded status updates."""

    def test_claim_only_once(self, job_store, created):
        """Only the first claim of a PENDING job succeeds."""
        assert job_store.claim_job(created.id) is True
        assert job_store.claim_job(created.id) is False
        assert job_store.get_job_status(created.id) is JobStatus.PROCESSING

    def test_update_status_only_if(self, job_store, created):
        """A guarded update does nothing when the current status differs."""
        job_store.cancel_job(created.id)
        updated = job_store.update_job_status(
            created.id, JobStatus.COMPLETED, only_if=JobStatus.PROCESSING
        )
        assert updated is False
        assert job_store.get_job_status(created.id) is JobStatus.CANCELLED

    def test_cancel_finished_job_is_noop(self, job_store, created):
        """Cancelling a terminal job returns its status unchanged."""
        job_store.update_job_status(created.id, JobStatus.COMPLETED)
        assert job_store.cancel_job(created.id) is JobStatus.COMPLETED


class TestCounters:
    """Test job counter bookkeeping."""

    def test_counters_never_exceed_total(self, job_store, created):
        """Increments that would pass total_rows are refused."""
        assert job_store.increment_job_counters(created.id, completed=2) is True
        assert job_store.increment_job_counters(created.id, failed=1) is True
        assert job_store.increment_job_counters(created.id, completed=1) is False

        job = job_store.get_job(created.id)
        assert job.completed_rows == 2
        assert job.failed_rows == 1

    def test_finish_row_updates_row_and_job(self, job_store, created):
        """finish_row stores the terminal row and bumps the matching counter."""
        rows = job_store.list_rows(created.id)
        calls = [StageCall(stage="image_description", error="boom")]
        job_store.finish_row(created.id, rows[0].id, RowStatus.FAILED, error="boom", stage_calls=calls)
        job_store.finish_row(created.id, rows[1].id, RowStatus.COMPLETED, failed_pins=1)

        job = job_store.get_job(created.id)
        assert (job.completed_rows, job.failed_rows) == (1, 1)
        row = job_store.get_row(rows[0].id)
        assert row.status is RowStatus.FAILED
        assert row.error == "boom"
        assert row.stage_calls[0].stage == "image_description"
        assert job_store.get_row(rows[1].id).failed_pins == 1

    def test_finish_row_rejects_non_terminal(self, job_store, created):
        """finish_row requires COMPLETED or FAILED."""
        row = job_store.list_rows(created.id)[0]
        with pytest.raises(ValueError):
            job_store.finish_row(created.id, row.id, RowStatus.PROCESSING)

    def test_create_pin_counts_completed_pins(self, job_store, created):
        """Each stored pin increments its row's completed_pins."""
        row = job_store.list_rows(created.id)[0]
        job_store.create_pin(_pin(row.id, "one"))
        job_store.create_pin(_pin(row.id, "two"))

        assert job_store.get_row(row.id).completed_pins == 2
        assert [p.title for p in job_store.list_pins(row.id)] == ["one", "two"]


class TestDeleteJob:
    """Test job deletion."""

    def test_delete_active_job_raises(self, job_store, created):
        """PENDING and PROCESSING jobs cannot be deleted."""
        with pytest.raises(JobActiveError):
            job_store.delete_job(created.id)
        job_store.claim_job(created.id)
        with pytest.raises(JobActiveError):
            job_store.delete_job(created.id)

    def test_delete_cascades_to_rows_and_pins(self, job_store, created):
        """Deleting a finished job removes its rows and pins."""
        row = job_store.list_rows(created.id)[0]
        job_store.create_pin(_pin(row.id))
        job_store.cancel_job(created.id)

        job_store.delete_job(created.id)

        assert job_store.find_job(created.id) is None
        assert job_store.get_row(row.id) is None
        assert job_store.list_pins(row.id) == []

    def test_delete_waits_for_processing_row(self, job_store, created):
        """A cancelled job is not deletable while one of its rows still runs."""
        row = job_store.list_rows(created.id)[0]
        job_store.claim_job(created.id)
        assert job_store.start_row(created.id, row.id) is True
        job_store.cancel_job(created.id)

        with pytest.raises(JobActiveError, match="still processing"):
            job_store.delete_job(created.id)

        job_store.finish_row(created.id, row.id, RowStatus.COMPLETED)
        job_store.delete_job(created.id)
        assert job_store.find_job(created.id) is None


class TestStartRow:
    """Test moving rows to PROCESSING."""

    def test_requires_processing_job(self, job_store, created):
        row = job_store.list_rows(created.id)[0]
        assert job_store.start_row(created.id, row.id) is False

        job_store.claim_job(created.id)
        assert job_store.start_row(created.id, row.id) is True
        assert job_store.get_row(row.id).status is RowStatus.PROCESSING

    def test_row_starts_once(self, job_store, created):
        row = job_store.list_rows(created.id)[0]
        job_store.claim_job(created.id)
        assert job_store.start_row(created.id, row.id) is True
        assert job_store.start_row(created.id, row.id) is False

    def test_cancelled_or_missing_job(self, job_store, created):
        rows = job_store.list_rows(created.id)
        job_store.claim_job(created.id)
        job_store.cancel_job(created.id)

        assert job_store.start_row(created.id, rows[0].id) is False
        assert job_store.get_row(rows[0].id).status is RowStatus.PENDING
        assert job_store.start_row("missing", rows[1].id) is False


class TestPins:
    """Test pin lookup and re-pointing."""

    def test_find_pin_returns_job(self, job_store, created):
        row = job_store.list_rows(created.id)[0]
        pin = _pin(row.id)
        pin.source_path = "bulk/job/original.png"
        stored = job_store.create_pin(pin)

        found, job = job_store.find_pin(stored.id)
        assert job.id == created.id
        assert found.source_path == "bulk/job/original.png"
        assert job_store.find_pin("missing") is None

    def test_update_pin(self, job_store, created):
        row = job_store.list_rows(created.id)[0]
        stored = job_store.create_pin(_pin(row.id))
        calls = stored.stage_calls + [StageCall(stage="compositing")]

        job_store.update_pin(
            stored.id,
            image_path="bulk/job/final_2.png",
            image_url="/generated/bulk/job/final_2.png",
            template_id="tpl-1",
            stage_calls=calls,
        )

        found, _ = job_store.find_pin(stored.id)
        assert found.image_path == "bulk/job/final_2.png"
        assert found.template_id == "tpl-1"
        assert [c.stage for c in found.stage_calls] == ["image_generation", "compositing"]


class TestListJobs:
    """Test paginated history."""

    def test_pagination_newest_first(self, job_store):
        """Jobs are returned newest first with the total match count."""
        for i in range(5):
            job_store.create_job(_job(name=f"job {i}"), _rows(1))
        job_store.create_job(_job(user_id="someone-else"), _rows(1))

        page1, total = job_store.list_jobs(user_id="user-1", page=1, per_page=2)
        page3, _ = job_store.list_jobs(user_id="user-1", page=3, per_page=2)

        assert total == 5
        assert [j.name for j in page1] == ["job 4", "job 3"]
        assert [j.name for j in page3] == ["job 0"]

    def test_filter_by_status(self, job_store):
        """The status filter narrows results."""
        first = job_store.create_job(_job(name="a"), _rows(1))
        job_store.create_job(_job(name="b"), _rows(1))
        job_store.cancel_job(first.id)

        jobs, total = job_store.list_jobs(status=JobStatus.CANCELLED)
        assert total == 1
        assert jobs[0].id == first.id

    def test_list_job_ids_by_status(self, job_store, created):
        """list_job_ids returns only jobs in the requested status."""
        assert job_store.list_job_ids(JobStatus.PENDING) == [created.id]
        assert job_store.list_job_ids(JobStatus.PROCESSING) == []


class TestDuplicateJob:
    """Test copying a job to another user."""

    def test_duplicate_copies_rows_and_pins(self, job_store, created):
        """The copy belongs to the target user and mirrors rows and pins."""
        rows = job_store.list_rows(created.id)
        job_store.create_pin(_pin(rows[0].id, "shared"))
        job_store.finish_row(created.id, rows[0].id, RowStatus.COMPLETED)

        copy = job_store.duplicate_job(created.id, "user-2")

        assert copy.id != created.id
        assert copy.user_id == "user-2"
        assert copy.name == "Spring kitchen (Copy)"
        assert copy.total_rows == 3
        assert copy.completed_rows == 1
        copy_rows = job_store.list_rows(copy.id)
        assert len(copy_rows) == 3
        assert {r.id for r in copy_rows}.isdisjoint({r.id for r in rows})
        copied_pins = job_store.list_job_pins(copy.id)
        assert [p.title for p in copied_pins] == ["shared"]
        assert copied_pins[0].row_id == copy_rows[0].id

    def test_duplicate_shares_artifact_paths(self, job_store, created):
        """Copies reference the same image files as the source."""
        row = job_store.list_rows(created.id)[0]
        job_store.create_pin(_pin(row.id))
        job_store.duplicate_job(created.id, "user-2")

        assert job_store.count_pins_under("bulk/job/") == 2
