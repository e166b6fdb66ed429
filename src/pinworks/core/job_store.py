"""SQLite-backed durable record of bulk jobs, rows and generated pins.

The job store is the only shared mutable resource of the bulk pipeline.  It
is written by three parties:

- the API layer (job creation, cancellation, deletion, duplication),
- the row processor (row progress, generated and re-templated pins),
- the orchestrator (row start and completion, job status, aggregate
  counters).

Every method runs in its own short transaction.  Row completion and the
matching job counter increment happen in a single transaction via
:meth:`JobStore.finish_row`, so a crash can never leave a row terminal
without its counter, or vice versa.

Counter updates are guarded in SQL so that
``completed_rows + failed_rows <= total_rows`` holds even if a caller
misbehaves.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Sequence

from pinworks.core.database import SQLiteStore, dumps, loads
from pinworks.core.errors import JobActiveError, JobNotFoundError
from pinworks.core.models import (
    BulkJob,
    BulkRow,
    GeneratedPin,
    JobStatus,
    RowStatus,
    StageCall,
    utcnow_iso,
)

logger = logging.getLogger(__name__)


class JobStore(SQLiteStore):
    """Persist bulk jobs, their rows and their generated pins."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS bulk_jobs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            image_desc_credential_id TEXT NOT NULL,
            keyword_credential_id TEXT NOT NULL,
            image_gen_credential_id TEXT NOT NULL,
            image_desc_model TEXT,
            keyword_model TEXT,
            image_gen_model TEXT,
            template_id TEXT,
            image_width INTEGER NOT NULL DEFAULT 1000,
            image_height INTEGER NOT NULL DEFAULT 1500,
            status TEXT NOT NULL DEFAULT 'PENDING',
            total_rows INTEGER NOT NULL DEFAULT 0,
            completed_rows INTEGER NOT NULL DEFAULT 0,
            failed_rows INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_bulk_jobs_user ON bulk_jobs(user_id, created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_bulk_jobs_status ON bulk_jobs(status)",
        """
        CREATE TABLE IF NOT EXISTS bulk_rows (
            id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES bulk_jobs(id) ON DELETE CASCADE,
            position INTEGER NOT NULL,
            keywords TEXT NOT NULL,
            image_url TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            title TEXT,
            description TEXT,
            alt_text TEXT,
            scheduled_at TEXT,
            status TEXT NOT NULL DEFAULT 'PENDING',
            completed_pins INTEGER NOT NULL DEFAULT 0,
            failed_pins INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            stage_calls TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_bulk_rows_job ON bulk_rows(job_id, position)",
        """
        CREATE TABLE IF NOT EXISTS generated_pins (
            id TEXT PRIMARY KEY,
            row_id TEXT NOT NULL REFERENCES bulk_rows(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            description TEXT NOT NULL,
            keywords TEXT NOT NULL,
            alt_text TEXT,
            image_path TEXT NOT NULL,
            image_url TEXT NOT NULL,
            source_path TEXT,
            template_id TEXT,
            stage_calls TEXT,
            status TEXT NOT NULL DEFAULT 'completed',
            error TEXT,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_generated_pins_row ON generated_pins(row_id)",
    )

    # -- Jobs ----------------------------------------------------------------

    def create_job(self, job: BulkJob, rows: Sequence[BulkRow]) -> BulkJob:
        """Insert a job and its rows, all in PENDING state.

        ``total_rows`` and row positions are derived from *rows*; any
        counters or statuses set on the inputs are ignored.

        Args:
            job: Job to insert (``id`` may be empty to auto-generate).
            rows: Rows in creation order.

        Returns:
            The persisted job.
        """
        now = utcnow_iso()
        job.id = job.id or str(uuid.uuid4())
        job.status = JobStatus.PENDING
        job.total_rows = len(rows)
        job.completed_rows = 0
        job.failed_rows = 0
        job.error = None
        job.created_at = job.updated_at = now

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO bulk_jobs (
                    id, user_id, name,
                    image_desc_credential_id, keyword_credential_id, image_gen_credential_id,
                    image_desc_model, keyword_model, image_gen_model, template_id,
                    image_width, image_height, status, total_rows,
                    completed_rows, failed_rows, error, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, NULL, ?, ?)
                """,
                (
                    job.id,
                    job.user_id,
                    job.name,
                    job.image_desc_credential_id,
                    job.keyword_credential_id,
                    job.image_gen_credential_id,
                    job.image_desc_model,
                    job.keyword_model,
                    job.image_gen_model,
                    job.template_id,
                    job.image_width,
                    job.image_height,
                    job.status.value,
                    job.total_rows,
                    now,
                    now,
                ),
            )
            for position, row in enumerate(rows):
                row.id = row.id or str(uuid.uuid4())
                row.job_id = job.id
                row.position = position
                row.status = RowStatus.PENDING
                row.created_at = row.updated_at = now
                self._insert_row(conn, row)

        logger.info(f"Created bulk job {job.id} with {job.total_rows} rows for user {job.user_id}")
        return job

    def find_job(self, job_id: str) -> BulkJob | None:
        """Return the job, or ``None`` if it does not exist."""
        with self._connect() as conn:
            record = conn.execute("SELECT * FROM bulk_jobs WHERE id = ?", (job_id,)).fetchone()
        return _job_from_record(record) if record else None

    def get_job(self, job_id: str) -> BulkJob:
        """Return the job.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        job = self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def get_job_status(self, job_id: str) -> JobStatus:
        """Read only the job's status (cheap re-check between rows)."""
        with self._connect() as conn:
            record = conn.execute("SELECT status FROM bulk_jobs WHERE id = ?", (job_id,)).fetchone()
        if record is None:
            raise JobNotFoundError(job_id)
        return JobStatus(record["status"])

    def claim_job(self, job_id: str) -> bool:
        """Atomically move a job from PENDING to PROCESSING.

        Returns:
            True if this caller won the claim, False if the job was not
            PENDING (already running, finished, cancelled, or missing).
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE bulk_jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.PROCESSING.value, utcnow_iso(), job_id, JobStatus.PENDING.value),
            )
            claimed = cursor.rowcount > 0
        if claimed:
            logger.info(f"Claimed bulk job {job_id}")
        else:
            logger.debug(f"Bulk job {job_id} not claimable")
        return claimed

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error: str | None = None,
        *,
        only_if: JobStatus | None = None,
    ) -> bool:
        """Set the job status (and error text).

        Args:
            job_id: Job to update.
            status: New status.
            error: Error text to store (``None`` clears it).
            only_if: When given, the update is applied only if the current
                status equals this value.  Used by the orchestrator so that
                a concurrent cancellation is never overwritten.

        Returns:
            True if a row was updated.
        """
        query = "UPDATE bulk_jobs SET status = ?, error = ?, updated_at = ? WHERE id = ?"
        params: list = [status.value, error, utcnow_iso(), job_id]
        if only_if is not None:
            query += " AND status = ?"
            params.append(only_if.value)
        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount > 0

    def increment_job_counters(self, job_id: str, completed: int = 0, failed: int = 0) -> bool:
        """Increment the aggregate row counters of a job.

        The increment is refused (returns False) if it would push
        ``completed_rows + failed_rows`` past ``total_rows``.
        """
        with self._connect() as conn:
            return self._increment_counters(conn, job_id, completed, failed)

    def cancel_job(self, job_id: str) -> JobStatus:
        """Mark an active job CANCELLED.

        Only PENDING and PROCESSING jobs transition; other statuses are
        returned unchanged.

        Returns:
            The job's status after the call.

        Raises:
            JobNotFoundError: If no such job exists.
        """
        with self._connect() as conn:
            conn.execute(
                "UPDATE bulk_jobs SET status = ?, updated_at = ? WHERE id = ? AND status IN (?, ?)",
                (
                    JobStatus.CANCELLED.value,
                    utcnow_iso(),
                    job_id,
                    JobStatus.PENDING.value,
                    JobStatus.PROCESSING.value,
                ),
            )
            record = conn.execute("SELECT status FROM bulk_jobs WHERE id = ?", (job_id,)).fetchone()
        if record is None:
            raise JobNotFoundError(job_id)
        status = JobStatus(record["status"])
        logger.info(f"Cancel requested for bulk job {job_id}; status now {status.value}")
        return status

    def delete_job(self, job_id: str) -> None:
        """Delete a finished job, cascading to its rows and pins.

        A cancelled job whose current row is still being processed is not
        finished yet: it can be deleted once that row has settled.

        Raises:
            JobNotFoundError: If no such job exists.
            JobActiveError: If the job is still PENDING or PROCESSING, or one
                of its rows is PROCESSING.
        """
        with self._connect() as conn:
            record = conn.execute("SELECT status FROM bulk_jobs WHERE id = ?", (job_id,)).fetchone()
            if record is None:
                raise JobNotFoundError(job_id)
            status = JobStatus(record["status"])
            if status.is_active:
                raise JobActiveError(job_id, status.value)
            running = conn.execute(
                "SELECT COUNT(*) FROM bulk_rows WHERE job_id = ? AND status = ?",
                (job_id, RowStatus.PROCESSING.value),
            ).fetchone()[0]
            if running:
                raise JobActiveError(
                    job_id,
                    status.value,
                    f"Bulk generation {job_id} is {status.value} but a row is still processing; "
                    "try again shortly",
                )
            conn.execute("DELETE FROM bulk_jobs WHERE id = ?", (job_id,))
        logger.info(f"Deleted bulk job {job_id}")

    def list_jobs(
        self,
        *,
        user_id: str | None = None,
        status: JobStatus | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[BulkJob], int]:
        """Return one page of jobs, newest first, plus the total match count."""
        clauses: list[str] = []
        params: list = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page = max(1, page)
        per_page = max(1, min(100, per_page))
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM bulk_jobs {where}", params).fetchone()[0]
            records = conn.execute(
                f"SELECT * FROM bulk_jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, per_page, (page - 1) * per_page],
            ).fetchall()
        return [_job_from_record(r) for r in records], int(total)

    def list_job_ids(self, status: JobStatus) -> list[str]:
        """Return ids of all jobs in *status*, oldest first."""
        with self._connect() as conn:
            records = conn.execute(
                "SELECT id FROM bulk_jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC",
                (status.value,),
            ).fetchall()
        return [r["id"] for r in records]

    def duplicate_job(self, job_id: str, target_user_id: str) -> BulkJob:
        """Copy a job with its rows and pins to another user.

        The copy keeps the source job's status and counters, so completed
        results show up in the target user's history without re-running any
        provider calls.  Image files are shared, not copied.
        """
        source = self.get_job(job_id)
        now = utcnow_iso()
        copy_id = str(uuid.uuid4())

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO bulk_jobs (
                    id, user_id, name,
                    image_desc_credential_id, keyword_credential_id, image_gen_credential_id,
                    image_desc_model, keyword_model, image_gen_model, template_id,
                    image_width, image_height, status, total_rows,
                    completed_rows, failed_rows, error, created_at, updated_at
                )
                SELECT ?, ?, name || ' (Copy)',
                    image_desc_credential_id, keyword_credential_id, image_gen_credential_id,
                    image_desc_model, keyword_model, image_gen_model, template_id,
                    image_width, image_height, status, total_rows,
                    completed_rows, failed_rows, error, ?, ?
                FROM bulk_jobs WHERE id = ?
                """,
                (copy_id, target_user_id, now, now, job_id),
            )
            rows = conn.execute(
                "SELECT * FROM bulk_rows WHERE job_id = ? ORDER BY position", (job_id,)
            ).fetchall()
            for record in rows:
                row = _row_from_record(record)
                source_row_id = row.id
                row.id = str(uuid.uuid4())
                row.job_id = copy_id
                self._insert_row(conn, row)
                pins = conn.execute(
                    "SELECT * FROM generated_pins WHERE row_id = ? ORDER BY rowid", (source_row_id,)
                ).fetchall()
                for pin_record in pins:
                    pin = _pin_from_record(pin_record)
                    pin.id = str(uuid.uuid4())
                    pin.row_id = row.id
                    self._insert_pin(conn, pin)

        logger.info(f"Duplicated bulk job {source.id} as {copy_id} for user {target_user_id}")
        return self.get_job(copy_id)

    # -- Rows ----------------------------------------------------------------

    def list_rows(self, job_id: str, statuses: Sequence[RowStatus] | None = None) -> list[BulkRow]:
        """Return the rows of a job in creation order."""
        query = "SELECT * FROM bulk_rows WHERE job_id = ?"
        params: list = [job_id]
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(s.value for s in statuses)
        query += " ORDER BY position ASC"
        with self._connect() as conn:
            records = conn.execute(query, params).fetchall()
        return [_row_from_record(r) for r in records]

    def get_row(self, row_id: str) -> BulkRow | None:
        with self._connect() as conn:
            record = conn.execute("SELECT * FROM bulk_rows WHERE id = ?", (row_id,)).fetchone()
        return _row_from_record(record) if record else None

    def start_row(self, job_id: str, row_id: str) -> bool:
        """Atomically move a PENDING row to PROCESSING while its job is PROCESSING.

        Returns:
            False if the job was cancelled (or deleted) or the row was
            already started; nothing is changed then.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE bulk_rows SET status = ?, updated_at = ?
                WHERE id = ? AND job_id = ? AND status = ?
                  AND EXISTS (SELECT 1 FROM bulk_jobs WHERE id = ? AND status = ?)
                """,
                (
                    RowStatus.PROCESSING.value,
                    utcnow_iso(),
                    row_id,
                    job_id,
                    RowStatus.PENDING.value,
                    job_id,
                    JobStatus.PROCESSING.value,
                ),
            )
            return cursor.rowcount > 0

    def release_interrupted_rows(self) -> int:
        """Put rows left PROCESSING by an interrupted run back to PENDING.

        Must only be called while no worker is running.

        Returns:
            The number of rows released.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE bulk_rows SET status = ?, updated_at = ? WHERE status = ?",
                (RowStatus.PENDING.value, utcnow_iso(), RowStatus.PROCESSING.value),
            )
            released = cursor.rowcount
        if released:
            logger.warning(f"Released {released} interrupted row(s) back to PENDING")
        return released

    def update_row(
        self,
        row_id: str,
        *,
        stage_calls: Sequence[StageCall] | None = None,
        failed_pins: int | None = None,
    ) -> None:
        """Save a running row's progress; ``None`` leaves a field untouched."""
        assignments = ["updated_at = ?"]
        params: list = [utcnow_iso()]
        if stage_calls is not None:
            assignments.append("stage_calls = ?")
            params.append(dumps([c.to_dict() for c in stage_calls]))
        if failed_pins is not None:
            assignments.append("failed_pins = ?")
            params.append(failed_pins)
        params.append(row_id)
        with self._connect() as conn:
            conn.execute(f"UPDATE bulk_rows SET {', '.join(assignments)} WHERE id = ?", params)

    def finish_row(
        self,
        job_id: str,
        row_id: str,
        status: RowStatus,
        *,
        error: str | None = None,
        stage_calls: Sequence[StageCall] = (),
        failed_pins: int = 0,
    ) -> None:
        """Record a row's terminal state and bump the job counter atomically."""
        if not status.is_terminal:
            raise ValueError(f"finish_row requires a terminal status, got {status.value}")
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE bulk_rows
                SET status = ?, error = ?, stage_calls = ?, failed_pins = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    error,
                    dumps([c.to_dict() for c in stage_calls]),
                    failed_pins,
                    utcnow_iso(),
                    row_id,
                ),
            )
            if status is RowStatus.COMPLETED:
                self._increment_counters(conn, job_id, completed=1, failed=0)
            else:
                self._increment_counters(conn, job_id, completed=0, failed=1)

    # -- Pins ----------------------------------------------------------------

    def create_pin(self, pin: GeneratedPin) -> GeneratedPin:
        """Persist a generated pin and bump its row's completed count."""
        pin.id = pin.id or str(uuid.uuid4())
        pin.created_at = pin.created_at or utcnow_iso()
        with self._connect() as conn:
            self._insert_pin(conn, pin)
            conn.execute(
                "UPDATE bulk_rows SET completed_pins = completed_pins + 1, updated_at = ? WHERE id = ?",
                (utcnow_iso(), pin.row_id),
            )
        return pin

    def list_pins(self, row_id: str) -> list[GeneratedPin]:
        with self._connect() as conn:
            records = conn.execute(
                "SELECT * FROM generated_pins WHERE row_id = ? ORDER BY rowid", (row_id,)
            ).fetchall()
        return [_pin_from_record(r) for r in records]

    def list_job_pins(self, job_id: str) -> list[GeneratedPin]:
        """Return all pins of a job, ordered by row position then creation."""
        with self._connect() as conn:
            records = conn.execute(
                """
                SELECT p.* FROM generated_pins p
                JOIN bulk_rows r ON r.id = p.row_id
                WHERE r.job_id = ?
                ORDER BY r.position ASC, p.rowid ASC
                """,
                (job_id,),
            ).fetchall()
        return [_pin_from_record(r) for r in records]

    def find_pin(self, pin_id: str) -> tuple[GeneratedPin, BulkJob] | None:
        """Return a pin together with the job it belongs to."""
        with self._connect() as conn:
            record = conn.execute(
                """
                SELECT p.*, r.job_id AS pin_job_id FROM generated_pins p
                JOIN bulk_rows r ON r.id = p.row_id
                WHERE p.id = ?
                """,
                (pin_id,),
            ).fetchone()
        if record is None:
            return None
        return _pin_from_record(record), self.get_job(record["pin_job_id"])

    def update_pin(
        self,
        pin_id: str,
        *,
        image_path: str,
        image_url: str,
        template_id: str | None,
        stage_calls: Sequence[StageCall],
    ) -> None:
        """Point a pin at a new final image."""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE generated_pins
                SET image_path = ?, image_url = ?, template_id = ?, stage_calls = ?
                WHERE id = ?
                """,
                (
                    image_path,
                    image_url,
                    template_id,
                    dumps([c.to_dict() for c in stage_calls]),
                    pin_id,
                ),
            )

    def count_pins_under(self, path_prefix: str) -> int:
        """Count pins whose image lives below *path_prefix* (duplicates share files)."""
        with self._connect() as conn:
            record = conn.execute(
                "SELECT COUNT(*) FROM generated_pins WHERE image_path LIKE ? || '%'",
                (path_prefix,),
            ).fetchone()
        return int(record[0])

    # -- Internals -----------------------------------------------------------

    @staticmethod
    def _increment_counters(conn: sqlite3.Connection, job_id: str, completed: int, failed: int) -> bool:
        cursor = conn.execute(
            """
            UPDATE bulk_jobs
            SET completed_rows = completed_rows + ?,
                failed_rows = failed_rows + ?,
                updated_at = ?
            WHERE id = ? AND completed_rows + failed_rows + ? + ? <= total_rows
            """,
            (completed, failed, utcnow_iso(), job_id, completed, failed),
        )
        if cursor.rowcount == 0:
            logger.warning(f"Refused counter increment on bulk job {job_id} (+{completed}/+{failed})")
            return False
        return True

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, row: BulkRow) -> None:
        conn.execute(
            """
            INSERT INTO bulk_rows (
                id, job_id, position, keywords, image_url, quantity,
                title, description, alt_text, scheduled_at, status,
                completed_pins, failed_pins, error, stage_calls, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row.id,
                row.job_id,
                row.position,
                row.keywords,
                row.image_url,
                row.quantity,
                row.title,
                row.description,
                row.alt_text,
                row.scheduled_at,
                row.status.value,
                row.completed_pins,
                row.failed_pins,
                row.error,
                dumps([c.to_dict() for c in row.stage_calls]),
                row.created_at,
                row.updated_at,
            ),
        )

    @staticmethod
    def _insert_pin(conn: sqlite3.Connection, pin: GeneratedPin) -> None:
        conn.execute(
            """
            INSERT INTO generated_pins (
                id, row_id, title, description, keywords, alt_text,
                image_path, image_url, source_path, template_id, stage_calls, status, error, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pin.id,
                pin.row_id,
                pin.title,
                pin.description,
                dumps(pin.keywords),
                pin.alt_text,
                pin.image_path,
                pin.image_url,
                pin.source_path,
                pin.template_id,
                dumps([c.to_dict() for c in pin.stage_calls]),
                pin.status,
                pin.error,
                pin.created_at,
            ),
        )


def _stage_calls(text: str | None) -> list[StageCall]:
    return [StageCall.from_dict(c) for c in loads(text, []) if isinstance(c, dict)]


def _job_from_record(record: sqlite3.Row) -> BulkJob:
    return BulkJob(
        id=record["id"],
        user_id=record["user_id"],
        name=record["name"],
        image_desc_credential_id=record["image_desc_credential_id"],
        keyword_credential_id=record["keyword_credential_id"],
        image_gen_credential_id=record["image_gen_credential_id"],
        image_desc_model=record["image_desc_model"],
        keyword_model=record["keyword_model"],
        image_gen_model=record["image_gen_model"],
        template_id=record["template_id"],
        image_width=record["image_width"],
        image_height=record["image_height"],
        status=JobStatus(record["status"]),
        total_rows=record["total_rows"],
        completed_rows=record["completed_rows"],
        failed_rows=record["failed_rows"],
        error=record["error"],
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _row_from_record(record: sqlite3.Row) -> BulkRow:
    return BulkRow(
        id=record["id"],
        job_id=record["job_id"],
        position=record["position"],
        keywords=record["keywords"],
        image_url=record["image_url"],
        quantity=record["quantity"],
        title=record["title"],
        description=record["description"],
        alt_text=record["alt_text"],
        scheduled_at=record["scheduled_at"],
        status=RowStatus(record["status"]),
        completed_pins=record["completed_pins"],
        failed_pins=record["failed_pins"],
        error=record["error"],
        stage_calls=_stage_calls(record["stage_calls"]),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _pin_from_record(record: sqlite3.Row) -> GeneratedPin:
    return GeneratedPin(
        id=record["id"],
        row_id=record["row_id"],
        title=record["title"],
        description=record["description"],
        keywords=loads(record["keywords"], []),
        alt_text=record["alt_text"],
        image_path=record["image_path"],
        image_url=record["image_url"],
        source_path=record["source_path"],
        template_id=record["template_id"],
        stage_calls=_stage_calls(record["stage_calls"]),
        status=record["status"],
        error=record["error"],
        created_at=record["created_at"],
    )
