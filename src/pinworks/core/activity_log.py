"""User-facing activity log.

Notable events (a bulk job finishing, an API key being added, a pin being
re-templated, ...) are stored per user so they can be browsed through
``GET /api/logs``.  Every entry is mirrored to the ``logging`` module.

Writing an entry never breaks the operation being logged: a persistence
failure is reported through ``logging`` and the entry is dropped.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pinworks.core.database import SQLiteStore, dumps, loads
from pinworks.core.errors import JobStoreError
from pinworks.core.models import utcnow_iso

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


class LogModule(str, Enum):
    """Area of the application an entry belongs to."""

    GENERATION = "GENERATION"
    API_KEY = "API_KEY"
    TEMPLATE = "TEMPLATE"
    IMAGE_PROCESSING = "IMAGE_PROCESSING"
    USERS = "USERS"


_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


@dataclass
class ActivityLog:
    id: str
    user_id: str | None
    level: LogLevel
    module: LogModule
    action: str
    message: str
    resource_id: str | None = None
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "level": self.level.value,
            "module": self.module.value,
            "action": self.action,
            "message": self.message,
            "resource_id": self.resource_id,
            "error": self.error,
            "details": self.details,
            "created_at": self.created_at,
        }


class ActivityLogStore(SQLiteStore):
    """Append and query activity log entries."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS activity_logs (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            level TEXT NOT NULL,
            module TEXT NOT NULL,
            action TEXT NOT NULL,
            message TEXT NOT NULL,
            resource_id TEXT,
            error TEXT,
            details TEXT,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_activity_logs_user ON activity_logs(user_id, created_at DESC)",
        "CREATE INDEX IF NOT EXISTS idx_activity_logs_resource ON activity_logs(resource_id)",
    )

    def log(
        self,
        user_id: str | None,
        level: LogLevel,
        module: LogModule,
        action: str,
        message: str,
        *,
        resource_id: str | None = None,
        error: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ActivityLog | None:
        """Record an event.

        Returns:
            The stored entry, or None if it could not be written.
        """
        entry = ActivityLog(
            id=str(uuid.uuid4()),
            user_id=user_id,
            level=level,
            module=module,
            action=action,
            message=message,
            resource_id=resource_id,
            error=error,
            details=details or {},
            created_at=utcnow_iso(),
        )
        logger.log(
            _LOGGING_LEVELS[level],
            f"[{module.value}] {action}: {message}" + (f" ({error})" if error else ""),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO activity_logs (
                        id, user_id, level, module, action, message,
                        resource_id, error, details, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.id,
                        entry.user_id,
                        entry.level.value,
                        entry.module.value,
                        entry.action,
                        entry.message,
                        entry.resource_id,
                        entry.error,
                        dumps(entry.details),
                        entry.created_at,
                    ),
                )
        except JobStoreError as e:
            logger.error(f"Failed to write activity log entry {action}: {e}")
            return None
        return entry

    def list_logs(
        self,
        *,
        user_id: str | None = None,
        level: LogLevel | None = None,
        module: LogModule | None = None,
        resource_id: str | None = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[ActivityLog], int]:
        """Return one page of entries, newest first, plus the total match count."""
        clauses: list[str] = []
        params: list = []
        if user_id:
            clauses.append("user_id = ?")
            params.append(user_id)
        if level is not None:
            clauses.append("level = ?")
            params.append(level.value)
        if module is not None:
            clauses.append("module = ?")
            params.append(module.value)
        if resource_id:
            clauses.append("resource_id = ?")
            params.append(resource_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        page = max(1, page)
        per_page = max(1, min(100, per_page))
        with self._connect() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM activity_logs {where}", params).fetchone()[0]
            records = conn.execute(
                f"SELECT * FROM activity_logs {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                [*params, per_page, (page - 1) * per_page],
            ).fetchall()
        return [_log_from_record(r) for r in records], int(total)


def _log_from_record(record: sqlite3.Row) -> ActivityLog:
    return ActivityLog(
        id=record["id"],
        user_id=record["user_id"],
        level=LogLevel(record["level"]),
        module=LogModule(record["module"]),
        action=record["action"],
        message=record["message"],
        resource_id=record["resource_id"],
        error=record["error"],
        details=loads(record["details"], {}),
        created_at=record["created_at"],
    )
