"""SQLite connection handling shared by the Pinworks stores."""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from pinworks.core.errors import JobStoreError

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Base class for stores backed by a single SQLite file.

    Each operation opens a short-lived connection, runs inside one
    transaction, and closes the connection.  Foreign keys are enabled on
    every connection so ``ON DELETE CASCADE`` clauses take effect.

    Any ``sqlite3.Error`` is re-raised as :class:`JobStoreError` so callers
    only need to handle a single persistence exception type.

    Subclasses provide their DDL through :attr:`schema`.
    """

    schema: tuple[str, ...] = ()

    def __init__(self, db_path: Path | str):
        """Initialize the store and create its schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _initialize_db(self) -> None:
        """Create tables and indexes if they don't exist."""
        with self._connect() as conn:
            for statement in self.schema:
                conn.execute(statement)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection wrapped in a transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise JobStoreError(f"Cannot open database {self.db_path}: {e}") from e

        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        except sqlite3.Error as e:
            logger.error(f"Database error on {self.db_path}: {e}")
            raise JobStoreError(str(e)) from e
        finally:
            conn.close()


def dumps(value: Any) -> str:
    """Serialise a value to a JSON column."""
    return json.dumps(value, ensure_ascii=False, default=str)


def loads(text: str | None, default: Any) -> Any:
    """Parse a JSON column, returning *default* for empty or corrupt values."""
    if not text:
        return default
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable JSON column value")
        return default
