"""Persistent storage of provider API keys ("credentials").

Each credential belongs to exactly one user.  The bulk pipeline looks
credentials up by id through :meth:`CredentialStore.resolve`, which treats
missing, inactive and foreign credentials identically so that callers cannot
look up other users' keys.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid

from pinworks.core.database import SQLiteStore
from pinworks.core.errors import CredentialNotFoundError
from pinworks.core.models import Credential, utcnow_iso

logger = logging.getLogger(__name__)


class CredentialStore(SQLiteStore):
    """Store and resolve per-user provider credentials."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS api_keys (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL,
            provider_type TEXT NOT NULL,
            secret TEXT NOT NULL,
            model_name TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_api_keys_user ON api_keys(user_id)",
    )

    def create_credential(
        self,
        user_id: str,
        name: str,
        provider_type: str,
        secret: str,
        model_name: str | None = None,
    ) -> Credential:
        """Register a new API key for a user.

        Args:
            user_id: Owner of the key
            name: Display name
            provider_type: Provider adapter key (``openai``, ``fal``, ...)
            secret: The API key itself
            model_name: Optional default model for this key

        Returns:
            The stored credential
        """
        credential = Credential(
            id=str(uuid.uuid4()),
            user_id=user_id,
            name=name,
            provider_type=provider_type,
            secret=secret,
            model_name=model_name or None,
            is_active=True,
            created_at=utcnow_iso(),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO api_keys
                    (id, user_id, name, provider_type, secret, model_name, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (
                    credential.id,
                    credential.user_id,
                    credential.name,
                    credential.provider_type,
                    credential.secret,
                    credential.model_name,
                    credential.created_at,
                ),
            )
        logger.info(f"Stored {provider_type} credential {credential.id} for user {user_id}")
        return credential

    def get_credential(self, credential_id: str) -> Credential | None:
        with self._connect() as conn:
            record = conn.execute("SELECT * FROM api_keys WHERE id = ?", (credential_id,)).fetchone()
        return _credential_from_record(record) if record else None

    def list_credentials(self, user_id: str) -> list[Credential]:
        """Return a user's credentials, newest first."""
        with self._connect() as conn:
            records = conn.execute(
                "SELECT * FROM api_keys WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [_credential_from_record(r) for r in records]

    def set_active(self, credential_id: str, user_id: str, is_active: bool) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE api_keys SET is_active = ? WHERE id = ? AND user_id = ?",
                (1 if is_active else 0, credential_id, user_id),
            )
            return cursor.rowcount > 0

    def delete_credential(self, credential_id: str, user_id: str) -> bool:
        """Delete a user's credential.

        Returns:
            True if a credential was deleted, False if none matched
        """
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM api_keys WHERE id = ? AND user_id = ?", (credential_id, user_id)
            )
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted credential {credential_id}")
        return deleted

    def resolve(self, credential_id: str, user_id: str) -> Credential:
        """Return an active credential owned by *user_id*.

        Raises:
            CredentialNotFoundError: If the credential is absent, inactive,
                or owned by another user.
        """
        credential = self.get_credential(credential_id)
        if credential is None or not credential.is_active or credential.user_id != user_id:
            raise CredentialNotFoundError(credential_id)
        return credential


def _credential_from_record(record: sqlite3.Row) -> Credential:
    return Credential(
        id=record["id"],
        user_id=record["user_id"],
        name=record["name"],
        provider_type=record["provider_type"],
        secret=record["secret"],
        model_name=record["model_name"],
        is_active=bool(record["is_active"]),
        created_at=record["created_at"],
    )
