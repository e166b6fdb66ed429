"""Users and the role/module/action permission matrix.

Admins hold every permission.  Other users hold exactly the actions listed
in their *enabled* module rows.  All endpoints consult a single
:class:`PermissionPolicy`; the bulk pipeline itself is never
permission-checked.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from pinworks.core.database import SQLiteStore, dumps, loads
from pinworks.core.errors import UserNotFoundError
from pinworks.core.models import utcnow_iso

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class Module(str, Enum):
    API_KEYS = "API_KEYS"
    PROMPTS = "PROMPTS"
    TEMPLATES = "TEMPLATES"
    GENERATION = "GENERATION"
    BULK_GENERATION = "BULK_GENERATION"
    HISTORY = "HISTORY"
    USERS = "USERS"
    LOGS = "LOGS"


class Action(str, Enum):
    VIEW = "VIEW"
    CREATE = "CREATE"
    EDIT = "EDIT"
    DELETE = "DELETE"


@dataclass
class User:
    id: str
    email: str
    name: str | None = None
    role: Role = Role.USER
    created_at: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


@dataclass
class ModulePermission:
    module: Module
    actions: list[Action] = field(default_factory=list)
    enabled: bool = True


@dataclass
class UserPermissions:
    """Effective permissions of one user."""

    is_admin: bool
    permissions: list[ModulePermission] = field(default_factory=list)

    def allows(self, module: Module, action: Action) -> bool:
        if self.is_admin:
            return True
        for entry in self.permissions:
            if entry.module is module:
                return entry.enabled and action in entry.actions
        return False

    def accessible_modules(self) -> list[Module]:
        return [p.module for p in self.permissions if p.enabled and p.actions]

    def to_dict(self) -> dict:
        return {
            "is_admin": self.is_admin,
            "permissions": [
                {
                    "module": p.module.value,
                    "actions": [a.value for a in p.actions],
                    "enabled": p.enabled,
                }
                for p in self.permissions
            ],
        }


class UserStore(SQLiteStore):
    """Users and their per-module permission rows."""

    schema = (
        """
        CREATE TABLE IF NOT EXISTS users (
            id TEXT PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            name TEXT,
            role TEXT NOT NULL DEFAULT 'USER',
            created_at TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS module_permissions (
            user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            module TEXT NOT NULL,
            actions TEXT NOT NULL,
            enabled INTEGER NOT NULL DEFAULT 1,
            PRIMARY KEY (user_id, module)
        )
        """,
    )

    def create_user(
        self,
        email: str,
        name: str | None = None,
        role: Role = Role.USER,
        user_id: str | None = None,
    ) -> User:
        user = User(
            id=user_id or str(uuid.uuid4()),
            email=email,
            name=name,
            role=role,
            created_at=utcnow_iso(),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO users (id, email, name, role, created_at) VALUES (?, ?, ?, ?, ?)",
                (user.id, user.email, user.name, user.role.value, user.created_at),
            )
        logger.info(f"Created {role.value} user {user.id} <{email}>")
        return user

    def get_user(self, user_id: str) -> User | None:
        with self._connect() as conn:
            record = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_record(record) if record else None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            records = conn.execute("SELECT * FROM users ORDER BY created_at, rowid").fetchall()
        return [_user_from_record(r) for r in records]

    def set_module_permissions(
        self,
        user_id: str,
        module: Module,
        actions: Iterable[Action],
        enabled: bool = True,
    ) -> None:
        """Replace the actions a user holds on one module."""
        if self.get_user(user_id) is None:
            raise UserNotFoundError(user_id)
        unique = sorted({Action(a) for a in actions}, key=lambda a: list(Action).index(a))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO module_permissions (user_id, module, actions, enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, module) DO UPDATE SET
                    actions = excluded.actions,
                    enabled = excluded.enabled
                """,
                (user_id, module.value, dumps([a.value for a in unique]), 1 if enabled else 0),
            )
        logger.info(f"Set {module.value} permissions for user {user_id}: {[a.value for a in unique]}")

    def get_user_permissions(self, user_id: str) -> UserPermissions:
        """Return a user's effective permissions.

        Raises:
            UserNotFoundError: If the user does not exist.
        """
        user = self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if user.is_admin:
            return UserPermissions(
                is_admin=True,
                permissions=[ModulePermission(module=m, actions=list(Action)) for m in Module],
            )

        with self._connect() as conn:
            records = conn.execute(
                "SELECT module, actions, enabled FROM module_permissions WHERE user_id = ? AND enabled = 1",
                (user_id,),
            ).fetchall()
        permissions = []
        for record in records:
            try:
                module = Module(record["module"])
            except ValueError:
                logger.warning(f"Ignoring unknown module {record['module']!r} for user {user_id}")
                continue
            actions = [Action(a) for a in loads(record["actions"], []) if a in Action.__members__]
            permissions.append(ModulePermission(module=module, actions=actions, enabled=True))
        return UserPermissions(is_admin=False, permissions=permissions)


class PermissionPolicy:
    """Single entry point for ``(user, module, action) -> bool`` checks."""

    def __init__(self, store: UserStore):
        self.store = store

    def check(self, user_id: str, module: Module, action: Action) -> bool:
        """Return True if the user may perform *action* on *module*.

        Unknown users are denied.
        """
        try:
            permissions = self.store.get_user_permissions(user_id)
        except UserNotFoundError:
            return False
        allowed = permissions.allows(module, action)
        if not allowed:
            logger.debug(f"Denied {module.value}/{action.value} for user {user_id}")
        return allowed

    def is_admin(self, user_id: str) -> bool:
        user = self.store.get_user(user_id)
        return user is not None and user.is_admin


def _user_from_record(record: sqlite3.Row) -> User:
    return User(
        id=record["id"],
        email=record["email"],
        name=record["name"],
        role=Role(record["role"]),
        created_at=record["created_at"],
    )
