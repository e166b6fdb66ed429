"""Request identity and permission dependencies.

Callers identify themselves with the ``X-User-Id`` header; issuing and
verifying that identity is the job of a fronting gateway.  Every protected
route declares ``Depends(require_permission(module, action))``, which
resolves the user and evaluates the shared :class:`PermissionPolicy`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import Depends, Header, HTTPException, Request

from pinworks.core.permissions import Action, Module, PermissionPolicy, User

logger = logging.getLogger(__name__)


def get_policy(request: Request) -> PermissionPolicy:
    return request.app.state.services.policy


def get_current_user(
    request: Request,
    x_user_id: str | None = Header(default=None),
) -> User:
    """Resolve the calling user from the ``X-User-Id`` header.

    Raises:
        HTTPException: 401 if the header is missing or names no user.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    user = request.app.state.services.users.get_user(x_user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


def require_permission(module: Module, action: Action) -> Callable[..., User]:
    """Build a dependency that admits users holding ``module``/``action``."""

    def dependency(
        user: User = Depends(get_current_user),
        policy: PermissionPolicy = Depends(get_policy),
    ) -> User:
        if not policy.check(user.id, module, action):
            logger.info(f"User {user.id} denied {module.value}/{action.value}")
            raise HTTPException(
                status_code=403,
                detail=f"Permission denied: {module.value}/{action.value}",
            )
        return user

    return dependency


def require_admin(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
