from __future__ import annotations

from typing import AbstractSet

from fastapi import Depends, HTTPException, status

from app.infra.auth import AuthenticatedUser, get_current_user, has_any_role


def require_roles(required: AbstractSet[str]):
    """Dependency factory: the caller must hold at least one of ``required``."""
    roles = frozenset(str(role).strip() for role in required if str(role).strip())

    async def _dep(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
        if has_any_role(user.roles, roles):
            return user
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="forbidden")

    return _dep


__all__ = ["get_current_user", "require_roles"]
