"""Authentication helpers for FastAPI endpoints.

- Bearer JWT verification (HS256) using settings.secret_key.
- Dev headers (X-User-Id / X-User-Roles) are only respected in development.
- Club roles are an explicit enumeration; role checks are set intersections.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import AbstractSet, Iterable, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.settings import settings
from app.infra import jwt as jwt_helper


class Role(str, Enum):
	ADMIN = "admin"
	PRESIDENT = "president"
	COMMITTEE_COORDINATOR = "committee_coordinator"
	WORKSHOP_COORDINATOR = "workshop_coordinator"
	BEGINNERS_COORDINATOR = "beginners_coordinator"
	TREASURER = "treasurer"
	COACH = "coach"
	MEMBER = "member"


WORKSHOP_ROLES: frozenset[str] = frozenset(
	{Role.WORKSHOP_COORDINATOR.value, Role.PRESIDENT.value, Role.ADMIN.value}
)
SETTINGS_ROLES: frozenset[str] = frozenset(
	{Role.PRESIDENT.value, Role.COMMITTEE_COORDINATOR.value, Role.ADMIN.value}
)
ATTENDEE_ROLES: frozenset[str] = WORKSHOP_ROLES | {Role.BEGINNERS_COORDINATOR.value}


def has_any_role(user_roles: Iterable[str], required: AbstractSet[str]) -> bool:
	"""True when the caller holds at least one of ``required``."""
	if not required:
		return True
	return bool(set(user_roles) & set(required))


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()
	display_name: Optional[str] = None
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles

	def has_any_role(self, required: AbstractSet[str]) -> bool:
		return has_any_role(self.roles, required)


_bearer_scheme = HTTPBearer(auto_error=False)


def _parse_roles(claim: object) -> Tuple[str, ...]:
	if isinstance(claim, (list, tuple, set)):
		return tuple(str(r).strip() for r in claim if str(r).strip())
	if isinstance(claim, str):
		return tuple(part.strip() for part in claim.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser.

	Roles can be a top-level ``roles`` claim or ``app_metadata.roles``,
	as a list or a comma-separated string.
	"""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	roles_claim = payload.get("roles")
	app_metadata = payload.get("app_metadata")
	if roles_claim is None and isinstance(app_metadata, dict):
		roles_claim = app_metadata.get("roles")
	display_name = payload.get("name") or payload.get("display_name")
	session_id = payload.get("sid")

	return AuthenticatedUser(
		id=sub,
		roles=_parse_roles(roles_claim),
		display_name=str(display_name) if display_name is not None else None,
		session_id=str(session_id).strip() if session_id is not None else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)

	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(id=x_user_id, roles=_parse_roles(x_user_roles or ""))

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
