"""Club settings endpoints."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from app.api.security_deps import get_current_user, require_roles
from app.domain.club_settings.schemas import ClubSetting, SettingUpdateRequest
from app.domain.club_settings.service import ClubSettingsService
from app.infra.auth import SETTINGS_ROLES, AuthenticatedUser

router = APIRouter(prefix="/settings", tags=["settings"])
_service = ClubSettingsService()


@router.get("/", response_model=List[ClubSetting])
async def list_settings(
	keys: Optional[List[str]] = Query(default=None, alias="key"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[ClubSetting]:
	return await _service.list(keys)


@router.get("/{key}", response_model=ClubSetting)
async def get_setting(
	key: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> ClubSetting:
	return await _service.get(key)


@router.put("/{key}", response_model=ClubSetting)
async def update_setting(
	key: str,
	payload: SettingUpdateRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(SETTINGS_ROLES)),
) -> ClubSetting:
	return await _service.update(auth_user, key, payload.value)


@router.post("/{key}/toggle", response_model=ClubSetting)
async def toggle_setting(
	key: str,
	auth_user: AuthenticatedUser = Depends(require_roles(SETTINGS_ROLES)),
) -> ClubSetting:
	return await _service.toggle(auth_user, key)
