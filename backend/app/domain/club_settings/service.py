"""Club settings stored as typed key/value rows.

Values are read and written through the database on every call so several
API instances always agree on flags such as ``waitlist_open``.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Union

import asyncpg

from app.domain.club_settings.schemas import ClubSetting, SettingType
from app.domain.workshops import policy
from app.domain.workshops.exceptions import NotFoundError, ValidationError
from app.domain.workshops.service import actor_uuid
from app.infra.auth import SETTINGS_ROLES, AuthenticatedUser
from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off"})


def coerce_value(setting_type: SettingType, value: Union[bool, int, str]) -> str:
	"""Validate ``value`` against the declared type and return its stored text form."""
	if setting_type is SettingType.BOOLEAN:
		if isinstance(value, bool):
			return "true" if value else "false"
		text = str(value).strip().lower()
		if text in _TRUE_VALUES:
			return "true"
		if text in _FALSE_VALUES:
			return "false"
		raise ValidationError("Setting expects a boolean value")
	if setting_type is SettingType.INTEGER:
		if isinstance(value, bool):
			raise ValidationError("Setting expects an integer value")
		try:
			number = int(str(value).strip())
		except ValueError as exc:
			raise ValidationError("Setting expects an integer value") from exc
		if number < 0:
			raise ValidationError("Setting value cannot be negative")
		return str(number)
	return str(value)


class ClubSettingsService:
	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	async def get_tx(self, conn: asyncpg.Connection, key: str) -> Optional[ClubSetting]:
		row = await conn.fetchrow("SELECT * FROM settings WHERE key = $1", key)
		return ClubSetting.model_validate(dict(row)) if row else None

	async def get(self, key: str) -> ClubSetting:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			setting = await self.get_tx(conn, key)
		if setting is None:
			raise NotFoundError("Setting not found")
		return setting

	async def list(self, keys: Optional[Iterable[str]] = None) -> List[ClubSetting]:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			if keys is None:
				rows = await conn.fetch("SELECT * FROM settings ORDER BY key ASC")
			else:
				rows = await conn.fetch(
					"SELECT * FROM settings WHERE key = ANY($1::text[]) ORDER BY key ASC",
					list(keys),
				)
		return [ClubSetting.model_validate(dict(row)) for row in rows]

	async def update(
		self,
		actor: AuthenticatedUser,
		key: str,
		value: Union[bool, int, str],
	) -> ClubSetting:
		policy.require_any_role(actor, SETTINGS_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				current = await self.get_tx(conn, key)
				if current is None:
					raise NotFoundError("Setting not found")
				stored = coerce_value(current.type, value)
				row = await conn.fetchrow(
					"""
					UPDATE settings
					SET value = $2, updated_at = now(), updated_by = $3
					WHERE key = $1 AND type = $4
					RETURNING *
					""",
					key,
					stored,
					actor_uuid(actor),
					current.type.value,
				)
		obs_metrics.inc_settings_update(key)
		LOGGER.info("club_setting_updated", extra={"setting": key, "actor_id": actor.id})
		return ClubSetting.model_validate(dict(row))

	async def toggle(self, actor: AuthenticatedUser, key: str) -> ClubSetting:
		"""Flip a boolean setting in a single conditioned update."""
		policy.require_any_role(actor, SETTINGS_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				UPDATE settings
				SET value = CASE WHEN lower(value) = 'true' THEN 'false' ELSE 'true' END,
					updated_at = now(),
					updated_by = $2
				WHERE key = $1 AND type = $3
				RETURNING *
				""",
				key,
				actor_uuid(actor),
				SettingType.BOOLEAN.value,
			)
			if row is None:
				existing = await self.get_tx(conn, key)
				if existing is None:
					raise NotFoundError("Setting not found")
				raise ValidationError("Only boolean settings can be toggled")
		setting = ClubSetting.model_validate(dict(row))
		obs_metrics.inc_settings_update(key)
		LOGGER.info("club_setting_toggled", extra={"setting": key, "value": setting.value, "actor_id": actor.id})
		return setting

	async def is_enabled(self, key: str) -> bool:
		setting = await self.get(key)
		if setting.type is not SettingType.BOOLEAN:
			raise ValidationError("Setting is not a boolean")
		return bool(setting.parsed())
