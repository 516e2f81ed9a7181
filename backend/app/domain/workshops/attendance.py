"""Attendance tracking for workshops that have started."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

import asyncpg

from app.domain.workshops import models, policy
from app.domain.workshops.exceptions import ValidationError
from app.domain.workshops.schemas import AttendanceUpdate, AttendanceUpdateResult, RegistrationStatus
from app.domain.workshops.service import WorkshopService, actor_uuid
from app.infra.auth import ATTENDEE_ROLES, AuthenticatedUser
from app.infra.postgres import get_pool

LOGGER = logging.getLogger(__name__)


class AttendanceService:
	def __init__(self, workshops: Optional[WorkshopService] = None) -> None:
		self._workshops = workshops or WorkshopService()

	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	async def get_workshop_attendance(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
	) -> List[models.AttendanceRecord]:
		policy.require_any_role(actor, ATTENDEE_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT r.id AS registration_id,
					r.member_user_id,
					r.external_user_id,
					COALESCE(up.first_name, eu.first_name) AS first_name,
					COALESCE(up.last_name, eu.last_name) AS last_name,
					r.attendance_status,
					r.attendance_marked_at,
					r.attendance_marked_by,
					r.attendance_notes
				FROM club_activity_registrations r
				LEFT JOIN user_profiles up ON up.supabase_user_id = r.member_user_id
				LEFT JOIN external_users eu ON eu.id = r.external_user_id
				WHERE r.club_activity_id = $1 AND r.status = $2
				ORDER BY r.registered_at ASC
				""",
				workshop_id,
				RegistrationStatus.CONFIRMED.value,
			)
		return [models.AttendanceRecord.model_validate(dict(row)) for row in rows]

	async def update_attendance(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
		updates: Sequence[AttendanceUpdate],
		*,
		now: Optional[datetime] = None,
	) -> AttendanceUpdateResult:
		"""Apply each update to the matching registration of this workshop.

		Updates naming a registration of another workshop are skipped.
		"""
		policy.require_any_role(actor, ATTENDEE_ROLES)
		if not updates:
			raise ValidationError("At least one attendance update is required")
		marked_by = actor_uuid(actor)
		updated: list[UUID] = []
		skipped: list[UUID] = []
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				workshop = await self._workshops.require_workshop_tx(conn, workshop_id)
				policy.assert_attendance_open(workshop, now=now)
				for update in updates:
					matched = await conn.fetchval(
						"""
						UPDATE club_activity_registrations
						SET attendance_status = $3,
							attendance_marked_by = $4,
							attendance_marked_at = now(),
							attendance_notes = $5,
							updated_at = now()
						WHERE id = $1 AND club_activity_id = $2
						RETURNING id
						""",
						update.registration_id,
						workshop_id,
						update.attendance_status.value,
						marked_by,
						update.notes,
					)
					(updated if matched else skipped).append(update.registration_id)
		if skipped:
			LOGGER.warning(
				"attendance_updates_skipped",
				extra={"workshop_id": str(workshop_id), "skipped": [str(rid) for rid in skipped]},
			)
		LOGGER.info(
			"attendance_updated",
			extra={"workshop_id": str(workshop_id), "updated": len(updated), "actor_id": actor.id},
		)
		return AttendanceUpdateResult(updated=updated, skipped=skipped)
