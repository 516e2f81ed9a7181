"""Workshop entity manager: CRUD and status transitions."""

from __future__ import annotations

import logging
from typing import Any, List, NoReturn, Optional
from uuid import UUID

import asyncpg
import stripe

from app.domain.workshops import models, policy
from app.domain.workshops.exceptions import (
	EligibilityError,
	NotFoundError,
	ValidationError,
	WrongStateError,
)
from app.domain.workshops.schemas import (
	ACTIVE_REGISTRATION_STATUSES,
	CanEditResponse,
	RefundStatus,
	RegistrationStatus,
	WorkshopCreateRequest,
	WorkshopFilters,
	WorkshopStatus,
	WorkshopUpdateRequest,
)
from app.infra.auth import WORKSHOP_ROLES, AuthenticatedUser
from app.infra.payments import PaymentProvider, is_already_refunded
from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

CANCELLATION_REFUND_REASON = "Workshop cancelled"

_NON_NULLABLE_FIELDS = frozenset(
	{"title", "location", "start_date", "end_date", "max_capacity", "price_member", "is_public"}
)


def actor_uuid(user: AuthenticatedUser) -> UUID:
	try:
		return UUID(str(user.id))
	except ValueError as exc:
		raise ValidationError("invalid_user_id") from exc


class WorkshopService:
	"""Creates workshops and moves them through planned, published, cancelled and finished."""

	def __init__(self, provider: Optional[PaymentProvider] = None) -> None:
		self._provider = provider or PaymentProvider()

	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	# ------------------------------------------------------------------
	# Shared transactional helpers
	# ------------------------------------------------------------------

	async def get_workshop_tx(
		self,
		conn: asyncpg.Connection,
		workshop_id: UUID,
		*,
		for_update: bool = False,
	) -> Optional[models.Workshop]:
		query = "SELECT * FROM club_activities WHERE id = $1"
		if for_update:
			query += " FOR UPDATE"
		row = await conn.fetchrow(query, workshop_id)
		return models.Workshop.model_validate(dict(row)) if row else None

	async def require_workshop_tx(
		self,
		conn: asyncpg.Connection,
		workshop_id: UUID,
		*,
		for_update: bool = False,
	) -> models.Workshop:
		workshop = await self.get_workshop_tx(conn, workshop_id, for_update=for_update)
		if workshop is None:
			raise NotFoundError("Workshop not found")
		return workshop

	async def count_active_registrations_tx(self, conn: asyncpg.Connection, workshop_id: UUID) -> int:
		count = await conn.fetchval(
			"""
			SELECT COUNT(*) FROM club_activity_registrations
			WHERE club_activity_id = $1 AND status = ANY($2::text[])
			""",
			workshop_id,
			list(ACTIVE_REGISTRATION_STATUSES),
		)
		return int(count or 0)

	async def count_registrations_tx(self, conn: asyncpg.Connection, workshop_id: UUID) -> int:
		count = await conn.fetchval(
			"SELECT COUNT(*) FROM club_activity_registrations WHERE club_activity_id = $1",
			workshop_id,
		)
		return int(count or 0)

	async def _raise_missing_or_wrong_state(
		self,
		conn: asyncpg.Connection,
		workshop_id: UUID,
		expected: WorkshopStatus,
	) -> NoReturn:
		current = await conn.fetchval("SELECT status FROM club_activities WHERE id = $1", workshop_id)
		if current is None:
			raise NotFoundError("Workshop not found")
		raise WrongStateError(f"Workshop is {current}, expected {expected.value}")

	async def transition_tx(
		self,
		conn: asyncpg.Connection,
		workshop_id: UUID,
		expected: WorkshopStatus,
		target: WorkshopStatus,
	) -> models.Workshop:
		"""Conditioned status update; zero matched rows raise NotFound or WrongState."""
		row = await conn.fetchrow(
			"""
			UPDATE club_activities
			SET status = $3, updated_at = now()
			WHERE id = $1 AND status = $2
			RETURNING *
			""",
			workshop_id,
			expected.value,
			target.value,
		)
		if row is None:
			await self._raise_missing_or_wrong_state(conn, workshop_id, expected)
		obs_metrics.inc_workshop_transition(target.value)
		return models.Workshop.model_validate(dict(row))

	# ------------------------------------------------------------------
	# Queries
	# ------------------------------------------------------------------

	async def find_by_id(self, workshop_id: UUID) -> models.Workshop:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			return await self.require_workshop_tx(conn, workshop_id)

	async def find_many(self, filters: Optional[WorkshopFilters] = None) -> List[models.Workshop]:
		filters = filters or WorkshopFilters()
		clauses: list[str] = []
		params: list[Any] = []

		def _add(clause: str, value: Any) -> None:
			params.append(value)
			clauses.append(clause.format(idx=len(params)))

		if filters.status is not None:
			_add("status = ${idx}", filters.status.value)
		if filters.start_date_from is not None:
			_add("start_date >= ${idx}", filters.start_date_from)
		if filters.start_date_to is not None:
			_add("start_date <= ${idx}", filters.start_date_to)
		if filters.created_by is not None:
			_add("created_by = ${idx}", filters.created_by)
		if filters.is_public is not None:
			_add("is_public = ${idx}", filters.is_public)

		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT * FROM club_activities {where} ORDER BY start_date ASC",
				*params,
			)
		return [models.Workshop.model_validate(dict(row)) for row in rows]

	async def can_edit(self, workshop_id: UUID) -> bool:
		workshop = await self.find_by_id(workshop_id)
		return policy.can_edit(workshop)

	async def can_edit_pricing(self, workshop_id: UUID) -> bool:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			workshop = await self.require_workshop_tx(conn, workshop_id)
			if policy.can_edit(workshop):
				return True
			return policy.can_edit_pricing(workshop, await self.count_registrations_tx(conn, workshop_id))

	async def edit_permissions(self, workshop_id: UUID) -> CanEditResponse:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			workshop = await self.require_workshop_tx(conn, workshop_id)
			count = await self.count_registrations_tx(conn, workshop_id)
		return CanEditResponse(
			can_edit=policy.can_edit(workshop),
			can_edit_pricing=policy.can_edit_pricing(workshop, count),
		)

	# ------------------------------------------------------------------
	# Mutations
	# ------------------------------------------------------------------

	async def create(self, actor: AuthenticatedUser, payload: WorkshopCreateRequest) -> models.Workshop:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		policy.validate_schedule(payload.start_date, payload.end_date)
		price_non_member = payload.price_non_member
		if price_non_member is None:
			price_non_member = payload.price_member
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				INSERT INTO club_activities (
					title, description, location, start_date, end_date, max_capacity,
					price_member, price_non_member, is_public, refund_days, status, created_by
				)
				VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
				RETURNING *
				""",
				payload.title,
				payload.description,
				payload.location,
				payload.start_date,
				payload.end_date,
				payload.max_capacity,
				payload.price_member,
				price_non_member,
				payload.is_public,
				payload.refund_days,
				WorkshopStatus.PLANNED.value,
				actor_uuid(actor),
			)
		workshop = models.Workshop.model_validate(dict(row))
		LOGGER.info("workshop_created", extra={"workshop_id": str(workshop.id), "actor_id": actor.id})
		return workshop

	async def update(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
		payload: WorkshopUpdateRequest,
	) -> models.Workshop:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		patch = payload.model_dump(exclude_unset=True)
		for field in _NON_NULLABLE_FIELDS & patch.keys():
			if patch[field] is None:
				raise ValidationError(f"{field} cannot be null")
		if not patch:
			return await self.find_by_id(workshop_id)

		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				workshop = await self.require_workshop_tx(conn, workshop_id, for_update=True)
				if not policy.can_edit(workshop):
					raise WrongStateError("Workshop can only be edited while planned")
				if policy.touches_pricing(patch):
					count = await self.count_registrations_tx(conn, workshop_id)
					if not policy.can_edit_pricing(workshop, count):
						raise EligibilityError("Pricing cannot be changed once registrations exist")
				if "start_date" in patch or "end_date" in patch:
					policy.validate_schedule(
						patch.get("start_date", workshop.start_date),
						patch.get("end_date", workshop.end_date),
					)
				if "max_capacity" in patch:
					active = await self.count_active_registrations_tx(conn, workshop_id)
					if patch["max_capacity"] < active:
						raise ValidationError(
							f"Capacity cannot be lower than the {active} active registrations"
						)

				columns = list(patch)
				assignments = ", ".join(f"{column} = ${idx}" for idx, column in enumerate(columns, start=3))
				row = await conn.fetchrow(
					f"""
					UPDATE club_activities
					SET {assignments}, updated_at = now()
					WHERE id = $1 AND status = $2
					RETURNING *
					""",
					workshop_id,
					WorkshopStatus.PLANNED.value,
					*[patch[column] for column in columns],
				)
				if row is None:
					await self._raise_missing_or_wrong_state(conn, workshop_id, WorkshopStatus.PLANNED)
		LOGGER.info(
			"workshop_updated",
			extra={"workshop_id": str(workshop_id), "fields": sorted(columns), "actor_id": actor.id},
		)
		return models.Workshop.model_validate(dict(row))

	async def publish(self, actor: AuthenticatedUser, workshop_id: UUID) -> models.Workshop:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			workshop = await self.transition_tx(
				conn, workshop_id, WorkshopStatus.PLANNED, WorkshopStatus.PUBLISHED
			)
		LOGGER.info("workshop_published", extra={"workshop_id": str(workshop_id), "actor_id": actor.id})
		return workshop

	async def finish(self, actor: AuthenticatedUser, workshop_id: UUID) -> models.Workshop:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self.require_workshop_tx(conn, workshop_id, for_update=True)
				pending = await conn.fetchval(
					"""
					SELECT COUNT(*) FROM club_activity_registrations
					WHERE club_activity_id = $1 AND status = $2
					""",
					workshop_id,
					RegistrationStatus.PENDING.value,
				)
				if pending:
					raise EligibilityError("Cannot finish a workshop with pending registrations")
				workshop = await self.transition_tx(
					conn, workshop_id, WorkshopStatus.PUBLISHED, WorkshopStatus.FINISHED
				)
		LOGGER.info("workshop_finished", extra={"workshop_id": str(workshop_id), "actor_id": actor.id})
		return workshop

	async def cancel(self, actor: AuthenticatedUser, workshop_id: UUID) -> models.Workshop:
		"""Refund every paid registration, then flip published to cancelled.

		Runs in one transaction. A provider error other than "already refunded"
		rolls everything back and the workshop stays published.
		"""
		policy.require_any_role(actor, WORKSHOP_ROLES)
		actor_id = actor_uuid(actor)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				workshop = await self.require_workshop_tx(conn, workshop_id, for_update=True)
				if workshop.status != WorkshopStatus.PUBLISHED.value:
					raise WrongStateError(
						f"Workshop is {workshop.status}, expected {WorkshopStatus.PUBLISHED.value}"
					)
				refunded = await self._refund_paid_registrations_tx(conn, workshop_id, actor_id)
				workshop = await self.transition_tx(
					conn, workshop_id, WorkshopStatus.PUBLISHED, WorkshopStatus.CANCELLED
				)
		LOGGER.info(
			"workshop_cancelled",
			extra={"workshop_id": str(workshop_id), "refunds": refunded, "actor_id": actor.id},
		)
		return workshop

	async def _refund_paid_registrations_tx(
		self,
		conn: asyncpg.Connection,
		workshop_id: UUID,
		actor_id: UUID,
	) -> int:
		rows = await conn.fetch(
			"""
			SELECT id, amount_paid, stripe_checkout_session_id
			FROM club_activity_registrations
			WHERE club_activity_id = $1
				AND stripe_checkout_session_id IS NOT NULL
				AND status <> $2
			ORDER BY registered_at ASC
			""",
			workshop_id,
			RegistrationStatus.REFUNDED.value,
		)
		settled: list[UUID] = []
		for row in rows:
			registration_id = row["id"]
			payment_intent_id = row["stripe_checkout_session_id"]
			amount = int(row["amount_paid"])
			if amount <= 0:
				continue
			try:
				provider_refund = await self._provider.create_refund(
					payment_intent_id=payment_intent_id,
					amount=amount,
				)
			except stripe.StripeError as exc:
				if not is_already_refunded(exc):
					obs_metrics.inc_refund("failed")
					LOGGER.exception(
						"workshop_cancel_refund_failed",
						extra={"workshop_id": str(workshop_id), "registration_id": str(registration_id)},
					)
					raise
				LOGGER.info(
					"workshop_cancel_refund_already_done",
					extra={"workshop_id": str(workshop_id), "registration_id": str(registration_id)},
				)
				obs_metrics.inc_refund("already_refunded")
			else:
				await conn.execute(
					"""
					INSERT INTO club_activity_refunds (
						registration_id, refund_amount, refund_reason, status, stripe_refund_id,
						stripe_payment_intent_id, requested_by, processed_by, processed_at
					)
					VALUES ($1, $2, $3, $4, $5, $6, $7, $7, now())
					ON CONFLICT (registration_id) DO UPDATE
					SET status = EXCLUDED.status,
						stripe_refund_id = EXCLUDED.stripe_refund_id,
						refund_reason = EXCLUDED.refund_reason,
						processed_by = EXCLUDED.processed_by,
						processed_at = EXCLUDED.processed_at
					""",
					registration_id,
					amount,
					CANCELLATION_REFUND_REASON,
					RefundStatus.PROCESSING.value,
					provider_refund.id,
					payment_intent_id,
					actor_id,
				)
				obs_metrics.inc_refund("processing")
			settled.append(registration_id)
		if settled:
			await conn.execute(
				"""
				UPDATE club_activity_registrations
				SET status = $2, cancelled_at = COALESCE(cancelled_at, now()), updated_at = now()
				WHERE id = ANY($1::uuid[])
				""",
				settled,
				RegistrationStatus.REFUNDED.value,
			)
		return len(settled)

	async def delete(self, actor: AuthenticatedUser, workshop_id: UUID) -> None:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			deleted = await conn.fetchval(
				"DELETE FROM club_activities WHERE id = $1 AND status = $2 RETURNING id",
				workshop_id,
				WorkshopStatus.PLANNED.value,
			)
			if deleted is None:
				await self._raise_missing_or_wrong_state(conn, workshop_id, WorkshopStatus.PLANNED)
		LOGGER.info("workshop_deleted", extra={"workshop_id": str(workshop_id), "actor_id": actor.id})
