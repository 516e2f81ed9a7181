"""Refund processor for single registrations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

import asyncpg
import stripe

from app.domain.workshops import models, policy
from app.domain.workshops.exceptions import EligibilityError
from app.domain.workshops.schemas import (
	RefundEligibility,
	RefundResponse,
	RefundStatus,
	RegistrationStatus,
)
from app.domain.workshops.service import WorkshopService, actor_uuid
from app.infra.auth import WORKSHOP_ROLES, AuthenticatedUser
from app.infra.payments import PaymentProvider, is_already_refunded
from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics

LOGGER = logging.getLogger(__name__)

_RETRYABLE_REFUND_STATUSES = [RefundStatus.FAILED.value, RefundStatus.CANCELLED.value]


class RefundService:
	"""Checks refund eligibility and returns money for one registration at a time."""

	def __init__(
		self,
		provider: Optional[PaymentProvider] = None,
		workshops: Optional[WorkshopService] = None,
	) -> None:
		self._provider = provider or PaymentProvider()
		self._workshops = workshops or WorkshopService(self._provider)

	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	async def check_eligibility_tx(
		self,
		conn: asyncpg.Connection,
		registration_id: UUID,
		*,
		for_update: bool = False,
		now: Optional[datetime] = None,
	) -> RefundEligibility:
		query = "SELECT * FROM club_activity_registrations WHERE id = $1"
		if for_update:
			query += " FOR UPDATE"
		row = await conn.fetchrow(query, registration_id)
		if row is None:
			return policy.evaluate_refund_eligibility(None, None, has_open_refund=False, now=now)
		registration = models.Registration.model_validate(dict(row))
		workshop = await self._workshops.get_workshop_tx(conn, registration.club_activity_id)
		open_refund = await conn.fetchval(
			"""
			SELECT 1 FROM club_activity_refunds
			WHERE registration_id = $1 AND NOT (status = ANY($2::text[]))
			""",
			registration_id,
			_RETRYABLE_REFUND_STATUSES,
		)
		return policy.evaluate_refund_eligibility(
			registration,
			workshop,
			has_open_refund=bool(open_refund),
			now=now,
		)

	async def check_eligibility(self, registration_id: UUID) -> RefundEligibility:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			return await self.check_eligibility_tx(conn, registration_id)

	async def process_refund(
		self,
		actor: AuthenticatedUser,
		registration_id: UUID,
		reason: str,
	) -> RefundResponse:
		"""Record a refund and ask the provider to return the full paid amount.

		When the provider call fails the refund is committed as ``failed``, the
		registration keeps its previous status and the provider error is re-raised.
		"""
		policy.require_any_role(actor, WORKSHOP_ROLES)
		actor_id = actor_uuid(actor)
		provider_error: Optional[stripe.StripeError] = None
		provider_refund_id: Optional[str] = None
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				eligibility = await self.check_eligibility_tx(conn, registration_id, for_update=True)
				if not eligibility.eligible:
					obs_metrics.inc_refund("ineligible")
					raise EligibilityError(eligibility.reason)
				amount = eligibility.amount_paid or 0
				if amount <= 0:
					obs_metrics.inc_refund("ineligible")
					raise EligibilityError("Registration has no payment to refund")

				refund_row = await conn.fetchrow(
					"""
					INSERT INTO club_activity_refunds (
						registration_id, refund_amount, refund_reason, status,
						stripe_payment_intent_id, requested_by
					)
					VALUES ($1, $2, $3, $4, $5, $6)
					ON CONFLICT (registration_id) DO UPDATE
					SET refund_amount = EXCLUDED.refund_amount,
						refund_reason = EXCLUDED.refund_reason,
						status = EXCLUDED.status,
						stripe_payment_intent_id = EXCLUDED.stripe_payment_intent_id,
						requested_by = EXCLUDED.requested_by,
						requested_at = now(),
						stripe_refund_id = NULL,
						processed_at = NULL,
						processed_by = NULL,
						completed_at = NULL
					WHERE club_activity_refunds.status = ANY($7::text[])
					RETURNING *
					""",
					registration_id,
					amount,
					reason,
					RefundStatus.PENDING.value,
					eligibility.payment_intent_id,
					actor_id,
					_RETRYABLE_REFUND_STATUSES,
				)
				if refund_row is None:
					raise EligibilityError(policy.REASON_REFUND_EXISTS)
				await self._set_registration_status_tx(conn, registration_id, RegistrationStatus.REFUNDED.value)

				if eligibility.payment_intent_id:
					try:
						intent = await self._provider.retrieve_payment_intent(eligibility.payment_intent_id)
						provider_refund = await self._provider.create_refund(
							payment_intent_id=intent.id,
							amount=amount,
						)
					except stripe.StripeError as exc:
						if is_already_refunded(exc):
							refund_row = await self._update_refund_tx(
								conn,
								refund_row["id"],
								RefundStatus.COMPLETED.value,
								processed_by=actor_id,
							)
						else:
							provider_error = exc
							LOGGER.exception(
								"refund_provider_failed",
								extra={
									"registration_id": str(registration_id),
									"refund_id": str(refund_row["id"]),
									"payment_intent_id": eligibility.payment_intent_id,
								},
							)
							refund_row = await self._update_refund_tx(
								conn, refund_row["id"], RefundStatus.FAILED.value
							)
							await self._set_registration_status_tx(
								conn,
								registration_id,
								eligibility.registration_status.value,
							)
					else:
						provider_refund_id = provider_refund.id
						refund_row = await self._update_refund_tx(
							conn,
							refund_row["id"],
							RefundStatus.PROCESSING.value,
							processed_by=actor_id,
							stripe_refund_id=provider_refund.id,
						)

		refund = models.Refund.model_validate(dict(refund_row))
		obs_metrics.inc_refund(refund.status)
		if provider_error is not None:
			raise provider_error
		LOGGER.info(
			"refund_processed",
			extra={
				"registration_id": str(registration_id),
				"refund_id": str(refund.id),
				"status": refund.status,
				"actor_id": actor.id,
			},
		)
		return RefundResponse(refund=refund, provider_refund_id=provider_refund_id)

	async def _set_registration_status_tx(
		self,
		conn: asyncpg.Connection,
		registration_id: UUID,
		status: str,
	) -> None:
		await conn.execute(
			"UPDATE club_activity_registrations SET status = $2, updated_at = now() WHERE id = $1",
			registration_id,
			status,
		)

	async def _update_refund_tx(
		self,
		conn: asyncpg.Connection,
		refund_id: UUID,
		status: str,
		*,
		processed_by: Optional[UUID] = None,
		stripe_refund_id: Optional[str] = None,
	) -> asyncpg.Record:
		return await conn.fetchrow(
			"""
			UPDATE club_activity_refunds
			SET status = $2,
				stripe_refund_id = COALESCE($3, stripe_refund_id),
				processed_by = COALESCE($4, processed_by),
				processed_at = CASE WHEN $4::uuid IS NULL THEN processed_at ELSE now() END,
				completed_at = CASE WHEN $2 = 'completed' THEN now() ELSE completed_at END
			WHERE id = $1
			RETURNING *
			""",
			refund_id,
			status,
			stripe_refund_id,
			processed_by,
		)

	async def get_workshop_refunds(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
	) -> List[models.WorkshopRefund]:
		policy.require_any_role(actor, WORKSHOP_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT rf.*,
					r.status AS registration_status,
					COALESCE(up.first_name, eu.first_name) AS first_name,
					COALESCE(up.last_name, eu.last_name) AS last_name
				FROM club_activity_refunds rf
				JOIN club_activity_registrations r ON r.id = rf.registration_id
				LEFT JOIN user_profiles up ON up.supabase_user_id = r.member_user_id
				LEFT JOIN external_users eu ON eu.id = r.external_user_id
				WHERE r.club_activity_id = $1
				ORDER BY rf.requested_at DESC
				""",
				workshop_id,
			)
		return [models.WorkshopRefund.model_validate(dict(row)) for row in rows]
