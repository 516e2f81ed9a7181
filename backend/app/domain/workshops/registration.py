"""Registration manager: interest, paid signup, cancellation and attendee lists."""

from __future__ import annotations

import logging
from typing import Any, List, Optional
from uuid import UUID

import asyncpg
import stripe

from app.domain.workshops import models, policy
from app.domain.workshops.exceptions import (
	CapacityError,
	EligibilityError,
	NotFoundError,
	PaymentProviderError,
	ValidationError,
	WorkshopError,
)
from app.domain.workshops.schemas import (
	ACTIVE_REGISTRATION_STATUSES,
	CancelRegistrationResponse,
	ExternalAttendeeRequest,
	InterestAction,
	InterestResponse,
	PaymentIntentRequest,
	PaymentIntentResponse,
	RegistrationStatus,
	WorkshopStatus,
)
from app.domain.workshops.service import WorkshopService, actor_uuid
from app.infra.auth import ATTENDEE_ROLES, AuthenticatedUser
from app.infra.payments import (
	PAYMENT_SUCCEEDED,
	PaymentProvider,
	ProviderPaymentIntent,
	is_already_refunded,
)
from app.infra.postgres import get_pool
from app.obs import metrics as obs_metrics
from app.settings import settings

LOGGER = logging.getLogger(__name__)

PAYMENT_INTENT_TYPE = "workshop_registration"

ALREADY_REGISTERED = "Already registered for this workshop"
NOT_AVAILABLE = "Workshop not available for registration"


class RegistrationService:
	"""Capacity-checked signup flows for members and external attendees."""

	def __init__(
		self,
		provider: Optional[PaymentProvider] = None,
		workshops: Optional[WorkshopService] = None,
	) -> None:
		self._provider = provider or PaymentProvider()
		self._workshops = workshops or WorkshopService(self._provider)

	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	async def find_by_id(self, registration_id: UUID) -> models.Registration:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM club_activity_registrations WHERE id = $1", registration_id)
		if row is None:
			raise NotFoundError("Registration not found")
		return models.Registration.model_validate(dict(row))

	async def find_many(
		self,
		*,
		workshop_id: Optional[UUID] = None,
		member_id: Optional[UUID] = None,
		status: Optional[RegistrationStatus] = None,
	) -> List[models.Registration]:
		clauses: list[str] = []
		params: list[Any] = []
		for column, value in (
			("club_activity_id", workshop_id),
			("member_user_id", member_id),
			("status", status.value if status else None),
		):
			if value is None:
				continue
			params.append(value)
			clauses.append(f"{column} = ${len(params)}")
		where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"SELECT * FROM club_activity_registrations {where} ORDER BY registered_at ASC",
				*params,
			)
		return [models.Registration.model_validate(dict(row)) for row in rows]

	async def toggle_interest(self, user: AuthenticatedUser, workshop_id: UUID) -> InterestResponse:
		user_id = actor_uuid(user)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				workshop = await self._workshops.require_workshop_tx(conn, workshop_id)
				if workshop.status != WorkshopStatus.PLANNED.value:
					raise EligibilityError("Interest can only be expressed for planned workshops")
				removed = await conn.fetchval(
					"""
					DELETE FROM club_activity_interest
					WHERE club_activity_id = $1 AND user_id = $2
					RETURNING id
					""",
					workshop_id,
					user_id,
				)
				if removed is None:
					await conn.execute(
						"""
						INSERT INTO club_activity_interest (club_activity_id, user_id)
						VALUES ($1, $2)
						ON CONFLICT (club_activity_id, user_id) DO NOTHING
						""",
						workshop_id,
						user_id,
					)
		if removed is None:
			return InterestResponse(action=InterestAction.EXPRESSED, message="Interest expressed successfully")
		return InterestResponse(action=InterestAction.WITHDRAWN, message="Interest withdrawn successfully")

	async def assert_can_register_tx(
		self,
		conn: asyncpg.Connection,
		workshop: models.Workshop,
		*,
		member_user_id: Optional[UUID] = None,
		external_user_id: Optional[UUID] = None,
	) -> None:
		"""Duplicate and capacity checks. Call with the workshop row locked."""
		if workshop.status != WorkshopStatus.PUBLISHED.value:
			raise EligibilityError(NOT_AVAILABLE)
		column = "member_user_id" if member_user_id is not None else "external_user_id"
		attendee_id = member_user_id if member_user_id is not None else external_user_id
		duplicate = await conn.fetchval(
			f"""
			SELECT 1 FROM club_activity_registrations
			WHERE club_activity_id = $1 AND {column} = $2 AND status = ANY($3::text[])
			""",
			workshop.id,
			attendee_id,
			list(ACTIVE_REGISTRATION_STATUSES),
		)
		if duplicate:
			raise EligibilityError(ALREADY_REGISTERED)
		active = await self._workshops.count_active_registrations_tx(conn, workshop.id)
		if active >= workshop.max_capacity:
			raise CapacityError("Workshop is full")

	async def create_payment_intent(
		self,
		user: AuthenticatedUser,
		workshop_id: UUID,
		payload: Optional[PaymentIntentRequest] = None,
	) -> PaymentIntentResponse:
		payload = payload or PaymentIntentRequest()
		user_id = actor_uuid(user)
		pool = await self._get_pool()
		try:
			async with pool.acquire() as conn:
				async with conn.transaction():
					workshop = await self._workshops.require_workshop_tx(conn, workshop_id, for_update=True)
					await self.assert_can_register_tx(conn, workshop, member_user_id=user_id)
		except CapacityError:
			obs_metrics.inc_registration("capacity_rejected")
			raise

		amount = workshop.price_member
		if payload.amount is not None and payload.amount != amount:
			raise ValidationError("Amount does not match workshop price")
		if amount <= 0:
			raise ValidationError("Workshop does not require payment")
		currency = (payload.currency or settings.default_currency).lower()
		intent = await self._provider.create_payment_intent(
			amount=amount,
			currency=currency,
			customer_id=payload.customer_id,
			metadata={
				"workshop_id": str(workshop.id),
				"workshop_title": workshop.title,
				"user_id": user.id,
				"type": PAYMENT_INTENT_TYPE,
			},
		)
		obs_metrics.inc_registration("intent_created")
		LOGGER.info(
			"registration_intent_created",
			extra={"workshop_id": str(workshop_id), "payment_intent_id": intent.id},
		)
		return PaymentIntentResponse(
			payment_intent_id=intent.id,
			client_secret=intent.client_secret,
			amount=intent.amount,
			currency=intent.currency,
		)

	async def complete_registration(
		self,
		user: AuthenticatedUser,
		workshop_id: UUID,
		payment_intent_id: str,
	) -> models.Registration:
		"""Confirm a registration once the provider reports the payment succeeded.

		Amount and currency come from the provider object. If the workshop filled
		up or the caller registered elsewhere in the meantime, the payment is
		refunded before the error is raised. A registration already holding the
		intent is returned instead.
		"""
		user_id = actor_uuid(user)
		intent = await self._provider.retrieve_payment_intent(payment_intent_id)
		if intent.status != PAYMENT_SUCCEEDED:
			obs_metrics.inc_registration("payment_incomplete")
			raise EligibilityError("Payment not completed")
		if intent.metadata.get("workshop_id") != str(workshop_id):
			obs_metrics.inc_registration("intent_mismatch")
			raise EligibilityError("Payment intent does not match workshop")
		owner = intent.metadata.get("user_id")
		if owner is not None and owner != user.id:
			obs_metrics.inc_registration("intent_mismatch")
			raise EligibilityError("Payment intent does not belong to this user")

		pool = await self._get_pool()
		async with pool.acquire() as conn:
			existing = await self._find_by_intent(conn, intent.id)
			if existing is not None:
				return existing
			try:
				async with conn.transaction():
					workshop = await self._workshops.require_workshop_tx(conn, workshop_id, for_update=True)
					# a concurrent completion of the same intent may have committed while we waited
					existing = await self._find_by_intent(conn, intent.id)
					if existing is not None:
						return existing
					await self.assert_can_register_tx(conn, workshop, member_user_id=user_id)
					row = await conn.fetchrow(
						"""
						INSERT INTO club_activity_registrations (
							club_activity_id, member_user_id, status, amount_paid, currency,
							stripe_checkout_session_id, confirmed_at
						)
						VALUES ($1, $2, $3, $4, $5, $6, now())
						RETURNING *
						""",
						workshop_id,
						user_id,
						RegistrationStatus.CONFIRMED.value,
						intent.amount,
						intent.currency,
						intent.id,
					)
			except asyncpg.UniqueViolationError as exc:
				existing = await self._recover_or_compensate(conn, intent, workshop_id)
				if existing is not None:
					return existing
				raise EligibilityError(ALREADY_REGISTERED) from exc
			except WorkshopError as exc:
				obs_metrics.inc_registration(
					"capacity_rejected" if isinstance(exc, CapacityError) else "ineligible"
				)
				existing = await self._recover_or_compensate(conn, intent, workshop_id)
				if existing is not None:
					return existing
				raise

		registration = models.Registration.model_validate(dict(row))
		obs_metrics.inc_registration("confirmed")
		LOGGER.info(
			"registration_confirmed",
			extra={
				"workshop_id": str(workshop_id),
				"registration_id": str(registration.id),
				"payment_intent_id": intent.id,
			},
		)
		return registration

	async def _find_by_intent(
		self,
		conn: asyncpg.Connection,
		payment_intent_id: str,
	) -> Optional[models.Registration]:
		row = await conn.fetchrow(
			"SELECT * FROM club_activity_registrations WHERE stripe_checkout_session_id = $1",
			payment_intent_id,
		)
		return models.Registration.model_validate(dict(row)) if row else None

	async def _recover_or_compensate(
		self,
		conn: asyncpg.Connection,
		intent: ProviderPaymentIntent,
		workshop_id: UUID,
	) -> Optional[models.Registration]:
		"""Return the registration already paid by ``intent``, otherwise refund the intent."""
		existing = await self._find_by_intent(conn, intent.id)
		if existing is None:
			await self._compensate(intent, workshop_id)
		return existing

	async def _compensate(self, intent: ProviderPaymentIntent, workshop_id: UUID) -> None:
		"""Refund a succeeded payment that could not become a registration.

		If the refund itself fails the money is still held, so the caller gets a
		provider error naming the intent instead of the registration error.
		"""
		try:
			await self._provider.create_refund(payment_intent_id=intent.id, amount=intent.amount)
		except stripe.StripeError as exc:
			if is_already_refunded(exc):
				return
			obs_metrics.inc_refund("compensation_failed")
			LOGGER.exception(
				"registration_compensation_failed",
				extra={"workshop_id": str(workshop_id), "payment_intent_id": intent.id},
			)
			raise PaymentProviderError(
				f"Registration failed and payment {intent.id} could not be refunded automatically"
			) from exc
		obs_metrics.inc_registration("compensated")
		LOGGER.warning(
			"registration_compensated",
			extra={"workshop_id": str(workshop_id), "payment_intent_id": intent.id},
		)

	async def cancel_registration(
		self,
		user: AuthenticatedUser,
		workshop_id: UUID,
	) -> CancelRegistrationResponse:
		"""Cancel the caller's active registration. Refunds are a separate action."""
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				UPDATE club_activity_registrations
				SET status = $3, cancelled_at = now(), updated_at = now()
				WHERE club_activity_id = $1 AND member_user_id = $2 AND status = ANY($4::text[])
				RETURNING *
				""",
				workshop_id,
				actor_uuid(user),
				RegistrationStatus.CANCELLED.value,
				list(ACTIVE_REGISTRATION_STATUSES),
			)
		if row is None:
			raise NotFoundError("Registration not found")
		obs_metrics.inc_registration("cancelled")
		LOGGER.info(
			"registration_cancelled",
			extra={"workshop_id": str(workshop_id), "registration_id": str(row["id"])},
		)
		return CancelRegistrationResponse(registration=models.Registration.model_validate(dict(row)))

	async def get_workshop_attendees(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
	) -> List[models.Attendee]:
		policy.require_any_role(actor, ATTENDEE_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT r.id AS registration_id,
					r.status,
					r.amount_paid,
					r.currency,
					r.registered_at,
					r.member_user_id,
					r.external_user_id,
					COALESCE(up.first_name, eu.first_name) AS first_name,
					COALESCE(up.last_name, eu.last_name) AS last_name,
					COALESCE(up.email, eu.email) AS email,
					r.external_user_id IS NOT NULL AS is_external
				FROM club_activity_registrations r
				LEFT JOIN user_profiles up ON up.supabase_user_id = r.member_user_id
				LEFT JOIN external_users eu ON eu.id = r.external_user_id
				WHERE r.club_activity_id = $1 AND r.status = ANY($2::text[])
				ORDER BY r.created_at ASC
				""",
				workshop_id,
				list(ACTIVE_REGISTRATION_STATUSES),
			)
		return [models.Attendee.model_validate(dict(row)) for row in rows]

	async def add_external_attendee(
		self,
		actor: AuthenticatedUser,
		workshop_id: UUID,
		payload: ExternalAttendeeRequest,
	) -> models.Registration:
		"""Register a non-member by email as a confirmed attendee."""
		policy.require_any_role(actor, ATTENDEE_ROLES)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			try:
				async with conn.transaction():
					workshop = await self._workshops.require_workshop_tx(conn, workshop_id, for_update=True)
					external_id = await conn.fetchval(
						"""
						INSERT INTO external_users (first_name, last_name, email, phone_number)
						VALUES ($1, $2, lower($3), $4)
						ON CONFLICT (email) DO UPDATE
						SET first_name = EXCLUDED.first_name,
							last_name = EXCLUDED.last_name,
							phone_number = COALESCE(EXCLUDED.phone_number, external_users.phone_number),
							updated_at = now()
						RETURNING id
						""",
						payload.first_name,
						payload.last_name,
						payload.email,
						payload.phone_number,
					)
					await self.assert_can_register_tx(conn, workshop, external_user_id=external_id)
					row = await conn.fetchrow(
						"""
						INSERT INTO club_activity_registrations (
							club_activity_id, external_user_id, status, amount_paid, currency,
							registration_notes, confirmed_at
						)
						VALUES ($1, $2, $3, $4, $5, $6, now())
						RETURNING *
						""",
						workshop_id,
						external_id,
						RegistrationStatus.CONFIRMED.value,
						payload.amount_paid,
						settings.default_currency,
						payload.notes,
					)
			except asyncpg.UniqueViolationError as exc:
				raise EligibilityError(ALREADY_REGISTERED) from exc
		obs_metrics.inc_registration("external_added")
		LOGGER.info(
			"external_attendee_added",
			extra={"workshop_id": str(workshop_id), "registration_id": str(row["id"]), "actor_id": actor.id},
		)
		return models.Registration.model_validate(dict(row))
