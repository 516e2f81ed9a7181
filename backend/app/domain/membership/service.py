"""Membership signup quotes persisted per user."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Optional
from uuid import UUID

import asyncpg

from app.domain.club_settings.schemas import SettingKey
from app.domain.club_settings.service import ClubSettingsService
from app.domain.membership import pricing
from app.domain.membership.schemas import MembershipPaymentSession, PlanQuote
from app.domain.workshops.exceptions import NotFoundError, ValidationError
from app.domain.workshops.service import actor_uuid
from app.infra.auth import AuthenticatedUser
from app.infra.postgres import get_pool
from app.settings import settings

LOGGER = logging.getLogger(__name__)


class MembershipPricingService:
	"""Computes signup quotes from the stored fees and saves them for checkout.

	The charge step later reads the saved session instead of recomputing, so the
	amount shown at signup is the amount charged.
	"""

	def __init__(self, club_settings: Optional[ClubSettingsService] = None) -> None:
		self._settings = club_settings or ClubSettingsService()

	async def _get_pool(self) -> asyncpg.Pool:
		return await get_pool()

	async def _fees(self) -> tuple[int, int]:
		rows = await self._settings.list(
			[SettingKey.MEMBERSHIP_MONTHLY_FEE.value, SettingKey.MEMBERSHIP_ANNUAL_FEE.value]
		)
		fees = {row.key: row.parsed() for row in rows}
		try:
			return (
				int(fees[SettingKey.MEMBERSHIP_MONTHLY_FEE.value]),
				int(fees[SettingKey.MEMBERSHIP_ANNUAL_FEE.value]),
			)
		except KeyError as exc:
			raise NotFoundError("Membership fees are not configured") from exc

	async def resolve_coupon(self, code: str) -> int:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			percent = await conn.fetchval(
				"SELECT percent_off FROM membership_coupons WHERE code = upper($1) AND active",
				code.strip(),
			)
		if percent is None:
			raise ValidationError("Invalid coupon code")
		return int(percent)

	async def get_quote(
		self,
		user: AuthenticatedUser,
		coupon_percentage: Optional[int] = None,
		*,
		coupon_code: Optional[str] = None,
		today: Optional[date] = None,
	) -> PlanQuote:
		monthly_fee, annual_fee = await self._fees()
		quote = pricing.quote(
			monthly_fee,
			annual_fee,
			today or datetime.now(timezone.utc).date(),
			coupon_percentage or 0,
			currency=settings.default_currency,
			coupon_code=coupon_code,
		)
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO membership_payment_sessions (
					user_id, monthly_amount, annual_amount, discounted_monthly_amount,
					discounted_annual_amount, discount_percentage, prorated_monthly_amount,
					prorated_annual_amount, total_amount, currency, coupon_code,
					next_monthly_billing_date, next_annual_billing_date
				)
				VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
				ON CONFLICT (user_id) DO UPDATE
				SET monthly_amount = EXCLUDED.monthly_amount,
					annual_amount = EXCLUDED.annual_amount,
					discounted_monthly_amount = EXCLUDED.discounted_monthly_amount,
					discounted_annual_amount = EXCLUDED.discounted_annual_amount,
					discount_percentage = EXCLUDED.discount_percentage,
					prorated_monthly_amount = EXCLUDED.prorated_monthly_amount,
					prorated_annual_amount = EXCLUDED.prorated_annual_amount,
					total_amount = EXCLUDED.total_amount,
					currency = EXCLUDED.currency,
					coupon_code = EXCLUDED.coupon_code,
					next_monthly_billing_date = EXCLUDED.next_monthly_billing_date,
					next_annual_billing_date = EXCLUDED.next_annual_billing_date,
					updated_at = now()
				""",
				actor_uuid(user),
				quote.monthly_fee,
				quote.annual_fee,
				quote.discounted_monthly_fee,
				quote.discounted_annual_fee,
				quote.discount_percentage,
				quote.prorated_monthly,
				quote.prorated_annual,
				quote.prorated_total,
				quote.currency,
				quote.coupon_code,
				quote.next_monthly_billing_date,
				quote.next_annual_billing_date,
			)
		LOGGER.info(
			"membership_quote_saved",
			extra={"total": quote.prorated_total, "discount": quote.discount_percentage},
		)
		return quote

	async def get_session(self, user_id: UUID) -> MembershipPaymentSession:
		pool = await self._get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT * FROM membership_payment_sessions WHERE user_id = $1",
				user_id,
			)
		if row is None:
			raise NotFoundError("No membership payment session")
		return MembershipPaymentSession.model_validate(dict(row))
