from __future__ import annotations

from datetime import date, datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class PlanQuote(BaseModel):
	"""Membership signup amounts in minor currency units."""

	monthly_fee: int
	annual_fee: int
	discounted_monthly_fee: int
	discounted_annual_fee: int
	prorated_monthly: int
	prorated_annual: int
	prorated_total: int
	discount_percentage: int = 0
	next_monthly_billing_date: date
	next_annual_billing_date: date
	currency: str = "eur"
	coupon_code: Optional[str] = None


class MembershipPaymentSession(BaseModel):
	id: UUID
	user_id: UUID
	monthly_amount: int
	annual_amount: int
	discounted_monthly_amount: int
	discounted_annual_amount: int
	discount_percentage: int
	prorated_monthly_amount: int
	prorated_annual_amount: int
	total_amount: int
	currency: str
	coupon_code: Optional[str] = None
	next_monthly_billing_date: date
	next_annual_billing_date: date
	created_at: datetime
	updated_at: datetime

	model_config = ConfigDict(from_attributes=True)
