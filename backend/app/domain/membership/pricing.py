"""Pure membership pricing: discounts, billing anchors and proration.

All amounts are integer minor currency units. Rounding is half-up.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from app.domain.membership.schemas import PlanQuote
from app.domain.workshops.exceptions import ValidationError

ANNUAL_BILLING_DAY = 7


def _div_half_up(numerator: int, denominator: int) -> int:
	return (2 * numerator + denominator) // (2 * denominator)


def apply_discount(amount: int, percentage: int) -> int:
	if amount < 0:
		raise ValidationError("Amount cannot be negative")
	if not 0 <= percentage <= 100:
		raise ValidationError("Discount must be between 0 and 100 percent")
	return amount - _div_half_up(amount * percentage, 100)


def discount_percentage(base: int, discounted: int) -> int:
	if base <= 0 or discounted >= base:
		return 0
	return _div_half_up((base - discounted) * 100, base)


def next_monthly_billing_date(today: date) -> date:
	if today.month == 12:
		return date(today.year + 1, 1, 1)
	return date(today.year, today.month + 1, 1)


def next_annual_billing_date(today: date) -> date:
	return date(today.year + 1, 1, ANNUAL_BILLING_DAY)


def prorate(amount: int, period_start: date, period_end: date, today: date) -> int:
	"""Share of ``amount`` for the days left between ``today`` and ``period_end``."""
	total_days = (period_end - period_start).days
	if total_days <= 0 or amount <= 0:
		return 0
	remaining = min(max((period_end - today).days, 0), total_days)
	return _div_half_up(amount * remaining, total_days)


def quote(
	monthly_fee: int,
	annual_fee: int,
	today: date,
	discount_pct: int = 0,
	*,
	currency: str = "eur",
	coupon_code: Optional[str] = None,
) -> PlanQuote:
	discounted_monthly = apply_discount(monthly_fee, discount_pct)
	discounted_annual = apply_discount(annual_fee, discount_pct)
	next_monthly = next_monthly_billing_date(today)
	next_annual = next_annual_billing_date(today)
	prorated_monthly = prorate(discounted_monthly, today.replace(day=1), next_monthly, today)
	prorated_annual = prorate(
		discounted_annual,
		next_annual.replace(year=next_annual.year - 1),
		next_annual,
		today,
	)
	return PlanQuote(
		monthly_fee=monthly_fee,
		annual_fee=annual_fee,
		discounted_monthly_fee=discounted_monthly,
		discounted_annual_fee=discounted_annual,
		prorated_monthly=prorated_monthly,
		prorated_annual=prorated_annual,
		prorated_total=prorated_monthly + prorated_annual,
		discount_percentage=discount_percentage(monthly_fee, discounted_monthly),
		next_monthly_billing_date=next_monthly,
		next_annual_billing_date=next_annual,
		currency=currency,
		coupon_code=coupon_code,
	)
