"""Pure guard checks for workshop editing, refunds and attendance."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import AbstractSet, Optional

from app.domain.workshops import models
from app.domain.workshops.exceptions import EligibilityError, ForbiddenError, ValidationError
from app.domain.workshops.schemas import RefundEligibility, RegistrationStatus, WorkshopStatus
from app.infra.auth import AuthenticatedUser, has_any_role

PRICING_FIELDS = frozenset({"price_member", "price_non_member"})

REASON_NOT_FOUND = "Registration not found"
REASON_ALREADY_REFUNDED = "Registration already refunded"
REASON_WORKSHOP_FINISHED = "Cannot refund finished workshop"
REASON_DEADLINE_PASSED = "Refund deadline has passed"
REASON_REFUND_EXISTS = "Refund already requested for this registration"


def require_any_role(user: AuthenticatedUser, required: AbstractSet[str]) -> None:
	if not has_any_role(user.roles, required):
		raise ForbiddenError("forbidden")


def can_edit(workshop: models.Workshop) -> bool:
	return workshop.status == WorkshopStatus.PLANNED.value


def can_edit_pricing(workshop: models.Workshop, registration_count: int) -> bool:
	"""Prices are locked once a non-planned workshop has any registration."""
	return can_edit(workshop) or registration_count == 0


def touches_pricing(patch: dict) -> bool:
	return any(field in patch for field in PRICING_FIELDS)


def validate_schedule(start: datetime, end: datetime, *, today: Optional[date] = None) -> None:
	today = today or datetime.now(timezone.utc).date()
	start_day = start.astimezone(timezone.utc).date() if start.tzinfo else start.date()
	if start_day == today:
		raise ValidationError("Workshop cannot be scheduled for today")
	if end <= start:
		raise ValidationError("End time cannot be before start time")


def refund_deadline(start: datetime, refund_days: Optional[int]) -> Optional[datetime]:
	"""Last moment a refund may be requested, or None when there is no deadline."""
	if refund_days is None:
		return None
	return start - timedelta(days=refund_days)


def evaluate_refund_eligibility(
	registration: Optional[models.Registration],
	workshop: Optional[models.Workshop],
	*,
	has_open_refund: bool,
	now: Optional[datetime] = None,
) -> RefundEligibility:
	"""Apply the refund rules in order and report the first one that fails.

	``has_open_refund`` is true when a refund row exists that is neither failed
	nor cancelled. A failed or cancelled row does not block: a refund whose
	provider call failed is retried by reusing that same row, which the refund
	insert resets to pending only while it is still failed or cancelled.
	"""
	if registration is None or workshop is None:
		return RefundEligibility(eligible=False, reason=REASON_NOT_FOUND)
	if registration.status == RegistrationStatus.REFUNDED.value:
		return RefundEligibility(eligible=False, reason=REASON_ALREADY_REFUNDED)
	if workshop.status == WorkshopStatus.FINISHED.value:
		return RefundEligibility(eligible=False, reason=REASON_WORKSHOP_FINISHED)
	deadline = refund_deadline(workshop.start_date, workshop.refund_days)
	if deadline is not None and (now or datetime.now(timezone.utc)) > deadline:
		return RefundEligibility(eligible=False, reason=REASON_DEADLINE_PASSED)
	if has_open_refund:
		return RefundEligibility(eligible=False, reason=REASON_REFUND_EXISTS)
	return RefundEligibility(
		eligible=True,
		registration_id=registration.id,
		workshop_id=workshop.id,
		amount_paid=registration.amount_paid,
		currency=registration.currency,
		payment_intent_id=registration.stripe_checkout_session_id,
		registration_status=registration.status,
		workshop_start=workshop.start_date,
		refund_days=workshop.refund_days,
		workshop_status=workshop.status,
	)


def assert_attendance_open(workshop: models.Workshop, *, now: Optional[datetime] = None) -> None:
	if workshop.start_date > (now or datetime.now(timezone.utc)):
		raise EligibilityError("Cannot update attendance for a workshop that has not started yet")
