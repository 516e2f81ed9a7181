"""Workshop lifecycle, registration, attendance and refund endpoints."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

import stripe
from fastapi import APIRouter, Body, Depends, Query, Response, status

from app.api.security_deps import get_current_user, require_roles
from app.domain.workshops import models, schemas
from app.domain.workshops.attendance import AttendanceService
from app.domain.workshops.exceptions import NotFoundError, PaymentProviderError
from app.domain.workshops.refunds import RefundService
from app.domain.workshops.registration import RegistrationService
from app.domain.workshops.service import WorkshopService
from app.infra.auth import ATTENDEE_ROLES, WORKSHOP_ROLES, AuthenticatedUser
from app.infra.payments import PaymentProvider

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/workshops", tags=["workshops"])

_provider = PaymentProvider()
_workshops = WorkshopService(_provider)
_registrations = RegistrationService(_provider, _workshops)
_refunds = RefundService(_provider, _workshops)
_attendance = AttendanceService(_workshops)


def _provider_error(exc: stripe.StripeError) -> PaymentProviderError:
	LOGGER.warning("payment_provider_error", extra={"code": getattr(exc, "code", None)})
	return PaymentProviderError()


@router.post("/", response_model=models.Workshop, status_code=status.HTTP_201_CREATED)
async def create_workshop(
	payload: schemas.WorkshopCreateRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> models.Workshop:
	return await _workshops.create(auth_user, payload)


@router.get("/", response_model=List[models.Workshop])
async def list_workshops(
	status_filter: Optional[schemas.WorkshopStatus] = Query(default=None, alias="status"),
	start_date_from: Optional[datetime] = None,
	start_date_to: Optional[datetime] = None,
	created_by: Optional[UUID] = None,
	is_public: Optional[bool] = None,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[models.Workshop]:
	filters = schemas.WorkshopFilters(
		status=status_filter,
		start_date_from=start_date_from,
		start_date_to=start_date_to,
		created_by=created_by,
		is_public=is_public,
	)
	return await _workshops.find_many(filters)


@router.get("/{workshop_id}", response_model=models.Workshop)
async def get_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> models.Workshop:
	return await _workshops.find_by_id(workshop_id)


@router.patch("/{workshop_id}", response_model=models.Workshop)
async def update_workshop(
	workshop_id: UUID,
	payload: schemas.WorkshopUpdateRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> models.Workshop:
	return await _workshops.update(auth_user, workshop_id, payload)


@router.delete(
	"/{workshop_id}",
	status_code=status.HTTP_204_NO_CONTENT,
	response_class=Response,
	response_model=None,
)
async def delete_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> None:
	await _workshops.delete(auth_user, workshop_id)
	return None


@router.get("/{workshop_id}/can-edit", response_model=schemas.CanEditResponse)
async def can_edit_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> schemas.CanEditResponse:
	return await _workshops.edit_permissions(workshop_id)


@router.post("/{workshop_id}/publish", response_model=models.Workshop)
async def publish_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> models.Workshop:
	return await _workshops.publish(auth_user, workshop_id)


@router.post("/{workshop_id}/cancel", response_model=models.Workshop)
async def cancel_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> models.Workshop:
	try:
		return await _workshops.cancel(auth_user, workshop_id)
	except stripe.StripeError as exc:
		raise _provider_error(exc) from exc


@router.post("/{workshop_id}/finish", response_model=models.Workshop)
async def finish_workshop(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> models.Workshop:
	return await _workshops.finish(auth_user, workshop_id)


@router.post("/{workshop_id}/interest", response_model=schemas.InterestResponse)
async def toggle_interest(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.InterestResponse:
	return await _registrations.toggle_interest(auth_user, workshop_id)


@router.post("/{workshop_id}/register/payment-intent", response_model=schemas.PaymentIntentResponse)
async def create_payment_intent(
	workshop_id: UUID,
	payload: Optional[schemas.PaymentIntentRequest] = Body(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.PaymentIntentResponse:
	try:
		return await _registrations.create_payment_intent(auth_user, workshop_id, payload)
	except stripe.StripeError as exc:
		raise _provider_error(exc) from exc


@router.post(
	"/{workshop_id}/register/complete",
	response_model=models.Registration,
	status_code=status.HTTP_201_CREATED,
)
async def complete_registration(
	workshop_id: UUID,
	payload: schemas.CompleteRegistrationRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> models.Registration:
	try:
		return await _registrations.complete_registration(auth_user, workshop_id, payload.payment_intent_id)
	except stripe.StripeError as exc:
		raise _provider_error(exc) from exc


@router.post("/{workshop_id}/register/cancel", response_model=schemas.CancelRegistrationResponse)
async def cancel_registration(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.CancelRegistrationResponse:
	return await _registrations.cancel_registration(auth_user, workshop_id)


@router.get("/{workshop_id}/attendees", response_model=List[models.Attendee])
async def list_attendees(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(ATTENDEE_ROLES)),
) -> List[models.Attendee]:
	return await _registrations.get_workshop_attendees(auth_user, workshop_id)


@router.post(
	"/{workshop_id}/attendees/external",
	response_model=models.Registration,
	status_code=status.HTTP_201_CREATED,
)
async def add_external_attendee(
	workshop_id: UUID,
	payload: schemas.ExternalAttendeeRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(ATTENDEE_ROLES)),
) -> models.Registration:
	return await _registrations.add_external_attendee(auth_user, workshop_id, payload)


@router.get("/{workshop_id}/attendance", response_model=List[models.AttendanceRecord])
async def get_attendance(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(ATTENDEE_ROLES)),
) -> List[models.AttendanceRecord]:
	return await _attendance.get_workshop_attendance(auth_user, workshop_id)


@router.put("/{workshop_id}/attendance", response_model=schemas.AttendanceUpdateResult)
async def update_attendance(
	workshop_id: UUID,
	payload: schemas.AttendanceUpdateRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(ATTENDEE_ROLES)),
) -> schemas.AttendanceUpdateResult:
	return await _attendance.update_attendance(auth_user, workshop_id, payload.updates)


@router.get("/{workshop_id}/refunds", response_model=List[models.WorkshopRefund])
async def list_refunds(
	workshop_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> List[models.WorkshopRefund]:
	return await _refunds.get_workshop_refunds(auth_user, workshop_id)


async def _registration_in_workshop(workshop_id: UUID, registration_id: UUID) -> models.Registration:
	registration = await _registrations.find_by_id(registration_id)
	if registration.club_activity_id != workshop_id:
		raise NotFoundError("Registration not found")
	return registration


@router.get(
	"/{workshop_id}/registrations/{registration_id}/refund-eligibility",
	response_model=schemas.RefundEligibility,
)
async def refund_eligibility(
	workshop_id: UUID,
	registration_id: UUID,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> schemas.RefundEligibility:
	await _registration_in_workshop(workshop_id, registration_id)
	return await _refunds.check_eligibility(registration_id)


@router.post(
	"/{workshop_id}/registrations/{registration_id}/refund",
	response_model=schemas.RefundResponse,
	status_code=status.HTTP_201_CREATED,
)
async def process_refund(
	workshop_id: UUID,
	registration_id: UUID,
	payload: schemas.RefundRequest,
	auth_user: AuthenticatedUser = Depends(require_roles(WORKSHOP_ROLES)),
) -> schemas.RefundResponse:
	await _registration_in_workshop(workshop_id, registration_id)
	try:
		return await _refunds.process_refund(auth_user, registration_id, payload.reason)
	except stripe.StripeError as exc:
		raise _provider_error(exc) from exc
