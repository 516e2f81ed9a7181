"""Request and response DTOs for the workshop endpoints."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.domain.workshops.models import Refund, Registration


class WorkshopStatus(str, Enum):
	PLANNED = "planned"
	PUBLISHED = "published"
	CANCELLED = "cancelled"
	FINISHED = "finished"


class RegistrationStatus(str, Enum):
	PENDING = "pending"
	CONFIRMED = "confirmed"
	CANCELLED = "cancelled"
	REFUNDED = "refunded"


class RefundStatus(str, Enum):
	PENDING = "pending"
	PROCESSING = "processing"
	COMPLETED = "completed"
	FAILED = "failed"
	CANCELLED = "cancelled"


class AttendanceStatus(str, Enum):
	ATTENDED = "attended"
	NO_SHOW = "no_show"
	EXCUSED = "excused"


class InterestAction(str, Enum):
	EXPRESSED = "expressed"
	WITHDRAWN = "withdrawn"


ACTIVE_REGISTRATION_STATUSES = (RegistrationStatus.PENDING.value, RegistrationStatus.CONFIRMED.value)


class WorkshopCreateRequest(BaseModel):
	title: str = Field(..., min_length=1, max_length=255)
	description: str = ""
	location: str = Field(..., min_length=1)
	start_date: datetime
	end_date: datetime
	max_capacity: int = Field(..., ge=1)
	price_member: int = Field(..., ge=0)  # minor currency units
	price_non_member: Optional[int] = Field(None, ge=0)
	is_public: bool = False
	refund_days: Optional[int] = Field(3, ge=0)


class WorkshopUpdateRequest(BaseModel):
	title: Optional[str] = Field(None, min_length=1, max_length=255)
	description: Optional[str] = None
	location: Optional[str] = Field(None, min_length=1)
	start_date: Optional[datetime] = None
	end_date: Optional[datetime] = None
	max_capacity: Optional[int] = Field(None, ge=1)
	price_member: Optional[int] = Field(None, ge=0)
	price_non_member: Optional[int] = Field(None, ge=0)
	is_public: Optional[bool] = None
	refund_days: Optional[int] = Field(None, ge=0)


class WorkshopFilters(BaseModel):
	status: Optional[WorkshopStatus] = None
	start_date_from: Optional[datetime] = None
	start_date_to: Optional[datetime] = None
	created_by: Optional[UUID] = None
	is_public: Optional[bool] = None


class CanEditResponse(BaseModel):
	can_edit: bool
	can_edit_pricing: bool


class InterestResponse(BaseModel):
	action: InterestAction
	message: str


class PaymentIntentRequest(BaseModel):
	amount: Optional[int] = Field(None, ge=1)
	currency: Optional[str] = Field(None, min_length=3, max_length=3)
	customer_id: Optional[str] = None


class PaymentIntentResponse(BaseModel):
	payment_intent_id: str
	client_secret: Optional[str]
	amount: int
	currency: str


class CompleteRegistrationRequest(BaseModel):
	payment_intent_id: str = Field(..., min_length=1)


class CancelRegistrationResponse(BaseModel):
	registration: Registration
	refund_processed: bool = False


class ExternalAttendeeRequest(BaseModel):
	first_name: str = Field(..., min_length=1, max_length=100)
	last_name: str = Field(..., min_length=1, max_length=100)
	email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
	phone_number: Optional[str] = Field(None, max_length=50)
	amount_paid: int = Field(0, ge=0)
	notes: Optional[str] = Field(None, max_length=500)


class AttendanceUpdate(BaseModel):
	registration_id: UUID
	attendance_status: AttendanceStatus
	notes: Optional[str] = Field(None, max_length=500)


class AttendanceUpdateRequest(BaseModel):
	updates: List[AttendanceUpdate] = Field(..., min_length=1)


class AttendanceUpdateResult(BaseModel):
	updated: List[UUID]
	skipped: List[UUID]


class RefundRequest(BaseModel):
	reason: str = Field(..., min_length=1, max_length=500)


class RefundEligibility(BaseModel):
	"""Outcome of a refund eligibility check.

	When eligible, carries what the refund write needs so the caller does not
	read the registration and workshop a second time.
	"""

	eligible: bool
	reason: Optional[str] = None
	registration_id: Optional[UUID] = None
	workshop_id: Optional[UUID] = None
	amount_paid: Optional[int] = None
	currency: Optional[str] = None
	payment_intent_id: Optional[str] = None
	registration_status: Optional[RegistrationStatus] = None
	workshop_start: Optional[datetime] = None
	refund_days: Optional[int] = None
	workshop_status: Optional[WorkshopStatus] = None


class RefundResponse(BaseModel):
	refund: Refund
	provider_refund_id: Optional[str] = None
