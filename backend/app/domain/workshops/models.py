"""Domain models for workshops, registrations and refunds."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class Workshop(BaseModel):
	"""A scheduled club workshop. Prices are integer minor currency units."""

	id: UUID
	title: str
	description: Optional[str] = None
	location: str
	start_date: datetime
	end_date: datetime
	max_capacity: int
	price_member: int
	price_non_member: Optional[int] = None
	is_public: bool = False
	refund_days: Optional[int] = None
	status: str
	created_by: Optional[UUID] = None
	created_at: datetime
	updated_at: datetime

	model_config = ConfigDict(from_attributes=True)


class Registration(BaseModel):
	"""One attendee's signup. Exactly one of member/external user is set."""

	id: UUID
	club_activity_id: UUID
	member_user_id: Optional[UUID] = None
	external_user_id: Optional[UUID] = None
	status: str
	amount_paid: int
	currency: str
	stripe_checkout_session_id: Optional[str] = None
	registered_at: datetime
	confirmed_at: Optional[datetime] = None
	cancelled_at: Optional[datetime] = None
	registration_notes: Optional[str] = None
	attendance_status: Optional[str] = None
	attendance_marked_at: Optional[datetime] = None
	attendance_marked_by: Optional[UUID] = None
	attendance_notes: Optional[str] = None
	created_at: datetime
	updated_at: datetime

	model_config = ConfigDict(from_attributes=True)


class Refund(BaseModel):
	id: UUID
	registration_id: UUID
	refund_amount: int
	refund_reason: str
	status: str
	stripe_refund_id: Optional[str] = None
	stripe_payment_intent_id: Optional[str] = None
	requested_at: datetime
	processed_at: Optional[datetime] = None
	completed_at: Optional[datetime] = None
	requested_by: Optional[UUID] = None
	processed_by: Optional[UUID] = None

	model_config = ConfigDict(from_attributes=True)


class Attendee(BaseModel):
	"""Active registration joined with the attendee's display fields."""

	registration_id: UUID
	status: str
	amount_paid: int
	currency: str
	registered_at: datetime
	member_user_id: Optional[UUID] = None
	external_user_id: Optional[UUID] = None
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	email: Optional[str] = None
	is_external: bool = False

	model_config = ConfigDict(from_attributes=True)


class AttendanceRecord(BaseModel):
	registration_id: UUID
	member_user_id: Optional[UUID] = None
	external_user_id: Optional[UUID] = None
	first_name: Optional[str] = None
	last_name: Optional[str] = None
	attendance_status: Optional[str] = None
	attendance_marked_at: Optional[datetime] = None
	attendance_marked_by: Optional[UUID] = None
	attendance_notes: Optional[str] = None

	model_config = ConfigDict(from_attributes=True)


class WorkshopRefund(Refund):
	"""Refund row joined with the attendee name for staff listings."""

	first_name: Optional[str] = None
	last_name: Optional[str] = None
	registration_status: Optional[str] = None
