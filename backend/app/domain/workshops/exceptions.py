"""Custom exceptions for the workshop lifecycle services."""

from __future__ import annotations

from fastapi import status


class WorkshopError(Exception):
	"""Base class for workshop related errors."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "workshop_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail


class NotFoundError(WorkshopError):
	"""Raised when a workshop, registration or setting does not exist."""

	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"


class WrongStateError(WorkshopError):
	"""Raised when a conditioned write found the row in another status."""

	status_code = status.HTTP_409_CONFLICT
	detail = "wrong_state"


class ValidationError(WorkshopError):
	"""Raised for input rejected before any write."""

	status_code = status.HTTP_422_UNPROCESSABLE_CONTENT
	detail = "validation_error"


class CapacityError(WorkshopError):
	status_code = status.HTTP_409_CONFLICT
	detail = "Workshop is full"


class EligibilityError(WorkshopError):
	"""Raised when a business rule check fails inside a transaction."""

	status_code = status.HTTP_409_CONFLICT
	detail = "not_eligible"


class ForbiddenError(WorkshopError):
	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"


class PaymentProviderError(WorkshopError):
	"""Raised at the API boundary when the payment provider call failed."""

	status_code = status.HTTP_502_BAD_GATEWAY
	detail = "payment_provider_error"
