"""Thin async wrapper around the Stripe SDK.

The SDK is blocking, so each call runs in a worker thread. Provider objects are
normalised into small dataclasses so callers never depend on SDK internals.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

import stripe

from app.obs import metrics as obs_metrics
from app.settings import settings

LOGGER = logging.getLogger(__name__)

ALREADY_REFUNDED_CODE = "charge_already_refunded"
PAYMENT_SUCCEEDED = "succeeded"


@dataclass(slots=True)
class ProviderPaymentIntent:
	id: str
	status: str
	amount: int
	currency: str
	client_secret: Optional[str] = None
	metadata: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderRefund:
	id: str
	status: Optional[str]
	amount: int
	payment_intent_id: Optional[str]


def _as_dict(obj: Any) -> dict[str, Any]:
	if obj is None:
		return {}
	to_dict = getattr(obj, "to_dict", None)
	if callable(to_dict):
		return dict(to_dict())
	return dict(obj)


def _intent_from_sdk(obj: Any) -> ProviderPaymentIntent:
	return ProviderPaymentIntent(
		id=obj.id,
		status=obj.status,
		amount=int(obj.amount),
		currency=str(obj.currency),
		client_secret=getattr(obj, "client_secret", None),
		metadata={str(k): str(v) for k, v in _as_dict(getattr(obj, "metadata", None)).items()},
	)


def _refund_from_sdk(obj: Any) -> ProviderRefund:
	return ProviderRefund(
		id=obj.id,
		status=getattr(obj, "status", None),
		amount=int(obj.amount),
		payment_intent_id=getattr(obj, "payment_intent", None),
	)


def is_already_refunded(exc: BaseException) -> bool:
	"""Whether the provider rejected a refund because the charge was fully refunded."""
	return isinstance(exc, stripe.StripeError) and getattr(exc, "code", None) == ALREADY_REFUNDED_CODE


class PaymentProvider:
	"""Payment intents and refunds against the hosted payment provider."""

	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		payment_method_types: Optional[Sequence[str]] = None,
	) -> None:
		self._api_key = api_key if api_key is not None else settings.stripe_secret_key
		self._payment_method_types = list(payment_method_types or settings.stripe_payment_method_types)

	async def _call(self, operation: str, func, **params: Any) -> Any:
		try:
			return await asyncio.to_thread(func, api_key=self._api_key, **params)
		except stripe.StripeError as exc:
			obs_metrics.inc_provider_error(operation, getattr(exc, "code", None) or "unknown")
			raise

	async def create_payment_intent(
		self,
		*,
		amount: int,
		currency: str,
		metadata: Mapping[str, str],
		customer_id: Optional[str] = None,
	) -> ProviderPaymentIntent:
		params: dict[str, Any] = {
			"amount": amount,
			"currency": currency,
			"metadata": dict(metadata),
			"automatic_payment_methods": {"enabled": False},
			"payment_method_types": self._payment_method_types,
		}
		if customer_id:
			params["customer"] = customer_id
		obj = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
		LOGGER.info("payment_intent_created", extra={"payment_intent_id": obj.id, "amount": amount})
		return _intent_from_sdk(obj)

	async def retrieve_payment_intent(self, payment_intent_id: str) -> ProviderPaymentIntent:
		obj = await self._call("retrieve_payment_intent", stripe.PaymentIntent.retrieve, id=payment_intent_id)
		return _intent_from_sdk(obj)

	async def create_refund(
		self,
		*,
		payment_intent_id: str,
		amount: int,
		reason: str = "requested_by_customer",
	) -> ProviderRefund:
		obj = await self._call(
			"create_refund",
			stripe.Refund.create,
			payment_intent=payment_intent_id,
			amount=amount,
			reason=reason,
		)
		LOGGER.info(
			"provider_refund_created",
			extra={"refund_id": obj.id, "payment_intent_id": payment_intent_id, "amount": amount},
		)
		return _refund_from_sdk(obj)
