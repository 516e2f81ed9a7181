"""Membership signup pricing endpoint."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.security_deps import get_current_user
from app.domain.membership.schemas import PlanQuote
from app.domain.membership.service import MembershipPricingService
from app.infra.auth import AuthenticatedUser

router = APIRouter(prefix="/membership", tags=["membership"])
_service = MembershipPricingService()


@router.get("/pricing", response_model=PlanQuote)
async def get_pricing(
	coupon: Optional[str] = Query(default=None, min_length=1, max_length=64),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> PlanQuote:
	percentage = await _service.resolve_coupon(coupon) if coupon else None
	return await _service.get_quote(auth_user, percentage, coupon_code=coupon.upper() if coupon else None)
