from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.infra import postgres
from app.infra.auth import AuthenticatedUser
from app.infra.payments import PaymentProvider
from app.main import app
from app.settings import settings

_POOL_USERS = (
	"app.domain.workshops.service",
	"app.domain.workshops.registration",
	"app.domain.workshops.refunds",
	"app.domain.workshops.attendance",
	"app.domain.club_settings.service",
	"app.domain.membership.service",
)


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""API tests authenticate with X-User-Id/X-User-Roles, which only dev accepts."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


def make_conn() -> AsyncMock:
	conn = AsyncMock()
	# asyncpg's transaction() is a sync call returning an async context manager.
	conn.transaction = MagicMock()
	return conn


@pytest.fixture
def mock_conn() -> AsyncMock:
	return make_conn()


@pytest.fixture
def mock_pool(monkeypatch, mock_conn):
	pool = MagicMock()
	pool.acquire.return_value.__aenter__.return_value = mock_conn
	get_pool = AsyncMock(return_value=pool)
	for module in _POOL_USERS:
		monkeypatch.setattr(f"{module}.get_pool", get_pool)
	return pool


@pytest.fixture
def provider() -> AsyncMock:
	return AsyncMock(spec=PaymentProvider)


@pytest.fixture
def coordinator() -> AuthenticatedUser:
	return AuthenticatedUser(id=str(uuid4()), roles=("workshop_coordinator",))


@pytest.fixture
def member() -> AuthenticatedUser:
	return AuthenticatedUser(id=str(uuid4()), roles=("member",))


def workshop_row(**overrides) -> dict:
	now = datetime.now(timezone.utc)
	row = {
		"id": uuid4(),
		"title": "Longsword fundamentals",
		"description": "Intro to the longsword",
		"location": "Main hall",
		"start_date": now + timedelta(days=10),
		"end_date": now + timedelta(days=10, hours=2),
		"max_capacity": 10,
		"price_member": 2500,
		"price_non_member": 3500,
		"is_public": False,
		"refund_days": 3,
		"status": "planned",
		"created_by": uuid4(),
		"created_at": now,
		"updated_at": now,
	}
	row.update(overrides)
	return row


def registration_row(**overrides) -> dict:
	now = datetime.now(timezone.utc)
	row = {
		"id": uuid4(),
		"club_activity_id": uuid4(),
		"member_user_id": uuid4(),
		"external_user_id": None,
		"status": "confirmed",
		"amount_paid": 2500,
		"currency": "eur",
		"stripe_checkout_session_id": "pi_test_1",
		"registered_at": now,
		"confirmed_at": now,
		"cancelled_at": None,
		"registration_notes": None,
		"attendance_status": None,
		"attendance_marked_at": None,
		"attendance_marked_by": None,
		"attendance_notes": None,
		"created_at": now,
		"updated_at": now,
	}
	row.update(overrides)
	return row


def refund_row(**overrides) -> dict:
	row = {
		"id": uuid4(),
		"registration_id": uuid4(),
		"refund_amount": 2500,
		"refund_reason": "Injury",
		"status": "pending",
		"stripe_refund_id": None,
		"stripe_payment_intent_id": "pi_test_1",
		"requested_at": datetime.now(timezone.utc),
		"processed_at": None,
		"completed_at": None,
		"requested_by": uuid4(),
		"processed_by": None,
	}
	row.update(overrides)
	return row


@pytest.fixture
def rows():
	return SimpleNamespace(workshop=workshop_row, registration=registration_row, refund=refund_row)


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
