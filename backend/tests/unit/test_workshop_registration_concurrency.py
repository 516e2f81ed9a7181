"""Concurrent completions against an in-memory store that honours the workshop row lock."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from app.domain.workshops.exceptions import CapacityError
from app.domain.workshops.registration import RegistrationService
from app.infra.auth import AuthenticatedUser
from app.infra.payments import ProviderPaymentIntent, ProviderRefund
from tests.conftest import registration_row, workshop_row


class FakeStore:
    def __init__(self, workshop: dict) -> None:
        self.workshop = workshop
        self.registrations: list[dict] = []
        self.row_lock = asyncio.Lock()


class FakeTransaction:
    def __init__(self, conn: "LockingConn") -> None:
        self._conn = conn

    async def __aenter__(self):
        self._conn.staged = []
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            self._conn.store.registrations.extend(self._conn.staged)
        self._conn.staged = []
        if self._conn.holds_lock:
            self._conn.holds_lock = False
            self._conn.store.row_lock.release()
        return False


class LockingConn:
    """Answers the queries issued while completing a registration."""

    def __init__(self, store: FakeStore) -> None:
        self.store = store
        self.staged: list[dict] = []
        self.holds_lock = False

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)

    def _active(self) -> list[dict]:
        return [r for r in self.store.registrations if r["status"] in ("pending", "confirmed")]

    async def fetchrow(self, query, *args):
        await asyncio.sleep(0)
        if "FROM club_activities" in query and "FOR UPDATE" in query:
            await self.store.row_lock.acquire()
            self.holds_lock = True
            return self.store.workshop
        if "stripe_checkout_session_id = $1" in query:
            for row in self.store.registrations:
                if row["stripe_checkout_session_id"] == args[0]:
                    return row
            return None
        if query.lstrip().startswith("INSERT INTO club_activity_registrations"):
            workshop_id, user_id, status, amount, currency, intent_id = args
            row = registration_row(
                club_activity_id=workshop_id,
                member_user_id=user_id,
                status=status,
                amount_paid=amount,
                currency=currency,
                stripe_checkout_session_id=intent_id,
            )
            await asyncio.sleep(0)
            self.staged.append(row)
            return row
        raise AssertionError(f"unexpected fetchrow: {query}")

    async def fetchval(self, query, *args):
        await asyncio.sleep(0)
        if "COUNT(*)" in query:
            return len(self._active())
        if "SELECT 1" in query:
            attendee_id = args[1]
            return 1 if any(r["member_user_id"] == attendee_id for r in self._active()) else None
        raise AssertionError(f"unexpected fetchval: {query}")


class FakePool:
    def __init__(self, store: FakeStore) -> None:
        self.store = store

    @asynccontextmanager
    async def acquire(self):
        yield LockingConn(self.store)


@pytest.fixture
def store(monkeypatch) -> FakeStore:
    fake = FakeStore(workshop_row(status="published", max_capacity=3))
    monkeypatch.setattr(
        "app.domain.workshops.registration.get_pool", AsyncMock(return_value=FakePool(fake))
    )
    return fake


def _members(count: int) -> list[AuthenticatedUser]:
    return [AuthenticatedUser(id=str(uuid4()), roles=("member",)) for _ in range(count)]


def _wire_intents(provider, workshop_id, owners: dict) -> None:
    def retrieve(intent_id):
        return ProviderPaymentIntent(
            id=intent_id,
            status="succeeded",
            amount=2500,
            currency="eur",
            client_secret=f"{intent_id}_secret",
            metadata={"workshop_id": str(workshop_id), "user_id": owners[intent_id].id},
        )

    provider.retrieve_payment_intent.side_effect = retrieve
    provider.create_refund.side_effect = lambda payment_intent_id, amount: ProviderRefund(
        id=f"re_{payment_intent_id}", status="pending", amount=amount, payment_intent_id=payment_intent_id
    )


@pytest.mark.asyncio
async def test_parallel_completions_never_overfill(store, provider):
    members = _members(4)
    owners = {f"pi_{index}": user for index, user in enumerate(members)}
    _wire_intents(provider, store.workshop["id"], owners)
    service = RegistrationService(provider)

    results = await asyncio.gather(
        *(
            service.complete_registration(user, store.workshop["id"], intent_id)
            for intent_id, user in owners.items()
        ),
        return_exceptions=True,
    )

    confirmed = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    assert len(confirmed) == 3
    assert len(rejected) == 1
    assert isinstance(rejected[0], CapacityError)
    assert len(store.registrations) == 3
    provider.create_refund.assert_awaited_once()
    refunded_intent = provider.create_refund.await_args.kwargs["payment_intent_id"]
    assert refunded_intent not in {r["stripe_checkout_session_id"] for r in store.registrations}


@pytest.mark.asyncio
async def test_parallel_completion_of_same_intent_keeps_one_paid_registration(store, provider):
    (user,) = _members(1)
    _wire_intents(provider, store.workshop["id"], {"pi_0": user})
    service = RegistrationService(provider)

    first, second = await asyncio.gather(
        service.complete_registration(user, store.workshop["id"], "pi_0"),
        service.complete_registration(user, store.workshop["id"], "pi_0"),
    )

    assert first.id == second.id
    assert len(store.registrations) == 1
    provider.create_refund.assert_not_awaited()
