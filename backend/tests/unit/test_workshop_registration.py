from uuid import uuid4

import asyncpg
import pytest
import stripe

from app.domain.workshops.exceptions import (
    CapacityError,
    EligibilityError,
    ForbiddenError,
    NotFoundError,
    PaymentProviderError,
    ValidationError,
)
from app.domain.workshops.registration import ALREADY_REGISTERED, NOT_AVAILABLE, RegistrationService
from app.domain.workshops.schemas import ExternalAttendeeRequest, InterestAction, PaymentIntentRequest
from app.infra.auth import AuthenticatedUser
from app.infra.payments import ProviderPaymentIntent, ProviderRefund
from tests.conftest import registration_row, workshop_row


def _intent(workshop_id, user_id, **overrides) -> ProviderPaymentIntent:
    data = {
        "id": "pi_test_1",
        "status": "succeeded",
        "amount": 2500,
        "currency": "eur",
        "client_secret": "pi_test_1_secret",
        "metadata": {"workshop_id": str(workshop_id), "user_id": str(user_id)},
    }
    data.update(overrides)
    return ProviderPaymentIntent(**data)


@pytest.mark.asyncio
async def test_full_workshop_rejects_second_member_before_payment(mock_pool, mock_conn, provider):
    workshop = workshop_row(status="published", max_capacity=1)
    user_b = AuthenticatedUser(id=str(uuid4()), roles=("member",))
    mock_conn.fetchrow.return_value = workshop
    # no duplicate for B, one active registration held by A
    mock_conn.fetchval.side_effect = [None, 1]

    with pytest.raises(CapacityError):
        await RegistrationService(provider).create_payment_intent(user_b, workshop["id"])

    provider.create_payment_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_intent_uses_workshop_price(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published", price_member=2500)
    mock_conn.fetchrow.return_value = workshop
    mock_conn.fetchval.side_effect = [None, 0]
    provider.create_payment_intent.return_value = _intent(
        workshop["id"], member.id, status="requires_payment_method"
    )

    response = await RegistrationService(provider).create_payment_intent(member, workshop["id"])

    kwargs = provider.create_payment_intent.await_args.kwargs
    assert kwargs["amount"] == 2500
    assert kwargs["metadata"]["workshop_id"] == str(workshop["id"])
    assert kwargs["metadata"]["user_id"] == member.id
    assert kwargs["metadata"]["type"] == "workshop_registration"
    assert response.client_secret == "pi_test_1_secret"
    assert response.amount == 2500


@pytest.mark.asyncio
async def test_payment_intent_amount_mismatch(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published", price_member=2500)
    mock_conn.fetchrow.return_value = workshop
    mock_conn.fetchval.side_effect = [None, 0]

    with pytest.raises(ValidationError):
        await RegistrationService(provider).create_payment_intent(
            member, workshop["id"], PaymentIntentRequest(amount=100)
        )
    provider.create_payment_intent.assert_not_awaited()


@pytest.mark.asyncio
async def test_payment_intent_requires_published(mock_pool, mock_conn, provider, member):
    mock_conn.fetchrow.return_value = workshop_row(status="planned")

    with pytest.raises(EligibilityError, match=NOT_AVAILABLE):
        await RegistrationService(provider).create_payment_intent(member, uuid4())


@pytest.mark.asyncio
async def test_payment_intent_rejects_duplicate(mock_pool, mock_conn, provider, member):
    mock_conn.fetchrow.return_value = workshop_row(status="published")
    mock_conn.fetchval.return_value = 1

    with pytest.raises(EligibilityError, match=ALREADY_REGISTERED):
        await RegistrationService(provider).create_payment_intent(member, uuid4())


@pytest.mark.asyncio
async def test_complete_requires_succeeded_payment(mock_pool, mock_conn, provider, member):
    workshop_id = uuid4()
    provider.retrieve_payment_intent.return_value = _intent(
        workshop_id, member.id, status="requires_payment_method"
    )

    with pytest.raises(EligibilityError, match="Payment not completed"):
        await RegistrationService(provider).complete_registration(member, workshop_id, "pi_test_1")
    mock_conn.fetchrow.assert_not_awaited()


@pytest.mark.asyncio
async def test_complete_rejects_intent_for_other_workshop(mock_pool, mock_conn, provider, member):
    provider.retrieve_payment_intent.return_value = _intent(uuid4(), member.id)

    with pytest.raises(EligibilityError, match="does not match workshop"):
        await RegistrationService(provider).complete_registration(member, uuid4(), "pi_test_1")


@pytest.mark.asyncio
async def test_complete_rejects_intent_of_other_user(mock_pool, mock_conn, provider, member):
    workshop_id = uuid4()
    provider.retrieve_payment_intent.return_value = _intent(workshop_id, uuid4())

    with pytest.raises(EligibilityError, match="does not belong"):
        await RegistrationService(provider).complete_registration(member, workshop_id, "pi_test_1")


@pytest.mark.asyncio
async def test_complete_confirms_with_provider_amount(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published")
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id, amount=2400)
    inserted = registration_row(club_activity_id=workshop["id"], amount_paid=2400)
    mock_conn.fetchrow.side_effect = [None, workshop, None, inserted]
    mock_conn.fetchval.side_effect = [None, 0]

    registration = await RegistrationService(provider).complete_registration(
        member, workshop["id"], "pi_test_1"
    )

    insert_args = mock_conn.fetchrow.await_args_list[3].args
    assert insert_args[3] == "confirmed"
    assert insert_args[4] == 2400
    assert insert_args[5] == "eur"
    assert insert_args[6] == "pi_test_1"
    assert registration.status == "confirmed"
    provider.create_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_complete_is_idempotent_per_intent(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published")
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    existing = registration_row(club_activity_id=workshop["id"])
    mock_conn.fetchrow.return_value = existing

    registration = await RegistrationService(provider).complete_registration(
        member, workshop["id"], "pi_test_1"
    )

    assert registration.id == existing["id"]
    assert mock_conn.fetchrow.await_count == 1
    mock_conn.transaction.assert_not_called()


@pytest.mark.asyncio
async def test_complete_refunds_when_workshop_filled(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published", max_capacity=1)
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    mock_conn.fetchrow.side_effect = [None, workshop, None, None]
    mock_conn.fetchval.side_effect = [None, 1]
    provider.create_refund.return_value = ProviderRefund(
        id="re_1", status="pending", amount=2500, payment_intent_id="pi_test_1"
    )

    with pytest.raises(CapacityError):
        await RegistrationService(provider).complete_registration(member, workshop["id"], "pi_test_1")

    provider.create_refund.assert_awaited_once_with(payment_intent_id="pi_test_1", amount=2500)


@pytest.mark.asyncio
async def test_complete_unique_violation_compensates(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published")
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    mock_conn.fetchrow.side_effect = [None, workshop, None, asyncpg.UniqueViolationError("dup"), None]
    mock_conn.fetchval.side_effect = [None, 0]
    provider.create_refund.side_effect = stripe.InvalidRequestError(
        "Charge has already been refunded.", None, code="charge_already_refunded"
    )

    with pytest.raises(EligibilityError, match=ALREADY_REGISTERED):
        await RegistrationService(provider).complete_registration(member, workshop["id"], "pi_test_1")

    provider.create_refund.assert_awaited_once()


@pytest.mark.asyncio
async def test_complete_returns_registration_committed_while_waiting_for_lock(
    mock_pool, mock_conn, provider, member
):
    workshop = workshop_row(status="published", max_capacity=1)
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    committed = registration_row(club_activity_id=workshop["id"], member_user_id=member.id)
    # nothing before the lock, the other request's row once the lock is held
    mock_conn.fetchrow.side_effect = [None, workshop, committed]

    registration = await RegistrationService(provider).complete_registration(
        member, workshop["id"], "pi_test_1"
    )

    assert registration.id == committed["id"]
    assert mock_conn.fetchrow.await_count == 3
    mock_conn.fetchval.assert_not_awaited()
    provider.create_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_complete_unique_violation_for_same_intent_keeps_payment(
    mock_pool, mock_conn, provider, member
):
    workshop = workshop_row(status="published")
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    committed = registration_row(club_activity_id=workshop["id"], member_user_id=member.id)
    mock_conn.fetchrow.side_effect = [
        None,
        workshop,
        None,
        asyncpg.UniqueViolationError("dup"),
        committed,
    ]
    mock_conn.fetchval.side_effect = [None, 0]

    registration = await RegistrationService(provider).complete_registration(
        member, workshop["id"], "pi_test_1"
    )

    assert registration.id == committed["id"]
    provider.create_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_complete_reports_failed_compensation_refund(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="published", max_capacity=1)
    provider.retrieve_payment_intent.return_value = _intent(workshop["id"], member.id)
    mock_conn.fetchrow.side_effect = [None, workshop, None, None]
    mock_conn.fetchval.side_effect = [None, 1]
    provider.create_refund.side_effect = stripe.APIConnectionError("network down")

    with pytest.raises(PaymentProviderError) as exc:
        await RegistrationService(provider).complete_registration(member, workshop["id"], "pi_test_1")

    assert exc.value.status_code == 502
    assert "pi_test_1" in exc.value.detail
    assert isinstance(exc.value.__cause__, stripe.APIConnectionError)


@pytest.mark.asyncio
async def test_toggle_interest_expresses_then_withdraws(mock_pool, mock_conn, provider, member):
    workshop = workshop_row(status="planned")
    mock_conn.fetchrow.return_value = workshop
    mock_conn.fetchval.side_effect = [None, uuid4()]
    service = RegistrationService(provider)

    first = await service.toggle_interest(member, workshop["id"])
    second = await service.toggle_interest(member, workshop["id"])

    assert first.action == InterestAction.EXPRESSED
    assert second.action == InterestAction.WITHDRAWN
    assert mock_conn.execute.await_count == 1


@pytest.mark.asyncio
async def test_toggle_interest_only_for_planned(mock_pool, mock_conn, provider, member):
    mock_conn.fetchrow.return_value = workshop_row(status="published")

    with pytest.raises(EligibilityError):
        await RegistrationService(provider).toggle_interest(member, uuid4())


@pytest.mark.asyncio
async def test_cancel_registration_does_not_refund(mock_pool, mock_conn, provider, member):
    mock_conn.fetchrow.return_value = registration_row(status="cancelled")

    response = await RegistrationService(provider).cancel_registration(member, uuid4())

    assert response.registration.status == "cancelled"
    assert response.refund_processed is False
    provider.create_refund.assert_not_awaited()


@pytest.mark.asyncio
async def test_cancel_registration_without_active_registration(mock_pool, mock_conn, provider, member):
    mock_conn.fetchrow.return_value = None

    with pytest.raises(NotFoundError):
        await RegistrationService(provider).cancel_registration(member, uuid4())


@pytest.mark.asyncio
async def test_add_external_attendee(mock_pool, mock_conn, provider, coordinator):
    workshop = workshop_row(status="published")
    external_id = uuid4()
    inserted = registration_row(
        club_activity_id=workshop["id"],
        member_user_id=None,
        external_user_id=external_id,
        amount_paid=0,
        stripe_checkout_session_id=None,
    )
    mock_conn.fetchrow.side_effect = [workshop, inserted]
    mock_conn.fetchval.side_effect = [external_id, None, 0]
    payload = ExternalAttendeeRequest(first_name="Ada", last_name="Lovelace", email="Ada@Example.org")

    registration = await RegistrationService(provider).add_external_attendee(
        coordinator, workshop["id"], payload
    )

    assert registration.external_user_id == external_id
    assert registration.member_user_id is None
    duplicate_check = mock_conn.fetchval.await_args_list[1].args
    assert "external_user_id" in duplicate_check[0]
    assert duplicate_check[2] == external_id


@pytest.mark.asyncio
async def test_attendee_list_requires_role(mock_pool, mock_conn, provider, member):
    with pytest.raises(ForbiddenError):
        await RegistrationService(provider).get_workshop_attendees(member, uuid4())
    mock_conn.fetch.assert_not_awaited()
