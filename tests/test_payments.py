import asyncio
from datetime import timedelta

import pytest

from fulfillment.core.clock import ensure_aware
from fulfillment.core.exceptions import (
    PaymentNotCapturedError,
    PaymentProviderError,
    RefundExceedsCapturedError,
    TipNotAllowedError,
)
from fulfillment.models import PaymentStatus
from fulfillment.services.pricing import percent_of
from tests.conftest import OTHER_TENANT, TENANT


@pytest.fixture
async def tenant(services):
    return await services.tenants.get_tenant(TENANT)


@pytest.fixture
async def captured_intent(services, provider, tenant):
    intent_id = await services.payments.create_intent(tenant, "ord_paid", amount=2000, tip=100)
    provider.confirm_payment_intent(intent_id)
    await services.payments.mark_succeeded(intent_id)
    return intent_id


async def test_platform_fee_applies_after_trial(services, provider, tenant):
    intent_id = await services.payments.create_intent(tenant, "ord_1", amount=2000, tip=100)

    record = await services.payments.get_record(intent_id)
    assert record.amount == 2100
    assert record.platform_fee == 63
    assert record.status == PaymentStatus.REQUIRES_PAYMENT
    intent = provider.intents[intent_id]
    assert intent.application_fee == 63
    assert intent.destination_account == "acct_taco"
    assert intent.metadata["order_id"] == "ord_1"


async def test_no_platform_fee_during_trial(services):
    trial_tenant = await services.tenants.get_tenant(OTHER_TENANT)
    assert services.payments.in_trial(trial_tenant)

    intent_id = await services.payments.create_intent(trial_tenant, "ord_2", amount=2000, tip=100)

    assert (await services.payments.get_record(intent_id)).platform_fee == 0


async def test_trial_window_falls_back_to_creation_date(services, settings):
    tenant = await services.tenants.update_tenant(OTHER_TENANT, trial_ends_at=None)
    created = ensure_aware(tenant.created_at)

    assert services.payments.in_trial(tenant, now=created + timedelta(days=settings.trial_days - 1))
    assert not services.payments.in_trial(tenant, now=created + timedelta(days=settings.trial_days + 1))


async def test_tip_before_confirmation_updates_intent(services, provider, tenant, settings):
    intent_id = await services.payments.create_intent(tenant, "ord_3", amount=2000)

    assert await services.payments.add_tip(intent_id, 300) is True

    record = await services.payments.get_record(intent_id)
    assert record.tip == 300
    assert record.amount == 2300
    assert record.platform_fee == 60 + percent_of(300, settings.tip_fee_percent)
    assert provider.intents[intent_id].amount == 2300
    assert provider.intents[intent_id].application_fee == record.platform_fee


async def test_tip_after_confirmation_is_rejected(services, captured_intent):
    with pytest.raises(TipNotAllowedError):
        await services.payments.add_tip(captured_intent, 200)

    assert (await services.payments.get_record(captured_intent)).tip == 100


async def test_tip_rejected_when_provider_already_settled(services, provider, tenant):
    intent_id = await services.payments.create_intent(tenant, "ord_4", amount=2000)
    provider.confirm_payment_intent(intent_id)  # webhook not processed yet

    with pytest.raises(TipNotAllowedError):
        await services.payments.add_tip(intent_id, 200)

    assert (await services.payments.get_record(intent_id)).amount == 2000


async def test_refund_cannot_exceed_captured(services, captured_intent):
    with pytest.raises(RefundExceedsCapturedError):
        await services.payments.refund(captured_intent, 2101)

    await services.payments.refund(captured_intent, 1000)
    record = await services.payments.get_record(captured_intent)
    assert record.status == PaymentStatus.PARTIALLY_REFUNDED

    await services.payments.refund(captured_intent)
    record = await services.payments.get_record(captured_intent)
    assert record.refunded_amount == 2100
    assert record.status == PaymentStatus.REFUNDED

    with pytest.raises(RefundExceedsCapturedError):
        await services.payments.refund(captured_intent)


async def test_refund_requires_capture(services, tenant):
    intent_id = await services.payments.create_intent(tenant, "ord_5", amount=2000)

    with pytest.raises(PaymentNotCapturedError):
        await services.payments.refund(intent_id)


async def test_concurrent_refunds_never_over_refund(services, captured_intent):
    results = await asyncio.gather(
        *[services.payments.refund(captured_intent, 1000) for _ in range(3)],
        return_exceptions=True,
    )

    succeeded = [r for r in results if isinstance(r, str)]
    rejected = [r for r in results if isinstance(r, RefundExceedsCapturedError)]
    assert len(succeeded) == 2
    assert len(rejected) == 1
    assert (await services.payments.get_record(captured_intent)).refunded_amount == 2000


async def test_provider_failure_releases_refund_reservation(services, provider, captured_intent):
    provider.failure_rate = 1.0

    with pytest.raises(PaymentProviderError):
        await services.payments.refund(captured_intent, 500)

    record = await services.payments.get_record(captured_intent)
    assert record.refunded_amount == 0
    assert record.status == PaymentStatus.SUCCEEDED


async def test_provider_failure_on_create_raises(services, provider, tenant):
    provider.failure_rate = 1.0

    with pytest.raises(PaymentProviderError):
        await services.payments.create_intent(tenant, "ord_6", amount=2000)

    assert await services.payments.get_record_for_order("ord_6") is None


async def test_repeated_success_event_is_ignored(services, captured_intent):
    record = await services.payments.mark_succeeded(captured_intent, amount_received=50)

    assert record.captured_amount == 2100


async def test_cancel_intent(services, provider, tenant, captured_intent):
    intent_id = await services.payments.create_intent(tenant, "ord_7", amount=2000)

    assert await services.payments.cancel_intent(intent_id) is True
    assert (await services.payments.get_record(intent_id)).status == PaymentStatus.CANCELLED
    assert await services.payments.cancel_intent(captured_intent) is False
