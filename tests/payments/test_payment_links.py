from datetime import timedelta

import pytest
from sqlalchemy import update

from application.dtos.payments import GatewayCheckoutSession
from domain.common.exceptions import DomainValidationException
from domain.payment.entity import PaymentStatus, ReceiptStatus, utcnow
from domain.payment.exceptions import (
    GatewayError,
    InvalidPaymentStateException,
    OrderNotFoundException,
    OrderTotalInvalidException,
)
from infrastructure.models import PaymentModel, SalesOrderModel


async def _expire(session_factory, payment_id):
    async with session_factory() as session:
        await session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(expires_at=utcnow() - timedelta(minutes=5))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_second_request_reuses_active_link(service, gateway, seed_order, load_payment):
    await seed_order("SO-1001", total=5000)

    first = await service.create_payment_link("SO-1001")
    second = await service.create_payment_link("SO-1001")

    assert first.reused is False
    assert second.reused is True
    assert second.payment_id == first.payment_id
    assert second.url == first.url
    assert len(gateway.calls_to("create_payment_link")) == 1

    row = await load_payment(first.payment_id)
    assert row.status == "pending"
    assert row.method == "payment_link"
    assert row.amount == 5000
    assert row.payment_link_id == first.payment_link_id


@pytest.mark.asyncio
async def test_expired_link_is_cancelled_and_replaced(service, gateway, seed_order, session_factory, load_payment):
    await seed_order("SO-1001")
    first = await service.create_payment_link("SO-1001")
    await _expire(session_factory, first.payment_id)

    second = await service.create_payment_link("SO-1001")

    assert second.payment_id != first.payment_id
    assert second.payment_link_id != first.payment_link_id
    assert (await load_payment(first.payment_id)).status == "cancelled"
    assert gateway.calls_to("deactivate_payment_link") == [{"link_id": first.payment_link_id}]
    keys = [c["idempotency_key"] for c in gateway.calls_to("create_payment_link")]
    assert len(set(keys)) == 2


@pytest.mark.asyncio
async def test_changed_order_total_replaces_link(service, seed_order, session_factory, load_payment):
    await seed_order("SO-1001", total=5000)
    first = await service.create_payment_link("SO-1001")
    async with session_factory() as session:
        await session.execute(
            update(SalesOrderModel).where(SalesOrderModel.order_ref == "SO-1001").values(total_amount=6500)
        )
        await session.commit()

    second = await service.create_payment_link("SO-1001")

    assert second.amount == 6500
    assert (await load_payment(first.payment_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_link_requires_known_order_with_positive_total(service, seed_order):
    with pytest.raises(OrderNotFoundException):
        await service.create_payment_link("SO-missing")
    await seed_order("SO-zero", total=0)
    with pytest.raises(OrderTotalInvalidException):
        await service.create_payment_link("SO-zero")


@pytest.mark.asyncio
async def test_link_rejected_for_paid_order(service, gateway, pay_order):
    await pay_order("SO-1001")

    with pytest.raises(DomainValidationException) as exc:
        await service.create_payment_link("SO-1001")

    assert exc.value.message_key == "order.already_paid"
    assert gateway.calls_to("create_payment_link") == []


@pytest.mark.asyncio
async def test_cancel_pending_link(service, gateway, seed_order, load_payment):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")

    result = await service.cancel_payment_link(link.payment_id)

    assert result.cancelled is True
    assert result.status == PaymentStatus.CANCELLED
    assert gateway.links[link.payment_link_id].active is False
    assert (await load_payment(link.payment_id)).status == "cancelled"

    with pytest.raises(InvalidPaymentStateException):
        await service.cancel_payment_link(link.payment_id)


@pytest.mark.asyncio
async def test_cancel_still_succeeds_when_deactivation_fails(service, gateway, seed_order, load_payment):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")
    gateway.failures["deactivate_payment_link"] = GatewayError(operation="deactivate_payment_link")

    result = await service.cancel_payment_link(link.payment_id)

    assert result.cancelled is True
    assert (await load_payment(link.payment_id)).status == "cancelled"


@pytest.mark.asyncio
async def test_cancel_of_paid_link_reconciles_to_success(
    service, gateway, notifier, seed_order, load_payment, load_order
):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")
    gateway.sessions[link.payment_link_id] = [
        GatewayCheckoutSession(
            session_id="cs_1",
            status="complete",
            payment_status="paid",
            payment_intent_id="pi_from_link",
            payment_link_id=link.payment_link_id,
            amount_total=5000,
        )
    ]

    result = await service.cancel_payment_link(link.payment_id)

    assert result.cancelled is False
    assert result.status == PaymentStatus.SUCCEEDED
    assert gateway.calls_to("deactivate_payment_link") == []
    row = await load_payment(link.payment_id)
    assert row.status == "succeeded"
    assert row.payment_intent_id == "pi_from_link"
    assert row.receipt_status == ReceiptStatus.SENT.value
    assert [r.payment_id for r in notifier.sent] == [link.payment_id]
    order = await load_order("SO-1001")
    assert order.payment_status == "paid"
    assert order.balance_due == 0


@pytest.mark.asyncio
async def test_cancel_expired_payment_links_sweep(service, seed_order, session_factory, load_payment):
    await seed_order("SO-1")
    await seed_order("SO-2")
    stale = await service.create_payment_link("SO-1")
    fresh = await service.create_payment_link("SO-2")
    await _expire(session_factory, stale.payment_id)

    cancelled = await service.cancel_expired_payment_links()

    assert cancelled == 1
    assert (await load_payment(stale.payment_id)).status == "cancelled"
    assert (await load_payment(fresh.payment_id)).status == "pending"


@pytest.mark.asyncio
async def test_sync_link_status(service, gateway, seed_order, load_payment):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")

    unchanged = await service.sync_payment_status(link.payment_id)
    assert unchanged.changed is False
    assert unchanged.gateway_status == "active"

    gateway.links[link.payment_link_id] = gateway.links[link.payment_link_id].model_copy(update={"active": False})
    closed = await service.sync_payment_status(link.payment_id)
    assert closed.changed is True
    assert closed.status == PaymentStatus.CANCELLED
    assert (await load_payment(link.payment_id)).status == "cancelled"
