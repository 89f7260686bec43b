import asyncio

import pytest
from sqlalchemy import func, select

from application.dtos.payments import ChargeRequest
from domain.payment.exceptions import WebhookSignatureError
from infrastructure.models import PaymentModel, ProcessedWebhookEventModel


async def _count(session_factory, model):
    async with session_factory() as session:
        return (await session.execute(select(func.count(model.id)))).scalar_one()


async def _charge(service, gateway, seed_order, order_ref="SO-1001"):
    await seed_order(order_ref, gateway_customer_id="cus_1")
    if "pm_saved" not in gateway.payment_methods:
        gateway.add_payment_method("pm_saved", customer_id="cus_1")
    charged = await service.charge_sales_order(order_ref, ChargeRequest(payment_method_id="pm_saved"))
    return charged, gateway.intents[charged.payment_intent_id]


def _failed_object(intent, order_ref="SO-1001"):
    return {
        "id": intent.intent_id,
        "object": "payment_intent",
        "amount": intent.amount,
        "currency": intent.currency,
        "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        "metadata": {"order_ref": order_ref, "source": "charge"},
    }


@pytest.mark.asyncio
async def test_replayed_event_applies_once(
    service, handler, gateway, notifier, seed_order, session_factory, load_payment, make_event, intent_payload, signature
):
    charged, intent = await _charge(service, gateway, seed_order)
    payload = make_event("payment_intent.succeeded", intent_payload(intent), event_id="evt_replay")

    outcomes = [(await handler.handle_webhook(payload, signature)).outcome for _ in range(5)]

    assert outcomes == ["applied", "duplicate", "duplicate", "duplicate", "duplicate"]
    assert len(notifier.sent) == 1
    assert await _count(session_factory, ProcessedWebhookEventModel) == 1
    row = await load_payment(charged.payment_id)
    assert row.status == "succeeded"
    assert row.receipt_status == "sent"


@pytest.mark.asyncio
async def test_distinct_events_for_settled_payment_are_noops(
    service, handler, gateway, notifier, seed_order, session_factory, make_event, intent_payload, signature
):
    charged, intent = await _charge(service, gateway, seed_order)
    first = await handler.handle_webhook(make_event("payment_intent.succeeded", intent_payload(intent)), signature)
    second = await handler.handle_webhook(make_event("payment_intent.succeeded", intent_payload(intent)), signature)

    assert first.outcome == "applied"
    assert second.outcome == "noop"
    assert second.payment_id == charged.payment_id
    assert len(notifier.sent) == 1
    assert await _count(session_factory, ProcessedWebhookEventModel) == 2


@pytest.mark.asyncio
async def test_concurrent_deliveries_of_one_event_apply_once(
    service, handler, gateway, notifier, seed_order, session_factory, load_payment, make_event, intent_payload, signature
):
    charged, intent = await _charge(service, gateway, seed_order)
    before = await load_payment(charged.payment_id)
    payload = make_event("payment_intent.succeeded", intent_payload(intent), event_id="evt_parallel")

    results = await asyncio.gather(*(handler.handle_webhook(payload, signature) for _ in range(3)))

    assert sorted(r.outcome for r in results) == ["applied", "duplicate", "duplicate"]
    assert await _count(session_factory, ProcessedWebhookEventModel) == 1
    assert len(notifier.sent) == 1
    row = await load_payment(charged.payment_id)
    assert row.status == "succeeded"
    # 仅一次状态写入
    assert row.version == before.version + 1
    assert row.receipt_status == "sent"


@pytest.mark.asyncio
async def test_failure_after_success_is_rejected(
    service, handler, gateway, seed_order, load_payment, make_event, intent_payload, signature
):
    charged, intent = await _charge(service, gateway, seed_order)
    await handler.handle_webhook(make_event("payment_intent.succeeded", intent_payload(intent)), signature)

    result = await handler.handle_webhook(
        make_event("payment_intent.payment_failed", _failed_object(intent)), signature
    )

    assert result.outcome == "rejected"
    row = await load_payment(charged.payment_id)
    assert row.status == "succeeded"
    assert row.error_message is None


@pytest.mark.asyncio
async def test_late_success_overrides_failure(
    service, handler, gateway, notifier, seed_order, load_payment, load_order, make_event, intent_payload, signature
):
    charged, intent = await _charge(service, gateway, seed_order)

    failed = await handler.handle_webhook(
        make_event("payment_intent.payment_failed", _failed_object(intent)), signature
    )
    assert failed.outcome == "applied"
    row = await load_payment(charged.payment_id)
    assert row.status == "failed"
    assert row.error_message == "Your card was declined."

    late = await handler.handle_webhook(make_event("payment_intent.succeeded", intent_payload(intent)), signature)

    assert late.outcome == "applied"
    row = await load_payment(charged.payment_id)
    assert row.status == "succeeded"
    assert row.error_message is None
    assert len(notifier.sent) == 1
    assert (await load_order("SO-1001")).payment_status == "paid"


@pytest.mark.asyncio
async def test_unknown_event_is_acknowledged_without_record(handler, session_factory, make_event, signature):
    result = await handler.handle_webhook(
        make_event("customer.created", {"id": "cus_1", "object": "customer"}), signature
    )

    assert result.outcome == "ignored"
    assert await _count(session_factory, ProcessedWebhookEventModel) == 0


@pytest.mark.asyncio
async def test_event_for_unknown_payment_is_recorded_as_ignored(handler, session_factory, make_event, signature):
    payload = make_event(
        "payment_intent.canceled",
        {"id": "pi_elsewhere", "object": "payment_intent", "metadata": {}},
        event_id="evt_other",
    )

    result = await handler.handle_webhook(payload, signature)

    assert result.outcome == "ignored"
    assert result.payment_id is None
    assert await _count(session_factory, ProcessedWebhookEventModel) == 1
    assert (await handler.handle_webhook(payload, signature)).outcome == "duplicate"


@pytest.mark.asyncio
async def test_invalid_signature_mutates_nothing(
    service, handler, gateway, seed_order, session_factory, load_payment, make_event, intent_payload
):
    charged, intent = await _charge(service, gateway, seed_order)

    with pytest.raises(WebhookSignatureError):
        await handler.handle_webhook(make_event("payment_intent.succeeded", intent_payload(intent)), "t=1,v1=forged")

    row = await load_payment(charged.payment_id)
    assert row.status == "pending"
    assert row.version == 0
    assert await _count(session_factory, ProcessedWebhookEventModel) == 0


@pytest.mark.asyncio
async def test_charge_refunded_syncs_refund_total(
    handler, pay_order, load_payment, load_order, make_event, signature
):
    payment_id = await pay_order("SO-1001")
    row = await load_payment(payment_id)

    result = await handler.handle_webhook(
        make_event(
            "charge.refunded",
            {
                "id": row.charge_id,
                "object": "charge",
                "payment_intent": row.payment_intent_id,
                "amount": 5000,
                "amount_refunded": 2000,
            },
        ),
        signature,
    )

    assert result.outcome == "applied"
    row = await load_payment(payment_id)
    assert row.status == "partially_refunded"
    assert row.refunded_amount == 2000
    assert (await load_order("SO-1001")).balance_due == 2000


@pytest.mark.asyncio
async def test_refund_event_before_success_settles_payment(
    service, handler, gateway, notifier, seed_order, load_payment, make_event, signature
):
    charged, intent = await _charge(service, gateway, seed_order)

    result = await handler.handle_webhook(
        make_event(
            "charge.refunded",
            {
                "id": intent.latest_charge_id,
                "object": "charge",
                "payment_intent": intent.intent_id,
                "amount": 5000,
                "amount_refunded": 5000,
            },
        ),
        signature,
    )

    assert result.outcome == "applied"
    row = await load_payment(charged.payment_id)
    assert row.status == "refunded"
    assert row.charge_id == intent.latest_charge_id
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_link_intent_matched_to_pending_link(
    service, handler, notifier, seed_order, load_payment, load_order, make_event, signature
):
    await seed_order("SO-1001", total=5000)
    link = await service.create_payment_link("SO-1001")

    result = await handler.handle_webhook(
        make_event(
            "payment_intent.succeeded",
            {
                "id": "pi_link_1",
                "object": "payment_intent",
                "amount": 5000,
                "amount_received": 5000,
                "currency": "usd",
                "customer": "cus_guest",
                "latest_charge": "ch_link_1",
                "metadata": {"order_ref": "SO-1001", "source": "payment_link"},
            },
        ),
        signature,
    )

    assert result.outcome == "applied"
    assert result.payment_id == link.payment_id
    row = await load_payment(link.payment_id)
    assert row.status == "succeeded"
    assert row.payment_intent_id == "pi_link_1"
    assert row.charge_id == "ch_link_1"
    assert row.customer_id == "cus_guest"
    assert (await load_order("SO-1001")).paid_amount == 5000
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_checkout_session_completed_settles_link(
    service, handler, seed_order, load_payment, make_event, signature
):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")

    result = await handler.handle_webhook(
        make_event(
            "checkout.session.completed",
            {
                "id": "cs_1",
                "object": "checkout.session",
                "payment_link": link.payment_link_id,
                "payment_intent": "pi_cs_1",
                "payment_status": "paid",
                "amount_total": 5000,
            },
        ),
        signature,
    )

    assert result.outcome == "applied"
    row = await load_payment(link.payment_id)
    assert row.status == "succeeded"
    assert row.payment_intent_id == "pi_cs_1"


@pytest.mark.asyncio
async def test_unpaid_checkout_session_waits(service, handler, seed_order, load_payment, make_event, signature):
    await seed_order("SO-1001")
    link = await service.create_payment_link("SO-1001")

    result = await handler.handle_webhook(
        make_event(
            "checkout.session.completed",
            {"id": "cs_2", "payment_link": link.payment_link_id, "payment_status": "unpaid"},
        ),
        signature,
    )

    assert result.outcome == "noop"
    assert (await load_payment(link.payment_id)).status == "pending"


@pytest.mark.asyncio
async def test_success_webhook_before_charge_row_creates_payment(
    handler, seed_order, session_factory, load_order, make_event, signature
):
    await seed_order("SO-1001", total=5000)

    result = await handler.handle_webhook(
        make_event(
            "payment_intent.succeeded",
            {
                "id": "pi_early",
                "object": "payment_intent",
                "amount": 5000,
                "amount_received": 5000,
                "currency": "usd",
                "latest_charge": "ch_early",
                "payment_method": "pm_x",
                "metadata": {"order_ref": "SO-1001", "source": "charge", "method": "card"},
            },
        ),
        signature,
    )

    assert result.outcome == "applied"
    async with session_factory() as session:
        row = (
            await session.execute(select(PaymentModel).where(PaymentModel.payment_intent_id == "pi_early"))
        ).scalar_one()
    assert row.status == "succeeded"
    assert row.charge_id == "ch_early"
    assert row.extra_metadata == {"created_by": "webhook"}
    assert (await load_order("SO-1001")).payment_status == "paid"


@pytest.mark.asyncio
async def test_dispute_is_noted_once(handler, pay_order, load_payment, make_event, signature):
    payment_id = await pay_order("SO-1001")
    row = await load_payment(payment_id)
    dispute = {
        "id": "dp_1",
        "object": "dispute",
        "charge": row.charge_id,
        "amount": 5000,
        "reason": "fraudulent",
    }

    first = await handler.handle_webhook(make_event("charge.dispute.created", dispute), signature)
    second = await handler.handle_webhook(make_event("charge.dispute.created", dispute), signature)

    assert first.outcome == "applied"
    assert second.outcome == "noop"
    row = await load_payment(payment_id)
    assert row.status == "succeeded"
    assert row.extra_metadata["disputes"] == {"dp_1": {"amount": 5000, "reason": "fraudulent"}}
