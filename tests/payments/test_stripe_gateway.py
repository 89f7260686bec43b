import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest

stripe = pytest.importorskip("stripe")

from core.settings import PaymentRetry, PaymentSettings, StripeSettings, WebhookSettings
from domain.common.exceptions import DomainValidationException
from domain.payment.events import PaymentIntentSucceeded
from domain.payment.exceptions import GatewayError, WebhookSignatureError
from infrastructure.external.payments.stripe_client import StripeGateway
from shared.codes.payment_codes import GatewayErrorReason


WEBHOOK_SECRET = "whsec_unit_test"


class FakeService:
    """Records ``*_async`` calls; responses come from a queue or a callable."""

    def __init__(self, **responses):
        self.calls = []
        self._responses = responses

    def __getattr__(self, name):
        if not name.endswith("_async"):
            raise AttributeError(name)

        async def _call(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            response = self._responses[name]
            if isinstance(response, list):
                response = response.pop(0)
            if isinstance(response, Exception):
                raise response
            return response(*args, **kwargs) if callable(response) else response

        return _call

    def named(self, name):
        return [(args, kwargs) for call, args, kwargs in self.calls if call == name]


def _settings(**kwargs):
    return PaymentSettings(
        stripe=StripeSettings(secret_key="sk_test_unit", webhook_secret=WEBHOOK_SECRET),
        retry=PaymentRetry(max=2, base_backoff=0.01),
        **kwargs,
    )


def _gateway(settings=None, **services):
    client = SimpleNamespace(
        v1=SimpleNamespace(
            payment_links=services.get("payment_links", FakeService()),
            payment_intents=services.get("payment_intents", FakeService()),
            customers=services.get("customers", FakeService()),
            payment_methods=services.get("payment_methods", FakeService()),
            refunds=services.get("refunds", FakeService()),
            charges=services.get("charges", FakeService()),
            setup_intents=services.get("setup_intents", FakeService()),
            checkout=SimpleNamespace(sessions=services.get("sessions", FakeService())),
        )
    )
    return StripeGateway(settings or _settings(), client=client)


def _intent(status="succeeded", **extra):
    return {
        "id": "pi_1",
        "status": status,
        "amount": 5000,
        "currency": "usd",
        "client_secret": "pi_1_secret",
        "customer": "cus_1",
        "payment_method": "pm_1",
        "latest_charge": {
            "id": "ch_1",
            "payment_method_details": {"card": {"last4": "4242", "brand": "visa"}},
        },
        "metadata": {"order_ref": "SO-1", "source": "charge"},
        **extra,
    }


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.mark.asyncio
async def test_create_payment_link_params():
    links = FakeService(create_async={"id": "plink_1", "url": "https://buy.stripe.com/x", "active": True})
    gw = _gateway(payment_links=links)

    link = await gw.create_payment_link(
        amount=5000,
        currency="USD",
        description="Order SO-1",
        metadata={"order_ref": "SO-1"},
        return_url="https://shop.example.test/thanks",
        idempotency_key="key-1",
    )

    assert link.link_id == "plink_1"
    (_, kwargs), = links.named("create_async")
    params = kwargs["params"]
    assert kwargs["options"] == {"idempotency_key": "key-1"}
    assert params["line_items"][0]["price_data"]["unit_amount"] == 5000
    assert params["line_items"][0]["price_data"]["currency"] == "usd"
    assert params["payment_intent_data"]["metadata"] == {"order_ref": "SO-1", "source": "payment_link"}
    assert params["after_completion"]["redirect"]["url"] == "https://shop.example.test/thanks"


@pytest.mark.asyncio
async def test_invalid_amount_rejected_before_any_call():
    links = FakeService()
    gw = _gateway(payment_links=links)
    for amount in (0, -100, 10.5):
        with pytest.raises(DomainValidationException):
            await gw.create_payment_link(amount=amount, currency="usd", description="x", metadata={})
    assert links.calls == []


@pytest.mark.asyncio
async def test_create_payment_intent_maps_response():
    intents = FakeService(create_async=_intent())
    gw = _gateway(payment_intents=intents)

    intent = await gw.create_payment_intent(
        amount=5000,
        currency="usd",
        customer_id="cus_1",
        payment_method_id="pm_1",
        metadata={"order_ref": "SO-1", "empty": None},
        save_payment_method=True,
        idempotency_key="key-2",
    )

    assert intent.intent_id == "pi_1"
    assert intent.latest_charge_id == "ch_1"
    assert intent.card_last4 == "4242"
    assert intent.card_brand == "visa"
    (_, kwargs), = intents.named("create_async")
    assert kwargs["options"] == {"idempotency_key": "key-2"}
    assert kwargs["params"]["metadata"] == {"order_ref": "SO-1", "source": "charge"}
    assert kwargs["params"]["setup_future_usage"] == "off_session"
    assert kwargs["params"]["confirm"] is True


@pytest.mark.asyncio
async def test_card_errors_map_to_safe_reasons():
    declined = stripe.CardError("Your card has insufficient funds.", None, "card_declined")
    action = stripe.CardError("Authentication required.", None, "authentication_required")
    intents = FakeService(create_async=[declined, action])
    gw = _gateway(payment_intents=intents)
    kwargs = dict(amount=5000, currency="usd", customer_id="cus_1", payment_method_id="pm_1", metadata={})

    with pytest.raises(GatewayError) as first:
        await gw.create_payment_intent(**kwargs)
    assert first.value.reason == GatewayErrorReason.CARD_DECLINED
    assert first.value.message == "The card was declined"
    assert "insufficient" in first.value.provider_message

    with pytest.raises(GatewayError) as second:
        await gw.create_payment_intent(**kwargs)
    assert second.value.reason == GatewayErrorReason.REQUIRES_ACTION


@pytest.mark.asyncio
async def test_mutations_are_not_retried():
    intents = FakeService(create_async=[stripe.APIConnectionError("connection reset"), _intent()])
    gw = _gateway(payment_intents=intents)

    with pytest.raises(GatewayError) as exc:
        await gw.create_payment_intent(
            amount=5000, currency="usd", customer_id="cus_1", payment_method_id="pm_1", metadata={}
        )

    assert exc.value.reason == GatewayErrorReason.PROCESSING_ERROR
    assert exc.value.retryable is True
    assert len(intents.calls) == 1


@pytest.mark.asyncio
async def test_reads_retry_transient_errors():
    intents = FakeService(retrieve_async=[stripe.APIConnectionError("timeout"), _intent(status="processing")])
    gw = _gateway(payment_intents=intents)

    intent = await gw.retrieve_intent("pi_1")

    assert intent.status == "processing"
    assert len(intents.calls) == 2


@pytest.mark.asyncio
async def test_reads_give_up_after_configured_attempts():
    errors = [stripe.RateLimitError("slow down") for _ in range(3)]
    charges = FakeService(retrieve_async=errors)
    gw = _gateway(charges=charges)

    with pytest.raises(GatewayError):
        await gw.retrieve_charge("ch_1")
    assert len(charges.calls) == 3


@pytest.mark.asyncio
async def test_attach_payment_method_is_upsert():
    pm = {"id": "pm_1", "customer": "cus_1", "type": "card", "card": {"brand": "visa", "last4": "4242"}}
    methods = FakeService(retrieve_async=pm)
    gw = _gateway(payment_methods=methods)

    result = await gw.attach_payment_method("pm_1", "cus_1")

    assert result.customer_id == "cus_1"
    assert methods.named("attach_async") == []


@pytest.mark.asyncio
async def test_attach_sets_default_when_missing():
    methods = FakeService(
        retrieve_async={"id": "pm_2", "customer": None, "type": "card", "card": {}},
        attach_async={"id": "pm_2", "customer": "cus_1", "type": "card", "card": {"last4": "1881"}},
    )
    customers = FakeService(
        retrieve_async={"id": "cus_1", "invoice_settings": {"default_payment_method": None}},
        update_async={"id": "cus_1"},
    )
    gw = _gateway(payment_methods=methods, customers=customers)

    result = await gw.attach_payment_method("pm_2", "cus_1")

    assert result.card_last4 == "1881"
    (args, kwargs), = customers.named("update_async")
    assert args == ("cus_1",)
    assert kwargs["params"] == {"invoice_settings": {"default_payment_method": "pm_2"}}


@pytest.mark.asyncio
async def test_get_or_create_customer_reuses_by_email():
    customers = FakeService(list_async={"data": [{"id": "cus_existing", "email": "a@example.com"}]})
    gw = _gateway(customers=customers)

    customer = await gw.get_or_create_customer(email="a@example.com", name="A", metadata={})

    assert customer.customer_id == "cus_existing"
    assert customers.named("create_async") == []


@pytest.mark.asyncio
async def test_refund_targets_charge_with_idempotency_key():
    refunds = FakeService(create_async={"id": "re_1", "amount": 2000, "status": "succeeded", "charge": "ch_1"})
    gw = _gateway(refunds=refunds)

    refund = await gw.process_refund(charge_id="ch_1", amount=2000, reason="requested_by_customer", idempotency_key="k")

    assert refund.refund_id == "re_1"
    (_, kwargs), = refunds.named("create_async")
    assert kwargs["params"]["charge"] == "ch_1"
    assert "payment_intent" not in kwargs["params"]
    assert kwargs["options"] == {"idempotency_key": "k"}

    with pytest.raises(ValueError):
        await gw.process_refund(amount=100)


@pytest.mark.asyncio
async def test_list_link_sessions():
    sessions = FakeService(
        list_async={
            "data": [
                {"id": "cs_1", "status": "complete", "payment_status": "paid", "payment_intent": "pi_9",
                 "payment_link": "plink_1", "amount_total": 5000},
            ]
        }
    )
    gw = _gateway(sessions=sessions)

    result = await gw.list_link_sessions("plink_1")

    assert [s.session_id for s in result] == ["cs_1"]
    assert result[0].is_paid
    assert result[0].payment_intent_id == "pi_9"


def test_parse_webhook_verifies_signature():
    gw = _gateway()
    payload = json.dumps(
        {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": _intent()}}
    ).encode("utf-8")

    event = gw.parse_webhook(payload, _sign(payload))

    assert isinstance(event, PaymentIntentSucceeded)
    assert event.event_id == "evt_1"
    assert event.payment_intent_id == "pi_1"
    assert event.charge_id == "ch_1"
    assert event.card_last4 == "4242"
    assert event.metadata["order_ref"] == "SO-1"


@pytest.mark.parametrize(
    "header_factory",
    [
        lambda payload: None,
        lambda payload: "",
        lambda payload: "garbage",
        lambda payload: _sign(payload, secret="whsec_wrong"),
        lambda payload: _sign(payload, timestamp=time.time() - 3600),
        lambda payload: _sign(payload + b" "),
    ],
)
def test_parse_webhook_rejects_bad_signatures(header_factory):
    gw = _gateway(_settings(webhook=WebhookSettings(tolerance_seconds=300)))
    payload = b'{"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}'

    with pytest.raises(WebhookSignatureError):
        gw.parse_webhook(payload, header_factory(payload))


def test_parse_webhook_requires_secret():
    settings = PaymentSettings(stripe=StripeSettings(secret_key="sk_test_unit", webhook_secret=None))
    gw = StripeGateway(settings, client=SimpleNamespace())
    payload = b"{}"
    with pytest.raises(WebhookSignatureError):
        gw.parse_webhook(payload, _sign(payload))
