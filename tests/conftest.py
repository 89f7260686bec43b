"""Pytest bootstrap configuration.

Environment variables are set before any application module is imported so
that settings pick them up. Each test gets its own SQLite file database and an
in-memory gateway implementing the PaymentGateway port.
"""
import os

os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PAYMENT__STRIPE__SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("PAYMENT__STRIPE__WEBHOOK_SECRET", "whsec_test_secret")

import asyncio
import itertools
import json
from functools import partial
from typing import Optional

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from application.dtos.payments import (
    ChargeRequest,
    GatewayCharge,
    GatewayCheckoutSession,
    GatewayCustomer,
    GatewayIntent,
    GatewayPaymentLink,
    GatewayPaymentMethod,
    GatewayRefund,
    GatewaySetupIntent,
    PaymentReceipt,
)
from application.services.payment_service import PaymentLifecycleService
from application.services.webhook_service import WebhookReconciliationHandler
from core.settings import PaymentSettings
from domain.payment.exceptions import WebhookSignatureError
from infrastructure.external.payments.stripe_events import translate_event
from infrastructure.models import Base, PaymentModel, SalesOrderModel
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


VALID_SIGNATURE = "t=1,v1=fake-valid"


class FakeGateway:
    """In-memory PaymentGateway; idempotency keys replay the first response like Stripe does."""

    provider = "stripe"

    def __init__(self):
        self._ids = itertools.count(1)
        self.calls: list[tuple[str, dict]] = []
        self.links: dict[str, GatewayPaymentLink] = {}
        self.sessions: dict[str, list[GatewayCheckoutSession]] = {}
        self.intents: dict[str, GatewayIntent] = {}
        self.charges: dict[str, GatewayCharge] = {}
        self.payment_methods: dict[str, GatewayPaymentMethod] = {}
        self.refunds: list[GatewayRefund] = []
        self.intent_status = "succeeded"
        self.failures: dict[str, Exception] = {}
        self.hold_refunds = False
        self.refund_waiters: list[asyncio.Event] = []
        self._idempotent: dict[str, object] = {}

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        failure = self.failures.pop(name, None)
        if failure is not None:
            raise failure

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for call, kwargs in self.calls if call == name]

    def add_payment_method(self, pm_id: str, *, customer_id: Optional[str] = None, last4: str = "4242"):
        pm = GatewayPaymentMethod(
            payment_method_id=pm_id,
            customer_id=customer_id,
            card_brand="visa",
            card_last4=last4,
            exp_month=12,
            exp_year=2030,
        )
        self.payment_methods[pm_id] = pm
        return pm

    async def create_payment_link(self, *, amount, currency, description, metadata, return_url=None, idempotency_key=None):
        self._record("create_payment_link", amount=amount, currency=currency, metadata=metadata, idempotency_key=idempotency_key)
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        link_id = self._next("plink")
        link = GatewayPaymentLink(link_id=link_id, url=f"https://pay.example.test/{link_id}")
        self.links[link_id] = link
        self._idempotent[idempotency_key] = link
        return link

    async def deactivate_payment_link(self, link_id):
        self._record("deactivate_payment_link", link_id=link_id)
        link = self.links[link_id].model_copy(update={"active": False})
        self.links[link_id] = link
        return link

    async def retrieve_payment_link(self, link_id):
        self._record("retrieve_payment_link", link_id=link_id)
        return self.links[link_id]

    async def list_link_sessions(self, link_id):
        self._record("list_link_sessions", link_id=link_id)
        return list(self.sessions.get(link_id, []))

    async def create_payment_intent(
        self,
        *,
        amount,
        currency,
        customer_id,
        payment_method_id,
        metadata,
        save_payment_method=False,
        description=None,
        idempotency_key=None,
    ):
        self._record(
            "create_payment_intent",
            amount=amount,
            currency=currency,
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            metadata=metadata,
            save_payment_method=save_payment_method,
            idempotency_key=idempotency_key,
        )
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        intent_id = self._next("pi")
        charge_id = self._next("ch")
        pm = self.payment_methods.get(payment_method_id)
        intent = GatewayIntent(
            intent_id=intent_id,
            status=self.intent_status,
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            latest_charge_id=charge_id if self.intent_status == "succeeded" else None,
            card_last4=pm.card_last4 if pm else None,
            card_brand=pm.card_brand if pm else None,
            metadata={**metadata, "source": "charge"},
        )
        self.intents[intent_id] = intent
        self.charges[charge_id] = GatewayCharge(
            charge_id=charge_id, payment_intent_id=intent_id, amount=amount, status="succeeded"
        )
        self._idempotent[idempotency_key] = intent
        return intent

    async def get_or_create_customer(self, *, email, name, metadata, idempotency_key=None):
        self._record("get_or_create_customer", email=email, idempotency_key=idempotency_key)
        return GatewayCustomer(customer_id="cus_created", email=email, name=name)

    async def attach_payment_method(self, payment_method_id, customer_id):
        self._record("attach_payment_method", payment_method_id=payment_method_id, customer_id=customer_id)
        pm = self.payment_methods[payment_method_id].model_copy(update={"customer_id": customer_id})
        self.payment_methods[payment_method_id] = pm
        return pm

    async def detach_payment_method(self, payment_method_id):
        self._record("detach_payment_method", payment_method_id=payment_method_id)
        pm = self.payment_methods[payment_method_id].model_copy(update={"customer_id": None})
        self.payment_methods[payment_method_id] = pm
        return pm

    async def list_customer_payment_methods(self, customer_id):
        self._record("list_customer_payment_methods", customer_id=customer_id)
        return [pm for pm in self.payment_methods.values() if pm.customer_id == customer_id]

    async def create_setup_intent(self, customer_id):
        self._record("create_setup_intent", customer_id=customer_id)
        seti = self._next("seti")
        return GatewaySetupIntent(setup_intent_id=seti, client_secret=f"{seti}_secret", status="requires_payment_method")

    async def retrieve_intent(self, intent_id):
        self._record("retrieve_intent", intent_id=intent_id)
        return self.intents[intent_id]

    async def retrieve_charge(self, charge_id):
        self._record("retrieve_charge", charge_id=charge_id)
        return self.charges[charge_id]

    async def retrieve_payment_method(self, payment_method_id):
        self._record("retrieve_payment_method", payment_method_id=payment_method_id)
        return self.payment_methods[payment_method_id]

    async def process_refund(
        self,
        *,
        charge_id=None,
        payment_intent_id=None,
        amount=None,
        reason=None,
        metadata=None,
        idempotency_key=None,
    ):
        self._record(
            "process_refund",
            charge_id=charge_id,
            payment_intent_id=payment_intent_id,
            amount=amount,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        if self.hold_refunds:
            waiter = asyncio.Event()
            self.refund_waiters.append(waiter)
            await waiter.wait()
        if idempotency_key in self._idempotent:
            return self._idempotent[idempotency_key]
        refund = GatewayRefund(
            refund_id=self._next("re"),
            amount=amount,
            status="succeeded",
            charge_id=charge_id,
            payment_intent_id=payment_intent_id,
        )
        self.refunds.append(refund)
        if charge_id in self.charges:
            charge = self.charges[charge_id]
            self.charges[charge_id] = charge.model_copy(
                update={"amount_refunded": charge.amount_refunded + amount}
            )
        self._idempotent[idempotency_key] = refund
        return refund

    def parse_webhook(self, payload, signature_header):
        if signature_header != VALID_SIGNATURE:
            raise WebhookSignatureError()
        return translate_event(json.loads(payload))

    async def aclose(self):
        return None


class RecordingNotifier:
    def __init__(self):
        self.sent: list[PaymentReceipt] = []
        self.fail_with: Optional[Exception] = None

    async def send_receipt(self, receipt):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(receipt)

    async def aclose(self):
        return None


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow_factory(session_factory):
    return partial(SQLAlchemyUnitOfWork, session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payment_settings():
    return PaymentSettings()


@pytest.fixture
def service(uow_factory, gateway, notifier, payment_settings):
    return PaymentLifecycleService(
        uow_factory=uow_factory,
        gateway=gateway,
        notifier=notifier,
        settings=payment_settings,
    )


@pytest.fixture
def handler(uow_factory, gateway, service):
    return WebhookReconciliationHandler(uow_factory=uow_factory, gateway=gateway, lifecycle=service)


@pytest.fixture
def seed_order(session_factory):
    async def _seed(order_ref="SO-1001", total=5000, currency="usd", **fields):
        values = {
            "order_no": f"NO-{order_ref}",
            "customer_ref": "CUST-1",
            "customer_email": "buyer@example.com",
            "customer_name": "Ada Buyer",
            "balance_due": total,
            **fields,
        }
        async with session_factory() as session:
            session.add(SalesOrderModel(order_ref=order_ref, currency=currency, total_amount=total, **values))
            await session.commit()
        return order_ref

    return _seed


@pytest.fixture
def load_order(session_factory):
    async def _load(order_ref="SO-1001") -> SalesOrderModel:
        async with session_factory() as session:
            result = await session.execute(select(SalesOrderModel).where(SalesOrderModel.order_ref == order_ref))
            return result.scalar_one()

    return _load


@pytest.fixture
def load_payment(session_factory):
    async def _load(payment_id: int) -> PaymentModel:
        async with session_factory() as session:
            return await session.get(PaymentModel, payment_id)

    return _load


@pytest.fixture
def make_event():
    """Build a raw Stripe-shaped event payload."""
    counter = itertools.count(1)

    def _make(event_type: str, obj: dict, event_id: Optional[str] = None) -> bytes:
        return json.dumps(
            {
                "id": event_id or f"evt_{next(counter)}",
                "object": "event",
                "type": event_type,
                "data": {"object": obj},
            }
        ).encode("utf-8")

    return _make


def _intent_object(intent: GatewayIntent, *, order_ref: str = "SO-1001", source: str = "charge") -> dict:
    return {
        "id": intent.intent_id,
        "object": "payment_intent",
        "amount": intent.amount,
        "amount_received": intent.amount,
        "currency": intent.currency,
        "customer": intent.customer_id,
        "payment_method": intent.payment_method_id,
        "latest_charge": {
            "id": intent.latest_charge_id,
            "payment_method_details": {"card": {"last4": intent.card_last4, "brand": intent.card_brand}},
        },
        "metadata": {"order_ref": order_ref, "source": source},
    }


@pytest.fixture
def intent_payload():
    """Stripe-shaped payment_intent object for a FakeGateway intent."""
    return _intent_object


@pytest.fixture
def signature():
    return VALID_SIGNATURE


@pytest.fixture
def pay_order(service, handler, gateway, seed_order, make_event):
    """Seed an order, charge it with a saved card and deliver the success webhook."""

    async def _pay(order_ref="SO-1001", total=5000):
        await seed_order(order_ref, total=total, gateway_customer_id="cus_1")
        if "pm_saved" not in gateway.payment_methods:
            gateway.add_payment_method("pm_saved", customer_id="cus_1")
        charged = await service.charge_sales_order(order_ref, ChargeRequest(payment_method_id="pm_saved"))
        intent = gateway.intents[charged.payment_intent_id]
        payload = make_event("payment_intent.succeeded", _intent_object(intent, order_ref=order_ref))
        await handler.handle_webhook(payload, VALID_SIGNATURE)
        return charged.payment_id

    return _pay
