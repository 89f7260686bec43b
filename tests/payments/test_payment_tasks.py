import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from application.dtos.payments import GatewayCharge, GatewayIntent, GatewayPaymentLink
from infrastructure.models import Base, PaymentModel, SalesOrderModel
from infrastructure.tasks import celery_app
from infrastructure.tasks.tasks import payments as payment_tasks


def _engine(url):
    return create_async_engine(url, poolclass=NullPool)


async def _seed(url, *payments):
    engine = _engine(url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with async_sessionmaker(bind=engine)() as session:
        session.add(
            SalesOrderModel(
                order_ref="SO-1",
                order_no="NO-1",
                customer_email="buyer@example.com",
                currency="usd",
                total_amount=5000,
                balance_due=5000,
            )
        )
        session.add_all(
            PaymentModel(order_ref="SO-1", amount=5000, currency="usd", **fields) for fields in payments
        )
        await session.commit()
    await engine.dispose()


async def _read_payment(url, payment_id):
    engine = _engine(url)
    async with async_sessionmaker(bind=engine)() as session:
        row = (await session.execute(select(PaymentModel).where(PaymentModel.id == payment_id))).scalar_one()
    await engine.dispose()
    return row


@pytest.fixture
def worker_db(monkeypatch, tmp_path, gateway, notifier):
    url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setattr(payment_tasks, "create_worker_engine", lambda: _engine(url))
    monkeypatch.setattr(payment_tasks, "build_payment_gateway", lambda settings: gateway)
    monkeypatch.setattr(payment_tasks, "build_receipt_notifier", lambda settings: notifier)
    return url


def test_tasks_are_registered_on_payments_queue():
    assert celery_app.conf.task_always_eager is True
    assert "payments.*" in celery_app.conf.task_routes
    schedule = celery_app.conf.beat_schedule
    assert {entry["task"] for entry in schedule.values()} >= {
        "payments.cancel_expired_links",
        "payments.retry_failed_receipts",
    }


def test_cancel_expired_links_task(worker_db, gateway):
    gateway.links["plink_old"] = GatewayPaymentLink(link_id="plink_old", url="https://pay.example.test/old")
    expired = datetime.now(timezone.utc) - timedelta(hours=1)
    asyncio.run(
        _seed(
            worker_db,
            dict(method="payment_link", status="pending", payment_link_id="plink_old", expires_at=expired),
        )
    )

    result = payment_tasks.cancel_expired_links.apply()

    assert result.get() == 1
    assert gateway.links["plink_old"].active is False
    assert asyncio.run(_read_payment(worker_db, 1)).status == "cancelled"


def test_retry_failed_receipts_task(worker_db, notifier):
    asyncio.run(
        _seed(
            worker_db,
            dict(method="card", status="succeeded", payment_intent_id="pi_1", receipt_status="failed"),
        )
    )

    result = payment_tasks.retry_failed_receipts.apply()

    assert result.get() == 1
    assert [r.payment_id for r in notifier.sent] == [1]
    assert asyncio.run(_read_payment(worker_db, 1)).receipt_status == "sent"


def test_sync_payment_status_task(worker_db, gateway, notifier):
    gateway.intents["pi_1"] = GatewayIntent(
        intent_id="pi_1", status="succeeded", amount=5000, currency="usd", latest_charge_id="ch_1"
    )
    gateway.charges["ch_1"] = GatewayCharge(charge_id="ch_1", payment_intent_id="pi_1", amount=5000, status="succeeded")
    asyncio.run(_seed(worker_db, dict(method="card", status="pending", payment_intent_id="pi_1")))

    result = payment_tasks.sync_payment_status.apply(args=(1,))

    payload = result.get()
    assert payload["status"] == "succeeded"
    assert payload["changed"] is True
    assert len(notifier.sent) == 1
    row = asyncio.run(_read_payment(worker_db, 1))
    assert row.charge_id == "ch_1"
