"""Payment maintenance jobs: link expiry, receipt retries and status sync.

Each invocation builds its own gateway, notifier and database engine inside
``asyncio.run`` and releases them before returning.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncIterator

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.services.payment_service import PaymentLifecycleService
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.payment.exceptions import ConcurrentPaymentUpdateException, GatewayError
from infrastructure.database import create_worker_engine
from infrastructure.external.notifications import build_receipt_notifier
from infrastructure.external.payments import build_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

from ..utils.base_task import BaseTask, run_async

logger = get_logger(__name__)


@asynccontextmanager
async def lifecycle_service() -> AsyncIterator[PaymentLifecycleService]:
    engine = create_worker_engine()
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    gateway = build_payment_gateway(payment_settings)
    notifier = build_receipt_notifier(payment_settings)
    try:
        yield PaymentLifecycleService(
            uow_factory=partial(SQLAlchemyUnitOfWork, session_factory),
            gateway=gateway,
            notifier=notifier,
            settings=payment_settings,
        )
    finally:
        await notifier.aclose()
        await gateway.aclose()
        await engine.dispose()


@shared_task(name="payments.cancel_expired_links", base=BaseTask)
def cancel_expired_links() -> int:
    """Cancel expired payment links (hourly beat)."""

    async def _run() -> int:
        async with lifecycle_service() as service:
            return await service.cancel_expired_payment_links()

    return run_async(_run())


@shared_task(name="payments.retry_failed_receipts", base=BaseTask)
def retry_failed_receipts() -> int:
    """Resend failed receipts (beat, every 15 minutes)."""

    async def _run() -> int:
        async with lifecycle_service() as service:
            return await service.retry_failed_receipts()

    return run_async(_run())


@shared_task(
    name="payments.sync_payment_status",
    bind=True,
    base=BaseTask,
    autoretry_for=(GatewayError, ConcurrentPaymentUpdateException),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_jitter=True,
    retry_kwargs={"max_retries": 5},
)
def sync_payment_status(self, payment_id: int) -> dict:
    """Pull a payment's status from the gateway on demand, for when a webhook was lost."""

    async def _run() -> dict:
        async with lifecycle_service() as service:
            result = await service.sync_payment_status(payment_id)
        return result.model_dump(mode="json")

    result = run_async(_run())
    logger.info("payment_sync_task_completed", payment_id=payment_id, status=result["status"])
    return result
