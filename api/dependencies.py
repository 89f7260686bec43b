"""
API依赖项 - 组装支付应用服务

网关与通知适配器在应用启动时创建并挂到 ``app.state``，
请求期间复用同一个连接池；测试可通过 ``dependency_overrides`` 替换。
"""
from typing import Callable

from fastapi import Depends, Request

from application.ports.notifications import ReceiptNotifier
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import PaymentLifecycleService
from application.services.webhook_service import WebhookReconciliationHandler
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from shared.codes import BusinessCode


def get_uow_factory() -> Callable[..., AbstractUnitOfWork]:
    return SQLAlchemyUnitOfWork


def get_payment_gateway(request: Request) -> PaymentGateway:
    gateway = getattr(request.app.state, "payment_gateway", None)
    if gateway is None:
        # 未配置 PAYMENT__STRIPE__SECRET_KEY 时网关不可用
        raise BusinessException(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message="Payment gateway is not configured",
            error_type="ServiceUnavailable",
            message_key="payment.gateway.unavailable",
        )
    return gateway


def get_receipt_notifier(request: Request) -> ReceiptNotifier:
    return request.app.state.receipt_notifier


async def get_payment_service(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: ReceiptNotifier = Depends(get_receipt_notifier),
) -> PaymentLifecycleService:
    return PaymentLifecycleService(
        uow_factory=uow_factory,
        gateway=gateway,
        notifier=notifier,
        settings=payment_settings,
    )


async def get_webhook_handler(
    uow_factory: Callable[..., AbstractUnitOfWork] = Depends(get_uow_factory),
    service: PaymentLifecycleService = Depends(get_payment_service),
) -> WebhookReconciliationHandler:
    return WebhookReconciliationHandler(
        uow_factory=uow_factory,
        gateway=service.gateway,
        lifecycle=service,
    )
