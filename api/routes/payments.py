"""
支付API路由 - FastAPI表现层

只调用生命周期服务，不涉及 SDK 细节；错误以业务异常抛出，由全局异常处理器映射为 HTTP 响应。
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi import status as http_status

from api.dependencies import get_payment_service, get_webhook_handler
from application.dtos.payments import (
    CancelResult,
    ChargeRequest,
    ChargeResult,
    CreatePaymentLinkRequest,
    GatewayPaymentMethod,
    GatewaySetupIntent,
    PaymentDTO,
    PaymentLinkResult,
    ReceiptResult,
    RefundOutcome,
    RefundPaymentRequest,
    SavePaymentMethodRequest,
    SyncResult,
    WebhookResult,
)
from application.services.payment_service import PaymentLifecycleService
from application.services.webhook_service import WebhookReconciliationHandler
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/payments", tags=["支付"])


@router.post(
    "/webhooks/stripe",
    summary="Stripe webhook",
    response_model=ApiResponse[WebhookResult],
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    handler: WebhookReconciliationHandler = Depends(get_webhook_handler),
):
    """
    接收 Stripe 事件

    签名基于原始请求体计算，因此直接读取字节而不做 JSON 解析。
    已处理、重复、无变化和未知事件都返回 200，避免网关无意义重投；
    签名无效返回 400。
    """
    payload = await request.body()
    result = await handler.handle_webhook(payload, stripe_signature)
    return success_response(data=result, message="Webhook received")


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------
@router.post(
    "/orders/{order_ref}/link",
    summary="创建支付链接",
    status_code=http_status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentLinkResult],
)
async def create_payment_link(
    order_ref: str,
    payload: Optional[CreatePaymentLinkRequest] = None,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    """为订单创建（或复用）按订单总额收款的支付链接"""
    return_url = payload.return_url if payload else None
    result = await service.create_payment_link(order_ref, return_url=return_url)
    return success_response(data=result, message="Payment link ready")


@router.post(
    "/orders/{order_ref}/charge",
    summary="卡片扣款",
    status_code=http_status.HTTP_201_CREATED,
    response_model=ApiResponse[ChargeResult],
)
async def charge_order(
    order_ref: str,
    payload: ChargeRequest,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    """
    使用卡片支付订单待付余额

    - **payment_method_id**: 前端 Stripe.js 生成的支付方式ID
    - **save_card**: 是否把卡绑定到客户以便复用
    """
    result = await service.charge_sales_order(order_ref, payload)
    return success_response(data=result, message="Charge submitted")


@router.get("/orders/{order_ref}", summary="订单支付情况")
async def get_order_payments(
    order_ref: str,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    payments = await service.get_payments_by_order(order_ref)
    totals = await service.get_order_totals(order_ref)
    return success_response(data={"totals": totals, "payments": payments})


@router.post(
    "/orders/{order_ref}/payment-methods",
    summary="保存支付方式",
    status_code=http_status.HTTP_201_CREATED,
    response_model=ApiResponse[GatewayPaymentMethod],
)
async def save_payment_method(
    order_ref: str,
    payload: SavePaymentMethodRequest,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    method = await service.save_payment_method(order_ref, payload.payment_method_id)
    return success_response(data=method, message="Payment method saved")


# ----------------------------------------------------------------------
# 客户与支付方式
# ----------------------------------------------------------------------
@router.get(
    "/customers/{customer_id}/payment-methods",
    summary="客户已保存的卡",
    response_model=ApiResponse[List[GatewayPaymentMethod]],
)
async def list_payment_methods(
    customer_id: str,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    methods = await service.list_customer_payment_methods(customer_id)
    return success_response(data=methods)


@router.post(
    "/customers/{customer_id}/setup-intents",
    summary="创建 SetupIntent",
    status_code=http_status.HTTP_201_CREATED,
    response_model=ApiResponse[GatewaySetupIntent],
)
async def create_setup_intent(
    customer_id: str,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    intent = await service.create_setup_intent(customer_id)
    return success_response(data=intent)


@router.delete(
    "/payment-methods/{payment_method_id}",
    summary="删除支付方式",
    response_model=ApiResponse[GatewayPaymentMethod],
)
async def delete_payment_method(
    payment_method_id: str,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    method = await service.delete_payment_method(payment_method_id)
    return success_response(data=method, message="Payment method removed")


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------
@router.get("/{payment_id}", summary="支付详情", response_model=ApiResponse[PaymentDTO])
async def get_payment(
    payment_id: int,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    payment = await service.get_payment_by_id(payment_id)
    return success_response(data=payment)


@router.post("/{payment_id}/refund", summary="退款", response_model=ApiResponse[RefundOutcome])
async def refund_payment(
    payment_id: int,
    payload: Optional[RefundPaymentRequest] = None,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    """
    全额或部分退款

    - **amount**: 最小货币单位；不传则退还剩余可退金额
    """
    payload = payload or RefundPaymentRequest()
    result = await service.refund_payment(payment_id, amount=payload.amount, reason=payload.reason)
    return success_response(data=result, message="Refund processed")


@router.post("/{payment_id}/cancel", summary="取消支付链接", response_model=ApiResponse[CancelResult])
async def cancel_payment(
    payment_id: int,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    result = await service.cancel_payment_link(payment_id)
    return success_response(data=result)


@router.post("/{payment_id}/sync", summary="同步网关状态", response_model=ApiResponse[SyncResult])
async def sync_payment(
    payment_id: int,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    result = await service.sync_payment_status(payment_id)
    return success_response(data=result)


@router.post(
    "/{payment_id}/send-receipt",
    summary="发送收据",
    response_model=ApiResponse[ReceiptResult],
)
async def send_receipt(
    payment_id: int,
    resend: bool = False,
    service: PaymentLifecycleService = Depends(get_payment_service),
):
    """发送收据；``resend=true`` 时允许对已发送的收据再次发送"""
    result = await service.send_payment_receipt(payment_id, resend=resend)
    return success_response(data=result)
