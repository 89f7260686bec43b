"""
支付领域异常

校验类错误复用 DomainValidationException，在调用网关前即被拒绝，API 层映射为 422。
"""
from __future__ import annotations

from typing import Any, Optional

from domain.common.exceptions import BusinessException, DomainValidationException
from shared.codes.payment_codes import GatewayErrorReason, PaymentCode


class PaymentNotFoundException(BusinessException):
    """支付记录不存在"""

    def __init__(self, identifier: Any):
        super().__init__(
            code=PaymentCode.PAYMENT_NOT_FOUND,
            message=f"Payment not found: {identifier}",
            error_type="PaymentNotFound",
            details={"payment": str(identifier)},
            message_key="payment.not_found",
        )


class OrderNotFoundException(BusinessException):
    """订单不存在"""

    def __init__(self, order_ref: str):
        super().__init__(
            code=PaymentCode.ORDER_NOT_FOUND,
            message=f"Order not found: {order_ref}",
            error_type="OrderNotFound",
            details={"order_ref": order_ref},
            message_key="order.not_found",
        )


class DuplicatePaymentException(BusinessException):
    """网关标识已绑定到已有支付记录"""

    def __init__(self, identifier: str, existing: Optional[Any] = None):
        self.existing = existing
        super().__init__(
            code=PaymentCode.DUPLICATE_PAYMENT,
            message=f"Payment already recorded for {identifier}",
            error_type="DuplicatePayment",
            details={"identifier": identifier},
            message_key="payment.duplicate",
        )


class InvalidPaymentStateException(DomainValidationException):
    """状态前置条件不满足（如对未成功的支付退款）"""

    def __init__(self, payment_id: Any, status: str, operation: str):
        super().__init__(
            f"Cannot {operation} payment {payment_id} in status {status}",
            field="status",
            details={"payment_id": payment_id, "status": status, "operation": operation},
            message_key="payment.invalid_state",
        )


class ReconciliationConflict(BusinessException):
    """入站更新会使支付状态倒退"""

    def __init__(self, payment_id: Any, current: str, target: str):
        self.payment_id = payment_id
        self.current = current
        self.target = target
        super().__init__(
            code=PaymentCode.RECONCILIATION_CONFLICT,
            message=f"Payment {payment_id} cannot move from {current} to {target}",
            error_type="ReconciliationConflict",
            details={"payment_id": payment_id, "current": current, "target": target},
            message_key="payment.reconciliation_conflict",
        )


class ConcurrentPaymentUpdateException(BusinessException):
    """乐观锁版本冲突"""

    def __init__(self, payment_id: Any, expected_version: int):
        super().__init__(
            code=PaymentCode.CONCURRENT_UPDATE,
            message=f"Payment {payment_id} was modified concurrently",
            error_type="ConcurrentPaymentUpdate",
            details={"payment_id": payment_id, "expected_version": expected_version},
            message_key="payment.concurrent_update",
        )


_REASON_TO_CODE = {
    GatewayErrorReason.CARD_DECLINED: PaymentCode.CARD_DECLINED,
    GatewayErrorReason.REQUIRES_ACTION: PaymentCode.REQUIRES_ACTION,
    GatewayErrorReason.PROCESSING_ERROR: PaymentCode.PROVIDER_ERROR,
}

_SAFE_MESSAGES = {
    GatewayErrorReason.CARD_DECLINED: "The card was declined",
    GatewayErrorReason.REQUIRES_ACTION: "Additional authentication is required",
    GatewayErrorReason.PROCESSING_ERROR: "The payment processor could not complete the request",
}


class GatewayError(BusinessException):
    """
    支付网关调用失败

    调用方只看到安全的原因说明；网关原始信息保存在 ``provider_message`` 中供日志使用。
    """

    def __init__(
        self,
        reason: GatewayErrorReason = GatewayErrorReason.PROCESSING_ERROR,
        *,
        operation: Optional[str] = None,
        provider_code: Optional[str] = None,
        provider_message: Optional[str] = None,
        retryable: bool = False,
    ):
        self.reason = GatewayErrorReason(reason)
        self.operation = operation
        self.provider_code = provider_code
        self.provider_message = provider_message
        self.retryable = retryable
        super().__init__(
            code=_REASON_TO_CODE[self.reason],
            message=_SAFE_MESSAGES[self.reason],
            error_type="GatewayError",
            details={"reason": self.reason.value},
            message_key=f"payment.gateway.{self.reason.value}",
        )


class WebhookSignatureError(BusinessException):
    """Webhook 签名校验失败"""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="WebhookSignatureError",
            message_key="payment.webhook.signature_invalid",
        )


class NotificationError(BusinessException):
    """收据通知发送失败"""

    def __init__(self, payment_id: Any, message: str = "Receipt notification failed"):
        self.payment_id = payment_id
        super().__init__(
            code=PaymentCode.NOTIFICATION_FAILED,
            message=message,
            error_type="NotificationError",
            details={"payment_id": payment_id},
            message_key="payment.receipt.failed",
        )


class OrderTotalInvalidException(DomainValidationException):
    def __init__(self, order_ref: str, total: int):
        super().__init__(
            f"Order {order_ref} total must be greater than 0",
            field="total",
            details={"order_ref": order_ref, "total": total},
            message_key="order.total.invalid",
        )


class DuplicateWebhookEventException(BusinessException):
    """同一网关事件被并发投递，另一事务已记录"""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(
            code=PaymentCode.DUPLICATE_PAYMENT,
            message=f"Webhook event {event_id} already processed",
            error_type="DuplicateWebhookEvent",
            details={"event_id": event_id},
            message_key="payment.webhook.duplicate",
        )
