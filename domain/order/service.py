"""
订单支付汇总计算（纯函数）
"""
from __future__ import annotations

from typing import Iterable

from domain.order.entity import (
    OrderPaymentStatus,
    OrderReference,
    OrderTotalSnapshot,
    OverpaymentPolicy,
)
from domain.payment.entity import COLLECTED_STATUSES, Payment


def compute_order_totals(
    order: OrderReference,
    payments: Iterable[Payment],
    policy: OverpaymentPolicy = OverpaymentPolicy.FLAG,
) -> OrderTotalSnapshot:
    """
    根据支付集合推导订单汇总

    已付 = 成功及部分退款支付的 (amount - refunded) 之和；余额 = max(total - 已付, 0)。
    CLAMP 策略下已付金额封顶为订单总额，超出部分始终计为超额支付。
    """
    payments = list(payments)
    paid = sum(p.net_amount for p in payments if p.status in COLLECTED_STATUSES)
    any_refunds = any(p.refunded_amount > 0 for p in payments)
    overpaid = max(paid - order.total, 0)
    balance = max(order.total - paid, 0)

    if paid <= 0:
        status = OrderPaymentStatus.REFUNDED if any_refunds else OrderPaymentStatus.UNPAID
    elif paid >= order.total:
        status = OrderPaymentStatus.PAID
    else:
        status = OrderPaymentStatus.PARTIALLY_PAID

    reported_paid = min(paid, order.total) if policy == OverpaymentPolicy.CLAMP else paid
    return OrderTotalSnapshot(
        order_ref=order.order_ref,
        order_total=order.total,
        paid_amount=reported_paid,
        balance_due=balance,
        payment_status=status,
        overpaid_amount=overpaid,
    )
