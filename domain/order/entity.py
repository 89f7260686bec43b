"""
订单引用 - 支付引擎所需的订单最小视图

支付引擎只回写订单的支付汇总字段，订单本身归销售系统所有。
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class OrderPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    REFUNDED = "refunded"


class OverpaymentPolicy(str, Enum):
    """已付金额超过订单总额时的处理策略"""
    FLAG = "flag"
    CLAMP = "clamp"
    AUTO_REFUND = "auto_refund"


@dataclass
class OrderReference:
    order_ref: str
    total: int  # 最小货币单位
    currency: str
    order_no: Optional[str] = None
    customer_ref: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    gateway_customer_id: Optional[str] = None

    @property
    def description(self) -> str:
        return f"Order {self.order_no or self.order_ref}"


@dataclass(frozen=True)
class OrderTotalSnapshot:
    """由订单下支付集合推导出的汇总，不单独作为权威数据"""
    order_ref: str
    order_total: int
    paid_amount: int
    balance_due: int
    payment_status: OrderPaymentStatus
    overpaid_amount: int = 0

    @property
    def is_overpaid(self) -> bool:
        return self.overpaid_amount > 0
