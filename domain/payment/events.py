"""
支付网关事件 - 已识别事件类型的标签联合

每条网关通知恰好转换为其中一个不可变数据类；对账不处理的事件归入
UnknownGatewayEvent，原始字段放在 ``extensions`` 中。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class _GatewayEventBase:
    event_id: str
    event_type: str
    extensions: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class PaymentIntentSucceeded(_GatewayEventBase):
    payment_intent_id: str = ""
    amount: int = 0
    charge_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentFailed(_GatewayEventBase):
    payment_intent_id: str = ""
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentIntentCanceled(_GatewayEventBase):
    payment_intent_id: str = ""
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckoutSessionCompleted(_GatewayEventBase):
    """checkout.session.completed / async_payment_succeeded / async_payment_failed"""

    session_id: str = ""
    payment_link_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_status: str = ""
    amount_total: Optional[int] = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"

    @property
    def is_failed(self) -> bool:
        return self.event_type == "checkout.session.async_payment_failed"


@dataclass(frozen=True)
class ChargeRefunded(_GatewayEventBase):
    charge_id: str = ""
    payment_intent_id: Optional[str] = None
    amount: int = 0
    amount_refunded: int = 0


@dataclass(frozen=True)
class ChargeDisputeCreated(_GatewayEventBase):
    dispute_id: str = ""
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class UnknownGatewayEvent(_GatewayEventBase):
    pass


GatewayEvent = Union[
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    PaymentIntentCanceled,
    CheckoutSessionCompleted,
    ChargeRefunded,
    ChargeDisputeCreated,
    UnknownGatewayEvent,
]
