"""
支付领域实体 - 支付聚合根
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException
from domain.payment.exceptions import InvalidPaymentStateException, ReconciliationConflict
from domain.payment.money import ensure_minor_units, normalize_currency


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                        # 待支付
    SUCCEEDED = "succeeded"                    # 支付成功
    FAILED = "failed"                          # 支付失败
    CANCELLED = "cancelled"                    # 已取消
    REFUNDED = "refunded"                      # 全额退款
    PARTIALLY_REFUNDED = "partially_refunded"  # 部分退款


class PaymentMethod(str, Enum):
    PAYMENT_LINK = "payment_link"
    SAVED_CARD = "saved_card"
    CARD = "card"


class ReceiptStatus(str, Enum):
    NONE = "none"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"


# 终态程度：pending/failed < succeeded/cancelled < partially_refunded < refunded
FINALITY: dict[PaymentStatus, int] = {
    PaymentStatus.PENDING: 0,
    PaymentStatus.FAILED: 0,
    PaymentStatus.SUCCEEDED: 1,
    PaymentStatus.CANCELLED: 1,
    PaymentStatus.PARTIALLY_REFUNDED: 2,
    PaymentStatus.REFUNDED: 3,
}

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.SUCCEEDED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.SUCCEEDED: frozenset({
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIALLY_REFUNDED,
    }),
    PaymentStatus.PARTIALLY_REFUNDED: frozenset({
        PaymentStatus.REFUNDED,
        PaymentStatus.PARTIALLY_REFUNDED,
    }),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
})

# 仅网关权威事件可以把失败/取消的支付提升为成功（迟到的成功）
LATE_SUCCESS_SOURCES = frozenset({PaymentStatus.FAILED, PaymentStatus.CANCELLED})

REFUNDABLE_STATUSES = frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.PARTIALLY_REFUNDED})

COLLECTED_STATUSES = REFUNDABLE_STATUSES


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GatewayIds:
    """网关侧标识，均为不透明字符串"""
    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_link_id: Optional[str] = None


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 金额（最小货币单位）必须大于0
    2. 0 <= 已退款金额 <= 支付金额
    3. 状态只能沿终态顺序前进，不得回退
    4. 只有成功或部分退款的支付才能退款
    5. 支付记录不做物理删除
    """

    id: Optional[int]
    order_ref: str
    amount: int
    currency: str
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    customer_ref: Optional[str] = None
    refunded_amount: int = 0
    refund_count: int = 0
    gateway_ids: GatewayIds = field(default_factory=GatewayIds)
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    payment_link_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    receipt_status: ReceiptStatus = ReceiptStatus.NONE
    receipt_sent_at: Optional[datetime] = None
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """初始化后验证"""
        self.amount = ensure_minor_units(self.amount, field="amount")
        self.refunded_amount = ensure_minor_units(
            self.refunded_amount, field="refunded_amount", allow_zero=True
        )
        if self.refunded_amount > self.amount:
            raise DomainValidationException(
                f"已退款金额 {self.refunded_amount} 超过支付金额 {self.amount}",
                field="refunded_amount",
            )
        self.currency = normalize_currency(self.currency)
        self.status = PaymentStatus(self.status)
        self.method = PaymentMethod(self.method)
        self.receipt_status = ReceiptStatus(self.receipt_status)
        if self.metadata is None:
            self.metadata = {}
        if self.gateway_ids is None:
            self.gateway_ids = GatewayIds()
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        self.expires_at = _ensure_utc(self.expires_at)
        self.receipt_sent_at = _ensure_utc(self.receipt_sent_at)

    # ------------------------------------------------------------------
    # 状态机
    # ------------------------------------------------------------------
    def transition_to(self, target: PaymentStatus, *, authoritative: bool = False) -> TransitionOutcome:
        """
        按状态机迁移到 ``target``

        已处于 ``target`` 时返回 NOOP；倒退或离开终态时抛出 ReconciliationConflict，
        状态机不允许的前向迁移抛出 InvalidPaymentStateException。
        ``authoritative`` 表示网关报告的成功，可把失败或已取消的支付提升为成功。
        """
        target = PaymentStatus(target)
        current = self.status
        if target == current:
            return TransitionOutcome.NOOP

        allowed = target in ALLOWED_TRANSITIONS[current]
        if not allowed and authoritative and target == PaymentStatus.SUCCEEDED:
            allowed = current in LATE_SUCCESS_SOURCES
        if not allowed:
            if FINALITY[target] <= FINALITY[current] or current in TERMINAL_STATUSES:
                raise ReconciliationConflict(self.id, current.value, target.value)
            raise InvalidPaymentStateException(self.id, current.value, f"move to {target.value}")

        self.status = target
        self.updated_at = utcnow()
        return TransitionOutcome.APPLIED

    def mark_succeeded(
        self,
        *,
        charge_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        card_last4: Optional[str] = None,
        card_brand: Optional[str] = None,
        authoritative: bool = True,
    ) -> TransitionOutcome:
        """标记支付成功；重复成功为 no-op，但仍回填缺失的网关信息"""
        if self.status in (PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
            # 已发生退款，成功早已确认
            outcome = TransitionOutcome.NOOP
        else:
            outcome = self.transition_to(PaymentStatus.SUCCEEDED, authoritative=authoritative)
        if outcome == TransitionOutcome.APPLIED:
            self.error_message = None
        self._backfill(
            charge_id=charge_id,
            payment_intent_id=payment_intent_id,
            card_last4=card_last4,
            card_brand=card_brand,
        )
        return outcome

    def mark_failed(self, reason: Optional[str] = None) -> TransitionOutcome:
        outcome = self.transition_to(PaymentStatus.FAILED)
        if outcome == TransitionOutcome.APPLIED:
            self.error_message = reason
        return outcome

    def mark_cancelled(self) -> TransitionOutcome:
        return self.transition_to(PaymentStatus.CANCELLED)

    def _backfill(self, **values: Optional[str]) -> None:
        changed = False
        for key in ("charge_id", "payment_intent_id"):
            value = values.get(key)
            if value and not getattr(self.gateway_ids, key):
                setattr(self.gateway_ids, key, value)
                changed = True
        for key in ("card_last4", "card_brand"):
            value = values.get(key)
            if value and getattr(self, key) != value:
                setattr(self, key, value)
                changed = True
        if changed:
            self.updated_at = utcnow()

    # ------------------------------------------------------------------
    # 退款
    # ------------------------------------------------------------------
    def can_refund(self) -> bool:
        return self.status in REFUNDABLE_STATUSES and self.refunded_amount < self.amount

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount

    @property
    def net_amount(self) -> int:
        return self.amount - self.refunded_amount

    def resolve_refund_amount(self, amount: Optional[int]) -> int:
        """
        校验退款请求并返回实际退款金额

        ``None`` 表示退还全部剩余金额，否则要求 0 < amount <= 剩余金额。
        """
        if not self.can_refund():
            raise InvalidPaymentStateException(self.id, self.status.value, "refund")
        if amount is None:
            return self.refundable_amount
        amount = ensure_minor_units(amount, field="amount")
        if amount > self.refundable_amount:
            raise DomainValidationException(
                f"退款金额 {amount} 超过可退金额 {self.refundable_amount}",
                field="amount",
                details={"requested": amount, "refundable": self.refundable_amount},
            )
        return amount

    def record_refund(
        self,
        refund_id: str,
        amount: int,
        *,
        refunded_before: int,
        gateway_total: Optional[int] = None,
    ) -> TransitionOutcome:
        """
        记录一笔网关已受理的退款（按退款ID幂等）

        网关报告的累计退款额为准；取不到时以认领退款时的已退金额加本次金额计算，
        两者都只会让本地累计值增长，被网关重放的退款不会重复累加。
        """
        applied = list(self.metadata.get("refund_ids") or [])
        if refund_id in applied:
            return TransitionOutcome.NOOP
        self.update_metadata("refund_ids", applied + [refund_id])
        self.update_metadata("last_refund_id", refund_id)
        self.refund_count += 1
        target = gateway_total if gateway_total is not None else refunded_before + amount
        return self.sync_refunded_total(target)

    def sync_refunded_total(self, total_refunded: int) -> TransitionOutcome:
        """
        以网关报告的累计退款金额对齐本地记录

        网关值为绝对值且只增不减，小于或等于本地值时不做处理。
        """
        total = min(ensure_minor_units(total_refunded, field="amount_refunded", allow_zero=True), self.amount)
        if total <= self.refunded_amount:
            return TransitionOutcome.NOOP
        if self.status not in REFUNDABLE_STATUSES:
            raise ReconciliationConflict(self.id, self.status.value, PaymentStatus.REFUNDED.value)
        return self._set_refunded_total(total)

    def _set_refunded_total(self, total: int) -> TransitionOutcome:
        target = PaymentStatus.REFUNDED if total >= self.amount else PaymentStatus.PARTIALLY_REFUNDED
        if target != self.status:
            self.transition_to(target)
        self.refunded_amount = total
        self.updated_at = utcnow()
        return TransitionOutcome.APPLIED

    # ------------------------------------------------------------------
    # 支付链接与收据
    # ------------------------------------------------------------------
    def is_link_active(self, now: Optional[datetime] = None) -> bool:
        if self.method != PaymentMethod.PAYMENT_LINK or self.status != PaymentStatus.PENDING:
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or utcnow())

    def is_link_expired(self, now: Optional[datetime] = None) -> bool:
        return (
            self.method == PaymentMethod.PAYMENT_LINK
            and self.status == PaymentStatus.PENDING
            and self.expires_at is not None
            and self.expires_at <= (now or utcnow())
        )

    def update_metadata(self, key: str, value: Any) -> None:
        """更新元数据"""
        if self.metadata is None:
            self.metadata = {}
        self.metadata[key] = value
        self.updated_at = utcnow()
