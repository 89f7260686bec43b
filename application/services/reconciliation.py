"""
支付状态对账 - 所有状态迁移的唯一入口

webhook 处理、主动同步与人工取消都经由 ``PaymentReconciler.apply`` 修改支付：
由实体判断迁移是否允许，状态倒退记录日志后丢弃；写入为乐观锁
``UPDATE ... WHERE version = :v``，冲突时重新读取后重试。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    Payment,
    PaymentStatus,
    REFUNDABLE_STATUSES,
    TransitionOutcome,
    utcnow,
)
from domain.payment.exceptions import (
    ConcurrentPaymentUpdateException,
    PaymentNotFoundException,
    ReconciliationConflict,
)


logger = get_logger(__name__)

T = TypeVar("T")

# 成功过（含之后的退款）的状态
SETTLED_STATUSES = REFUNDABLE_STATUSES | {PaymentStatus.REFUNDED}


@dataclass
class Reconciliation:
    """一次对账的结果"""
    payment: Optional[Payment]
    outcome: str  # applied / noop / rejected / ignored
    previous_status: Optional[PaymentStatus] = None

    @property
    def payment_id(self) -> Optional[int]:
        return self.payment.id if self.payment else None

    @property
    def changed(self) -> bool:
        return self.outcome == "applied"

    @property
    def newly_settled(self) -> bool:
        """本次对账把支付首次推进到已收款状态"""
        return (
            self.changed
            and self.payment is not None
            and self.previous_status not in SETTLED_STATUSES
            and self.payment.status in SETTLED_STATUSES
        )

    @classmethod
    def ignored(cls) -> "Reconciliation":
        return cls(payment=None, outcome="ignored")


def record_success(
    payment: Payment,
    *,
    payment_intent_id: Optional[str] = None,
    charge_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    payment_method_id: Optional[str] = None,
    card_last4: Optional[str] = None,
    card_brand: Optional[str] = None,
) -> TransitionOutcome:
    """网关确认成功：迁移状态并回填网关标识"""
    outcome = payment.mark_succeeded(
        charge_id=charge_id,
        payment_intent_id=payment_intent_id,
        card_last4=card_last4,
        card_brand=card_brand,
        authoritative=True,
    )
    ids = payment.gateway_ids
    for key, value in (("customer_id", customer_id), ("payment_method_id", payment_method_id)):
        if value and not getattr(ids, key):
            setattr(ids, key, value)
            payment.updated_at = utcnow()
    return outcome


def apply_gateway_status(
    payment: Payment,
    status: Optional[str],
    *,
    reason: Optional[str] = None,
    **success_details: Optional[str],
) -> TransitionOutcome:
    """把网关报告的状态（已映射为本地状态）应用到支付上"""
    if status is None:
        return TransitionOutcome.NOOP
    target = PaymentStatus(status)
    if target == PaymentStatus.SUCCEEDED:
        return record_success(payment, **success_details)
    if target == PaymentStatus.FAILED:
        return payment.mark_failed(reason)
    if target == PaymentStatus.CANCELLED:
        return payment.mark_cancelled()
    return payment.transition_to(target)


class PaymentReconciler:
    """支付状态变更的唯一写入路径"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], *, max_attempts: int = 3) -> None:
        self._uow_factory = uow_factory
        self._max_attempts = max(1, int(max_attempts))

    async def run(self, step: Callable[[AbstractUnitOfWork], Awaitable[T]]) -> T:
        """在事务中执行 step；乐观锁冲突时回滚并从头重读重试"""
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._uow_factory() as uow:
                    return await step(uow)
            except ConcurrentPaymentUpdateException:
                if attempt >= self._max_attempts:
                    raise
                logger.info("reconcile_retry", attempt=attempt)

    async def apply(
        self,
        uow: AbstractUnitOfWork,
        payment: Payment,
        mutate: Callable[[Payment], TransitionOutcome],
        *,
        source: str,
    ) -> Reconciliation:
        previous = payment.status
        touched_at = payment.updated_at
        try:
            outcome = mutate(payment)
        except ReconciliationConflict as exc:
            logger.warning(
                "payment_transition_rejected",
                payment_id=payment.id,
                current=exc.current,
                target=exc.target,
                source=source,
            )
            return Reconciliation(payment=payment, outcome="rejected", previous_status=previous)

        if outcome == TransitionOutcome.NOOP and payment.updated_at == touched_at:
            logger.info("payment_transition_noop", payment_id=payment.id, status=previous.value, source=source)
            return Reconciliation(payment=payment, outcome="noop", previous_status=previous)

        await uow.payment_repository.update(payment)
        logger.info(
            "payment_transition_applied",
            payment_id=payment.id,
            order_ref=payment.order_ref,
            previous=previous.value,
            status=payment.status.value,
            refunded_amount=payment.refunded_amount,
            source=source,
        )
        return Reconciliation(payment=payment, outcome="applied", previous_status=previous)

    async def transition(
        self,
        payment_id: int,
        mutate: Callable[[Payment], TransitionOutcome],
        *,
        source: str,
    ) -> Reconciliation:
        """按ID加锁读取支付并应用一次迁移"""

        async def _step(uow: AbstractUnitOfWork) -> Reconciliation:
            payment = await uow.payment_repository.get_for_update(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            return await self.apply(uow, payment, mutate, source=source)

        return await self.run(_step)
