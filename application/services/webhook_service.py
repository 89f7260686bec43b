"""
Webhook 对账处理

验签并转换入站网关通知，再以恰好一次的效果应用到本地账本：事件ID与状态变更
在同一事务内记录，重复投递据此直接短路，成功后的附带效果仅在提交后执行。
"""
from __future__ import annotations

from typing import Callable, Optional

from application.dtos.payments import WebhookResult
from application.ports.payment_gateway import PaymentGateway
from application.services.payment_service import PaymentLifecycleService
from application.services.reconciliation import PaymentReconciler, Reconciliation, record_success
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    GatewayIds,
    Payment,
    PaymentMethod,
    TransitionOutcome,
)
from domain.payment.events import (
    ChargeDisputeCreated,
    ChargeRefunded,
    CheckoutSessionCompleted,
    GatewayEvent,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    UnknownGatewayEvent,
)
from domain.payment.exceptions import (
    ConcurrentPaymentUpdateException,
    DuplicatePaymentException,
    DuplicateWebhookEventException,
)


logger = get_logger(__name__)


class WebhookReconciliationHandler:

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        lifecycle: PaymentLifecycleService,
        reconciler: Optional[PaymentReconciler] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.lifecycle = lifecycle
        self.reconciler = reconciler or lifecycle.reconciler

    async def handle_webhook(self, raw_payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        # 验签失败抛出 WebhookSignatureError，不触碰任何状态
        event = self.gateway.parse_webhook(raw_payload, signature_header)
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)

        if isinstance(event, UnknownGatewayEvent):
            log.info("webhook_event_ignored")
            return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome="ignored")

        async with self._uow_factory(readonly=True) as uow:
            seen = await uow.webhook_event_repository.exists(event.event_id)
        if seen:
            log.info("webhook_duplicate_ignored")
            return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome="duplicate")

        try:
            change = await self.reconciler.run(lambda uow: self._apply(uow, event))
        except DuplicateWebhookEventException:
            log.info("webhook_duplicate_ignored", concurrent=True)
            return WebhookResult(event_id=event.event_id, event_type=event.event_type, outcome="duplicate")

        log.info("webhook_processed", outcome=change.outcome, payment_id=change.payment_id)
        await self._after_commit(change)
        return WebhookResult(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=change.outcome,
            payment_id=change.payment_id,
        )

    async def _apply(self, uow: AbstractUnitOfWork, event: GatewayEvent) -> Reconciliation:
        if await uow.webhook_event_repository.exists(event.event_id):
            raise DuplicateWebhookEventException(event.event_id)
        change = await self._dispatch(uow, event)
        recorded = await uow.webhook_event_repository.record(
            event.event_id,
            event.event_type,
            payment_id=change.payment_id,
            outcome=change.outcome,
        )
        if not recorded:
            raise DuplicateWebhookEventException(event.event_id)
        return change

    async def _after_commit(self, change: Reconciliation) -> None:
        # 仅在状态写入提交之后执行；失败只记录日志
        try:
            if change.newly_settled:
                await self.lifecycle.finalize_success(change.payment_id)
            elif change.changed and change.payment is not None:
                await self.lifecycle.recompute_totals_safely(change.payment.order_ref)
        except Exception as exc:
            logger.error("webhook_post_commit_failed", payment_id=change.payment_id, error=str(exc))

    # ------------------------------------------------------------------
    # 分发
    # ------------------------------------------------------------------
    async def _dispatch(self, uow: AbstractUnitOfWork, event: GatewayEvent) -> Reconciliation:
        source = f"webhook:{event.event_type}"
        if isinstance(event, PaymentIntentSucceeded):
            payment = await self._payment_for_intent(uow, event)
            if payment is None:
                return Reconciliation.ignored()
            return await self.reconciler.apply(
                uow,
                payment,
                lambda p: record_success(
                    p,
                    payment_intent_id=event.payment_intent_id,
                    charge_id=event.charge_id,
                    customer_id=event.customer_id,
                    payment_method_id=event.payment_method_id,
                    card_last4=event.card_last4,
                    card_brand=event.card_brand,
                ),
                source=source,
            )

        if isinstance(event, PaymentIntentFailed):
            payment = await uow.payment_repository.get_by_payment_intent_id(event.payment_intent_id)
            if payment is None:
                return Reconciliation.ignored()
            reason = event.failure_message or event.failure_code
            return await self.reconciler.apply(uow, payment, lambda p: p.mark_failed(reason), source=source)

        if isinstance(event, PaymentIntentCanceled):
            payment = await uow.payment_repository.get_by_payment_intent_id(event.payment_intent_id)
            if payment is None:
                return Reconciliation.ignored()
            return await self.reconciler.apply(uow, payment, lambda p: p.mark_cancelled(), source=source)

        if isinstance(event, CheckoutSessionCompleted):
            return await self._apply_checkout(uow, event, source)

        if isinstance(event, ChargeRefunded):
            payment = await self._payment_for_charge(uow, event.charge_id, event.payment_intent_id)
            if payment is None:
                return Reconciliation.ignored()
            return await self.reconciler.apply(uow, payment, lambda p: self._sync_refund(p, event), source=source)

        if isinstance(event, ChargeDisputeCreated):
            payment = await self._payment_for_charge(uow, event.charge_id, event.payment_intent_id)
            if payment is None:
                return Reconciliation.ignored()
            logger.warning(
                "payment_dispute_opened",
                payment_id=payment.id,
                dispute_id=event.dispute_id,
                amount=event.amount,
                reason=event.reason,
            )
            return await self.reconciler.apply(uow, payment, lambda p: self._note_dispute(p, event), source=source)

        return Reconciliation.ignored()

    async def _apply_checkout(
        self, uow: AbstractUnitOfWork, event: CheckoutSessionCompleted, source: str
    ) -> Reconciliation:
        payment = None
        if event.payment_link_id:
            payment = await uow.payment_repository.get_by_payment_link_id(event.payment_link_id)
        if payment is None and event.payment_intent_id:
            payment = await uow.payment_repository.get_by_payment_intent_id(event.payment_intent_id)
        if payment is None:
            return Reconciliation.ignored()

        if event.is_failed:
            return await self.reconciler.apply(
                uow, payment, lambda p: p.mark_failed("Asynchronous payment failed"), source=source
            )
        if not event.is_paid:
            # 异步支付方式尚未到账，等待 async_payment_succeeded
            return Reconciliation(payment=payment, outcome="noop", previous_status=payment.status)
        return await self.reconciler.apply(
            uow,
            payment,
            lambda p: record_success(
                p,
                payment_intent_id=event.payment_intent_id,
                customer_id=event.customer_id,
            ),
            source=source,
        )

    @staticmethod
    def _sync_refund(payment: Payment, event: ChargeRefunded) -> TransitionOutcome:
        # 退款意味着扣款已成功；退款事件可能先于成功事件到达
        outcome = record_success(payment, charge_id=event.charge_id, payment_intent_id=event.payment_intent_id)
        if payment.sync_refunded_total(event.amount_refunded) == TransitionOutcome.APPLIED:
            outcome = TransitionOutcome.APPLIED
        return outcome

    @staticmethod
    def _note_dispute(payment: Payment, event: ChargeDisputeCreated) -> TransitionOutcome:
        disputes = dict(payment.metadata.get("disputes") or {})
        if event.dispute_id in disputes:
            return TransitionOutcome.NOOP
        disputes[event.dispute_id] = {"amount": event.amount, "reason": event.reason}
        payment.update_metadata("disputes", disputes)
        return TransitionOutcome.APPLIED

    # ------------------------------------------------------------------
    # 查找
    # ------------------------------------------------------------------
    async def _payment_for_charge(
        self, uow: AbstractUnitOfWork, charge_id: Optional[str], payment_intent_id: Optional[str]
    ) -> Optional[Payment]:
        payment = None
        if charge_id:
            payment = await uow.payment_repository.get_by_charge_id(charge_id)
        if payment is None and payment_intent_id:
            payment = await uow.payment_repository.get_by_payment_intent_id(payment_intent_id)
        return payment

    async def _payment_for_intent(self, uow: AbstractUnitOfWork, event: PaymentIntentSucceeded) -> Optional[Payment]:
        """
        定位意图对应的支付

        通过支付链接完成的意图匹配订单下同金额的待支付链接；卡支付产生、本地行
        尚未提交的意图在此插入，由意图ID唯一约束裁决与 API 之间的竞争。
        """
        payment = await uow.payment_repository.get_by_payment_intent_id(event.payment_intent_id)
        if payment is not None:
            return payment

        order_ref = event.metadata.get("order_ref")
        source = event.metadata.get("source")
        if not order_ref:
            return None

        if source == "payment_link":
            for candidate in await uow.payment_repository.list_pending_links(order_ref):
                if candidate.amount == event.amount:
                    return candidate
            return None

        if source != "charge":
            return None
        order = await uow.order_repository.get(order_ref)
        currency = event.extensions.get("currency") or (order.currency if order else None)
        if not currency or event.amount <= 0:
            return None
        method = event.metadata.get("method") or PaymentMethod.CARD.value
        try:
            return await uow.payment_repository.create(
                Payment(
                    id=None,
                    order_ref=order_ref,
                    customer_ref=order.customer_ref if order else None,
                    amount=event.amount,
                    currency=currency,
                    method=PaymentMethod(method),
                    gateway_ids=GatewayIds(
                        payment_intent_id=event.payment_intent_id,
                        customer_id=event.customer_id,
                        payment_method_id=event.payment_method_id,
                    ),
                    metadata={"created_by": "webhook"},
                )
            )
        except DuplicatePaymentException as exc:
            if exc.existing is not None:
                return exc.existing
            # 插入冲突后事务已失效：回滚并重读
            raise ConcurrentPaymentUpdateException(event.payment_intent_id, 0) from exc
