"""
支付生命周期应用服务

只依赖 PaymentGateway / ReceiptNotifier 端口、工作单元与 DTO；网关实现由基础设施层
提供，并在组合根（API/任务）注入，保持依赖单向。
"""
from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from application.dtos.payments import (
    CancelResult,
    ChargeRequest,
    ChargeResult,
    GatewayCheckoutSession,
    GatewayPaymentMethod,
    GatewaySetupIntent,
    OrderTotalsDTO,
    PaymentDTO,
    PaymentLinkResult,
    PaymentReceipt,
    ReceiptResult,
    RefundOutcome,
    SyncResult,
)
from application.ports.notifications import ReceiptNotifier
from application.ports.payment_gateway import PaymentGateway
from application.services.order_totals import OrderTotalSynchronizer
from application.services.reconciliation import (
    SETTLED_STATUSES,
    PaymentReconciler,
    Reconciliation,
    apply_gateway_status,
    record_success,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from domain.common.exceptions import DomainValidationException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderReference, OrderTotalSnapshot, OverpaymentPolicy
from domain.order.service import compute_order_totals
from domain.payment.entity import (
    GatewayIds,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ReceiptStatus,
    utcnow,
)
from domain.payment.exceptions import (
    ConcurrentPaymentUpdateException,
    DuplicatePaymentException,
    GatewayError,
    InvalidPaymentStateException,
    NotificationError,
    OrderNotFoundException,
    OrderTotalInvalidException,
    PaymentNotFoundException,
)
from domain.payment.money import from_minor_units
from shared.codes.payment_codes import map_provider_status


logger = get_logger(__name__)

CARD_METHODS = (PaymentMethod.CARD, PaymentMethod.SAVED_CARD)


def _idempotency_key(op: str, order_ref: str, attempt: int, amount: int, extra: str = "") -> str:
    # 由业务标识派生的稳定幂等键（不含时间戳）
    base = f"{op}|{order_ref}|{attempt}|{amount}|{extra}"
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


class PaymentLifecycleService:
    """支付生命周期应用服务 - 链接、扣款、退款、取消与拉取式对账"""

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        notifier: ReceiptNotifier,
        settings: PaymentSettings = payment_settings,
        totals: Optional[OrderTotalSynchronizer] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.totals = totals or OrderTotalSynchronizer(uow_factory, settings.overpayment_policy)
        self.reconciler = PaymentReconciler(uow_factory, max_attempts=settings.reconcile_max_attempts)

    # ------------------------------------------------------------------
    # 辅助方法
    # ------------------------------------------------------------------
    @staticmethod
    async def _require_order(uow: AbstractUnitOfWork, order_ref: str) -> OrderReference:
        order = await uow.order_repository.get(order_ref)
        if order is None:
            raise OrderNotFoundException(order_ref)
        if order.total <= 0:
            raise OrderTotalInvalidException(order_ref, order.total)
        return order

    @staticmethod
    def _require_balance_due(order: OrderReference, payments: List[Payment]) -> int:
        """订单已付清时拒绝再次收款，返回待付余额"""
        balance = compute_order_totals(order, payments).balance_due
        if balance <= 0:
            raise DomainValidationException(
                f"Order {order.order_ref} has no balance due",
                field="amount",
                details={"order_ref": order.order_ref},
                message_key="order.already_paid",
            )
        return balance

    @staticmethod
    async def _require_payment(uow: AbstractUnitOfWork, payment_id: int) -> Payment:
        payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            raise PaymentNotFoundException(payment_id)
        return payment

    async def _insert(self, payment: Payment, lookup: Callable[[AbstractUnitOfWork], object]) -> tuple[Payment, bool]:
        """
        插入新支付；网关标识已存在时返回已有记录

        返回 ``(payment, created)``。并发插入输掉唯一约束竞争后事务已不可用，
        因此在新的工作单元中读回胜出的记录。
        """
        try:
            async with self._uow_factory() as uow:
                return await uow.payment_repository.create(payment), True
        except DuplicatePaymentException as exc:
            if exc.existing is not None:
                return exc.existing, False
        async with self._uow_factory(readonly=True) as uow:
            existing = await lookup(uow)
        if existing is None:
            raise PaymentNotFoundException(payment.order_ref)
        return existing, False

    async def _ensure_customer(self, order: OrderReference, customer_id: Optional[str] = None) -> str:
        """解析或创建网关客户，并记录到订单上"""
        if customer_id:
            return customer_id
        if order.gateway_customer_id:
            return order.gateway_customer_id
        customer = await self.gateway.get_or_create_customer(
            email=order.customer_email,
            name=order.customer_name,
            metadata={"order_ref": order.order_ref, "customer_ref": order.customer_ref or ""},
            idempotency_key=_idempotency_key("customer", order.order_ref, 0, 0, order.customer_email or ""),
        )
        async with self._uow_factory() as uow:
            await uow.order_repository.set_gateway_customer_id(order.order_ref, customer.customer_id)
        order.gateway_customer_id = customer.customer_id
        return customer.customer_id

    @staticmethod
    def _link_result(payment: Payment, *, reused: bool) -> PaymentLinkResult:
        return PaymentLinkResult(
            payment_id=payment.id,
            payment_link_id=payment.gateway_ids.payment_link_id,
            url=payment.payment_link_url or "",
            amount=payment.amount,
            currency=payment.currency,
            expires_at=payment.expires_at,
            reused=reused,
        )

    # ------------------------------------------------------------------
    # 支付链接
    # ------------------------------------------------------------------
    async def create_payment_link(self, order_ref: str, return_url: Optional[str] = None) -> PaymentLinkResult:
        """
        为订单创建支付链接

        金额与当前订单总额一致且未过期的待支付链接直接复用；过期或金额过时的链接
        先作废再新建。
        """
        now = utcnow()
        async with self._uow_factory(readonly=True) as uow:
            order = await self._require_order(uow, order_ref)
            payments = await uow.payment_repository.list_by_order(order_ref)
            pending = await uow.payment_repository.list_pending_links(order_ref)
            attempt = await uow.payment_repository.count_attempts(order_ref, [PaymentMethod.PAYMENT_LINK])
        self._require_balance_due(order, payments)

        for payment in pending:
            if payment.is_link_active(now) and payment.amount == order.total:
                logger.info("payment_link_reused", order_ref=order_ref, payment_id=payment.id)
                return self._link_result(payment, reused=True)

        for stale in pending:
            # 过期或金额已变化的链接先行作废（若实际已支付则以网关为准）
            try:
                await self.cancel_payment_link(stale.id)
            except InvalidPaymentStateException:
                logger.info("payment_link_already_closed", payment_id=stale.id)

        key = _idempotency_key("payment_link", order_ref, attempt, order.total)
        link = await self.gateway.create_payment_link(
            amount=order.total,
            currency=order.currency,
            description=order.description,
            metadata={"order_ref": order_ref, "order_no": order.order_no or ""},
            return_url=return_url,
            idempotency_key=key,
        )
        payment = Payment(
            id=None,
            order_ref=order_ref,
            customer_ref=order.customer_ref,
            amount=order.total,
            currency=order.currency,
            method=PaymentMethod.PAYMENT_LINK,
            gateway_ids=GatewayIds(payment_link_id=link.link_id, customer_id=order.gateway_customer_id),
            payment_link_url=link.url,
            expires_at=now + timedelta(hours=self.settings.link_ttl_hours),
            metadata={"idempotency_key": key},
        )
        saved, created = await self._insert(
            payment, lambda uow: uow.payment_repository.get_by_payment_link_id(link.link_id)
        )
        logger.info(
            "payment_link_ready",
            order_ref=order_ref,
            payment_id=saved.id,
            link_id=link.link_id,
            created=created,
        )
        return self._link_result(saved, reused=not created)

    async def cancel_payment_link(self, payment_id: int) -> CancelResult:
        """取消待支付链接；若网关显示已支付，则按成功对账"""
        async with self._uow_factory(readonly=True) as uow:
            payment = await self._require_payment(uow, payment_id)
        if payment.method != PaymentMethod.PAYMENT_LINK or payment.status != PaymentStatus.PENDING:
            raise InvalidPaymentStateException(payment_id, payment.status.value, "cancel")

        link_id = payment.gateway_ids.payment_link_id
        try:
            sessions = await self.gateway.list_link_sessions(link_id)
        except GatewayError as exc:
            logger.warning("payment_link_session_check_failed", payment_id=payment_id, reason=exc.reason.value)
            sessions = []

        paid = next((s for s in sessions if s.is_paid), None)
        if paid is not None:
            change = await self._apply_paid_session(payment_id, paid, source="cancel")
            await self._after_reconcile(change)
            return CancelResult(payment_id=payment_id, status=change.payment.status, cancelled=False)

        try:
            await self.gateway.deactivate_payment_link(link_id)
        except GatewayError as exc:
            # 尽力而为：网关停用失败不阻止本地取消
            logger.warning("payment_link_deactivate_failed", payment_id=payment_id, reason=exc.reason.value)

        change = await self.reconciler.transition(payment_id, lambda p: p.mark_cancelled(), source="cancel")
        status = change.payment.status
        return CancelResult(payment_id=payment_id, status=status, cancelled=status == PaymentStatus.CANCELLED)

    async def _apply_paid_session(
        self, payment_id: int, session: GatewayCheckoutSession, *, source: str
    ) -> Reconciliation:
        return await self.reconciler.transition(
            payment_id,
            lambda p: record_success(
                p,
                payment_intent_id=session.payment_intent_id,
                customer_id=session.customer_id,
            ),
            source=source,
        )

    async def cancel_expired_payment_links(self, now: Optional[datetime] = None) -> int:
        """作废已过期的待支付链接，返回取消数量"""
        now = now or utcnow()
        async with self._uow_factory(readonly=True) as uow:
            pending = await uow.payment_repository.list_pending_links(limit=self.settings.expired_link_batch_size)

        cancelled = 0
        for payment in pending:
            if not payment.is_link_expired(now):
                continue
            try:
                result = await self.cancel_payment_link(payment.id)
            except Exception as exc:
                logger.error("payment_link_expire_failed", payment_id=payment.id, error=str(exc))
                continue
            if result.cancelled:
                cancelled += 1
        logger.info("payment_links_expired", cancelled=cancelled, scanned=len(pending))
        return cancelled

    # ------------------------------------------------------------------
    # 卡支付
    # ------------------------------------------------------------------
    async def charge_sales_order(self, order_ref: str, request: ChargeRequest) -> ChargeResult:
        """
        使用已保存或新卡为订单扣款（金额为当前待付余额）

        以意图ID为键的本地支付行在返回前已提交，先到的 webhook 一定能找到它；
        本地状态保持 pending，直到网关通过 webhook 或同步确认。
        """
        async with self._uow_factory(readonly=True) as uow:
            order = await self._require_order(uow, order_ref)
            payments = await uow.payment_repository.list_by_order(order_ref)
            attempt = await uow.payment_repository.count_attempts(order_ref, CARD_METHODS)
        amount = self._require_balance_due(order, payments)

        customer_id = await self._ensure_customer(order, request.customer_id)
        pm = await self.gateway.retrieve_payment_method(request.payment_method_id)
        method = PaymentMethod.SAVED_CARD if pm.customer_id == customer_id else PaymentMethod.CARD
        if request.save_card and pm.customer_id != customer_id:
            pm = await self.gateway.attach_payment_method(request.payment_method_id, customer_id)

        key = request.idempotency_key or _idempotency_key(
            "charge", order_ref, attempt, amount, request.payment_method_id
        )
        logger.info(
            "payment_charge_request",
            order_ref=order_ref,
            amount=amount,
            method=method.value,
            idempotency_key=key,
        )
        intent = await self.gateway.create_payment_intent(
            amount=amount,
            currency=order.currency,
            customer_id=customer_id,
            payment_method_id=request.payment_method_id,
            metadata={"order_ref": order_ref, "order_no": order.order_no or "", "method": method.value},
            save_payment_method=request.save_card,
            description=order.description,
            idempotency_key=key,
        )

        payment = Payment(
            id=None,
            order_ref=order_ref,
            customer_ref=order.customer_ref,
            amount=amount,
            currency=order.currency,
            method=method,
            gateway_ids=GatewayIds(
                payment_intent_id=intent.intent_id,
                customer_id=customer_id,
                payment_method_id=request.payment_method_id,
            ),
            card_last4=intent.card_last4 or pm.card_last4,
            card_brand=intent.card_brand or pm.card_brand,
            metadata={"idempotency_key": key},
        )
        saved, created = await self._insert(
            payment, lambda uow: uow.payment_repository.get_by_payment_intent_id(intent.intent_id)
        )
        logger.info(
            "payment_charge_response",
            order_ref=order_ref,
            payment_id=saved.id,
            intent_id=intent.intent_id,
            status=intent.status,
            created=created,
        )
        return ChargeResult(
            payment_id=saved.id,
            payment_intent_id=intent.intent_id,
            status=intent.status,
            client_secret=intent.client_secret,
            requires_action=intent.requires_action,
        )

    # ------------------------------------------------------------------
    # 退款
    # ------------------------------------------------------------------
    async def refund_payment(
        self,
        payment_id: int,
        amount: Optional[int] = None,
        reason: Optional[str] = "requested_by_customer",
    ) -> RefundOutcome:
        """
        退款（全额或部分）

        1. 校验后以条件更新认领退款（版本一致且无进行中的退款），认领失败的并发请求不会到达网关
        2. 调用网关；失败时释放认领，支付记录保持不变，此处不重试
        3. 以网关报告的累计退款额对齐本地记录，并重算订单汇总
        """
        stale_before = utcnow() - timedelta(seconds=self.settings.refund_claim_ttl_seconds)
        async with self._uow_factory() as uow:
            payment = await uow.payment_repository.get_for_update(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            refund_amount = payment.resolve_refund_amount(amount)
            ids = payment.gateway_ids
            if not ids.charge_id and not ids.payment_intent_id:
                raise InvalidPaymentStateException(payment_id, payment.status.value, "refund")
            if not await uow.payment_repository.claim_refund(
                payment_id, payment.version, stale_before=stale_before
            ):
                logger.warning("payment_refund_claim_rejected", payment_id=payment_id, version=payment.version)
                raise ConcurrentPaymentUpdateException(payment_id, payment.version)
        refunded_before = payment.refunded_amount

        key = _idempotency_key("refund", payment.order_ref, payment.refund_count, refund_amount, str(payment.id))
        logger.info(
            "payment_refund_request",
            payment_id=payment_id,
            amount=refund_amount,
            idempotency_key=key,
        )
        try:
            refund = await self.gateway.process_refund(
                charge_id=ids.charge_id,
                payment_intent_id=None if ids.charge_id else ids.payment_intent_id,
                amount=refund_amount,
                reason=reason,
                metadata={"order_ref": payment.order_ref, "payment_id": str(payment.id)},
                idempotency_key=key,
            )
        except Exception:
            await self._release_refund_claim(payment_id)
            raise

        gateway_total = await self._gateway_refunded_total(ids.charge_id or refund.charge_id)

        async def _record(uow: AbstractUnitOfWork) -> tuple[Payment, OrderTotalSnapshot]:
            current = await uow.payment_repository.get_for_update(payment_id)
            current.record_refund(
                refund.refund_id,
                refund_amount,
                refunded_before=refunded_before,
                gateway_total=gateway_total,
            )
            await uow.payment_repository.update(current)
            await uow.payment_repository.release_refund_claim(payment_id)
            return current, await self.totals.recompute_within(uow, current.order_ref)

        payment, snapshot = await self.reconciler.run(_record)

        logger.info(
            "payment_refunded",
            payment_id=payment_id,
            refund_id=refund.refund_id,
            amount=refund_amount,
            refunded_amount=payment.refunded_amount,
            gateway_refunded_total=gateway_total,
            status=payment.status.value,
            balance_due=snapshot.balance_due,
        )
        return RefundOutcome(
            payment_id=payment_id,
            refund_id=refund.refund_id,
            amount=refund_amount,
            refunded_amount=payment.refunded_amount,
            status=refund.status,
            payment_status=payment.status,
        )

    async def _gateway_refunded_total(self, charge_id: Optional[str]) -> Optional[int]:
        if not charge_id:
            return None
        try:
            charge = await self.gateway.retrieve_charge(charge_id)
        except GatewayError as exc:
            logger.warning("payment_refund_total_unavailable", charge_id=charge_id, error=str(exc))
            return None
        return charge.amount_refunded

    async def _release_refund_claim(self, payment_id: int) -> None:
        try:
            async with self._uow_factory() as uow:
                await uow.payment_repository.release_refund_claim(payment_id)
        except Exception as exc:
            # 认领到期后自动失效
            logger.error("payment_refund_claim_release_failed", payment_id=payment_id, error=str(exc))

    # ------------------------------------------------------------------
    # 主动同步对账
    # ------------------------------------------------------------------
    async def sync_payment_link_status(self, payment_id: int) -> SyncResult:
        """重新获取链接的网关状态，并经由同一迁移路径应用"""
        async with self._uow_factory(readonly=True) as uow:
            payment = await self._require_payment(uow, payment_id)
        if payment.method != PaymentMethod.PAYMENT_LINK:
            raise InvalidPaymentStateException(payment_id, payment.method.value, "sync link of")

        link_id = payment.gateway_ids.payment_link_id
        sessions = await self.gateway.list_link_sessions(link_id)
        paid = next((s for s in sessions if s.is_paid), None)
        if paid is not None:
            change = await self._apply_paid_session(payment_id, paid, source="sync")
            gateway_status = "paid"
        else:
            link = await self.gateway.retrieve_payment_link(link_id)
            gateway_status = "active" if link.active else "inactive"
            if link.active:
                change = Reconciliation(payment=payment, outcome="noop", previous_status=payment.status)
            else:
                # 网关侧已停用且未支付
                change = await self.reconciler.transition(
                    payment_id, lambda p: p.mark_cancelled(), source="sync"
                )

        await self._after_reconcile(change)
        return SyncResult(
            payment_id=payment_id,
            status=change.payment.status,
            changed=change.changed,
            gateway_status=gateway_status,
        )

    async def sync_payment_status(self, payment_id: int) -> SyncResult:
        """拉取网关状态（链接或支付意图），用于 webhook 丢失时的兜底对账"""
        async with self._uow_factory(readonly=True) as uow:
            payment = await self._require_payment(uow, payment_id)
        if payment.method == PaymentMethod.PAYMENT_LINK and not payment.gateway_ids.payment_intent_id:
            return await self.sync_payment_link_status(payment_id)

        intent_id = payment.gateway_ids.payment_intent_id
        if not intent_id:
            raise InvalidPaymentStateException(payment_id, payment.status.value, "sync")
        intent = await self.gateway.retrieve_intent(intent_id)
        target = map_provider_status(self.gateway.provider, intent.status)
        change = await self.reconciler.transition(
            payment_id,
            lambda p: apply_gateway_status(
                p,
                target,
                reason=intent.last_error_message or intent.last_error_code,
                payment_intent_id=intent.intent_id,
                charge_id=intent.latest_charge_id,
                customer_id=intent.customer_id,
                payment_method_id=intent.payment_method_id,
                card_last4=intent.card_last4,
                card_brand=intent.card_brand,
            ),
            source="sync",
        )

        charge_id = change.payment.gateway_ids.charge_id
        if change.payment.status in SETTLED_STATUSES and charge_id:
            charge = await self.gateway.retrieve_charge(charge_id)
            refund_change = await self.reconciler.transition(
                payment_id, lambda p: p.sync_refunded_total(charge.amount_refunded), source="sync"
            )
            if refund_change.changed:
                change = Reconciliation(
                    payment=refund_change.payment, outcome="applied", previous_status=change.previous_status
                )

        await self._after_reconcile(change)
        return SyncResult(
            payment_id=payment_id,
            status=change.payment.status,
            changed=change.changed,
            gateway_status=intent.status,
        )

    # ------------------------------------------------------------------
    # 状态迁移后的附带效果
    # ------------------------------------------------------------------
    async def _after_reconcile(self, change: Reconciliation) -> None:
        if change.newly_settled:
            await self.finalize_success(change.payment_id)
        elif change.changed and change.payment is not None:
            await self.recompute_totals_safely(change.payment.order_ref)

    async def recompute_totals_safely(self, order_ref: str) -> Optional[OrderTotalSnapshot]:
        try:
            return await self.totals.recompute(order_ref)
        except Exception as exc:
            logger.error("order_totals_recompute_failed", order_ref=order_ref, error=str(exc))
            return None

    async def finalize_success(self, payment_id: int) -> None:
        """
        成功后的附带效果：汇总、作废其它链接、发送收据、处理超额支付

        各步骤尽力而为：失败只记录日志，不会撤销触发它们的状态写入。
        """
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payment_repository.get_by_id(payment_id)
        if payment is None:
            return

        snapshot = await self.recompute_totals_safely(payment.order_ref)

        if snapshot is not None and snapshot.balance_due == 0:
            await self._cancel_sibling_links(payment)

        try:
            await self.send_payment_receipt(payment_id)
        except Exception as exc:
            logger.error("receipt_dispatch_failed", payment_id=payment_id, error=str(exc))

        if (
            snapshot is not None
            and snapshot.is_overpaid
            and self.totals.policy == OverpaymentPolicy.AUTO_REFUND
        ):
            await self._refund_overpayment(payment, snapshot)

    async def _cancel_sibling_links(self, payment: Payment) -> None:
        async with self._uow_factory(readonly=True) as uow:
            pending = await uow.payment_repository.list_pending_links(payment.order_ref)
        for other in pending:
            if other.id == payment.id:
                continue
            try:
                await self.cancel_payment_link(other.id)
            except Exception as exc:
                logger.error("payment_link_cancel_failed", payment_id=other.id, error=str(exc))

    async def _refund_overpayment(self, payment: Payment, snapshot: OrderTotalSnapshot) -> None:
        async with self._uow_factory(readonly=True) as uow:
            payments = await uow.payment_repository.list_by_order(payment.order_ref)
        candidates = [p for p in payments if p.can_refund()]
        if not candidates:
            return
        # 从最近一笔成功支付中退回超额部分
        latest = max(candidates, key=lambda p: (p.created_at or utcnow(), p.id or 0))
        excess = min(snapshot.overpaid_amount, latest.refundable_amount)
        try:
            await self.refund_payment(latest.id, excess, reason="duplicate")
            logger.info("overpayment_refunded", payment_id=latest.id, amount=excess, order_ref=payment.order_ref)
        except Exception as exc:
            logger.error("overpayment_refund_failed", payment_id=latest.id, amount=excess, error=str(exc))

    # ------------------------------------------------------------------
    # 收据
    # ------------------------------------------------------------------
    async def send_payment_receipt(self, payment_id: int, *, resend: bool = False) -> ReceiptResult:
        """
        发送收据（至多一次）

        以 ``receipt_status`` 认领（none/failed -> sending）作为防护，重复投递的 webhook
        不会产生第二份收据；发送失败时标记为 ``failed`` 等待定时重试，支付本身不受影响。
        """
        async with self._uow_factory() as uow:
            payment = await self._require_payment(uow, payment_id)
            if payment.status not in SETTLED_STATUSES:
                raise InvalidPaymentStateException(payment_id, payment.status.value, "send receipt for")
            claimed = await uow.payment_repository.claim_receipt(payment_id, allow_resend=resend)
            order = await uow.order_repository.get(payment.order_ref)

        if not claimed:
            logger.info("receipt_already_handled", payment_id=payment_id, receipt_status=payment.receipt_status.value)
            return ReceiptResult(payment_id=payment_id, receipt_status=payment.receipt_status, sent=False)

        receipt = PaymentReceipt(
            payment_id=payment_id,
            order_ref=payment.order_ref,
            order_no=order.order_no if order else None,
            customer_email=order.customer_email if order else None,
            customer_name=order.customer_name if order else None,
            amount=payment.amount,
            amount_display=str(from_minor_units(payment.amount, payment.currency)),
            currency=payment.currency.upper(),
            method=payment.method,
            card_last4=payment.card_last4,
            card_brand=payment.card_brand,
            paid_at=payment.updated_at,
        )
        try:
            await self.notifier.send_receipt(receipt)
        except Exception as exc:
            async with self._uow_factory() as uow:
                await uow.payment_repository.set_receipt_status(payment_id, ReceiptStatus.FAILED)
            logger.warning("receipt_send_failed", payment_id=payment_id, error=str(exc))
            if not isinstance(exc, NotificationError):
                raise
            return ReceiptResult(payment_id=payment_id, receipt_status=ReceiptStatus.FAILED, sent=False)

        async with self._uow_factory() as uow:
            await uow.payment_repository.set_receipt_status(payment_id, ReceiptStatus.SENT)
        return ReceiptResult(payment_id=payment_id, receipt_status=ReceiptStatus.SENT, sent=True)

    async def retry_failed_receipts(self) -> int:
        """重发失败的收据，返回成功数量"""
        async with self._uow_factory(readonly=True) as uow:
            failed = await uow.payment_repository.list_by_receipt_status(
                ReceiptStatus.FAILED, limit=self.settings.receipt_retry_batch_size
            )
        sent = 0
        for payment in failed:
            try:
                result = await self.send_payment_receipt(payment.id)
            except Exception as exc:
                logger.error("receipt_retry_failed", payment_id=payment.id, error=str(exc))
                continue
            sent += int(result.sent)
        logger.info("receipt_retry_completed", sent=sent, scanned=len(failed))
        return sent

    # ------------------------------------------------------------------
    # 已保存的支付方式
    # ------------------------------------------------------------------
    async def save_payment_method(self, order_ref: str, payment_method_id: str) -> GatewayPaymentMethod:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get(order_ref)
        if order is None:
            raise OrderNotFoundException(order_ref)
        customer_id = await self._ensure_customer(order)
        return await self.gateway.attach_payment_method(payment_method_id, customer_id)

    async def list_customer_payment_methods(self, customer_id: str) -> List[GatewayPaymentMethod]:
        return await self.gateway.list_customer_payment_methods(customer_id)

    async def delete_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        return await self.gateway.detach_payment_method(payment_method_id)

    async def create_setup_intent(self, customer_id: str) -> GatewaySetupIntent:
        return await self.gateway.create_setup_intent(customer_id)

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------
    async def get_payment_by_id(self, payment_id: int) -> PaymentDTO:
        async with self._uow_factory(readonly=True) as uow:
            payment = await self._require_payment(uow, payment_id)
        return PaymentDTO.model_validate(payment)

    async def get_payments_by_order(self, order_ref: str) -> List[PaymentDTO]:
        async with self._uow_factory(readonly=True) as uow:
            if await uow.order_repository.get(order_ref) is None:
                raise OrderNotFoundException(order_ref)
            payments = await uow.payment_repository.list_by_order(order_ref)
        return [PaymentDTO.model_validate(p) for p in payments]

    async def get_order_totals(self, order_ref: str) -> OrderTotalsDTO:
        async with self._uow_factory(readonly=True) as uow:
            order = await uow.order_repository.get(order_ref)
            if order is None:
                raise OrderNotFoundException(order_ref)
            payments = await uow.payment_repository.list_by_order(order_ref)
        return OrderTotalsDTO.model_validate(compute_order_totals(order, payments, self.totals.policy))
