"""
订单支付汇总同步（application/services）

每次都由完整支付集合推导汇总；订单行加锁后再读取支付，并发重算最终收敛到同一结果。
"""
from __future__ import annotations

from typing import Callable

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.order.entity import OrderTotalSnapshot, OverpaymentPolicy
from domain.order.service import compute_order_totals
from domain.payment.exceptions import OrderNotFoundException


logger = get_logger(__name__)


class OrderTotalSynchronizer:

    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        policy: OverpaymentPolicy = OverpaymentPolicy.FLAG,
    ) -> None:
        self._uow_factory = uow_factory
        self._policy = OverpaymentPolicy(policy)

    @property
    def policy(self) -> OverpaymentPolicy:
        return self._policy

    async def recompute(self, order_ref: str) -> OrderTotalSnapshot:
        """在独立事务中重新计算并保存订单汇总"""
        async with self._uow_factory() as uow:
            return await self.recompute_within(uow, order_ref)

    async def recompute_within(self, uow: AbstractUnitOfWork, order_ref: str) -> OrderTotalSnapshot:
        """在调用方的事务中计算；订单行加锁，支付集合在同一快照内读取"""
        order = await uow.order_repository.get(order_ref, for_update=True)
        if order is None:
            raise OrderNotFoundException(order_ref)
        payments = await uow.payment_repository.list_by_order(order_ref)
        snapshot = compute_order_totals(order, payments, self._policy)
        await uow.order_repository.apply_totals(snapshot)
        if snapshot.is_overpaid:
            logger.warning(
                "order_overpaid",
                order_ref=order_ref,
                order_total=snapshot.order_total,
                overpaid_amount=snapshot.overpaid_amount,
                policy=self._policy.value,
            )
        return snapshot
