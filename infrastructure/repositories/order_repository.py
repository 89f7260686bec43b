"""
订单仓储实现 - 仅读写支付相关字段
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.order.entity import OrderReference, OrderTotalSnapshot
from domain.order.repository import OrderRepository
from infrastructure.models.order import SalesOrderModel


logger = get_logger(__name__)


class SQLAlchemyOrderRepository(OrderRepository):

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: SalesOrderModel) -> OrderReference:
        return OrderReference(
            order_ref=model.order_ref,
            order_no=model.order_no,
            total=int(model.total_amount or 0),
            currency=model.currency,
            customer_ref=model.customer_ref,
            customer_email=model.customer_email,
            customer_name=model.customer_name,
            gateway_customer_id=model.gateway_customer_id,
        )

    async def get(self, order_ref: str, *, for_update: bool = False) -> Optional[OrderReference]:
        stmt = (
            select(SalesOrderModel)
            .where(SalesOrderModel.order_ref == order_ref)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
            if self.session.get_bind().dialect.name == "sqlite":
                # SQLite 没有行锁：先做一次空更新取得库写锁，之后的读取不会被其它写事务穿插
                await self.session.execute(
                    update(SalesOrderModel)
                    .where(SalesOrderModel.order_ref == order_ref)
                    .values(order_ref=SalesOrderModel.order_ref)
                    .execution_options(synchronize_session=False)
                )
        result = await self.session.execute(stmt)
        model = result.scalar_one_or_none()
        return self._to_entity(model) if model else None

    async def set_gateway_customer_id(self, order_ref: str, customer_id: str) -> None:
        await self.session.execute(
            update(SalesOrderModel)
            .where(SalesOrderModel.order_ref == order_ref)
            .values(gateway_customer_id=customer_id, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )

    async def apply_totals(self, snapshot: OrderTotalSnapshot) -> None:
        await self.session.execute(
            update(SalesOrderModel)
            .where(SalesOrderModel.order_ref == snapshot.order_ref)
            .values(
                paid_amount=snapshot.paid_amount,
                balance_due=snapshot.balance_due,
                overpaid_amount=snapshot.overpaid_amount,
                payment_status=snapshot.payment_status.value,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "order_totals_applied",
            order_ref=snapshot.order_ref,
            paid_amount=snapshot.paid_amount,
            balance_due=snapshot.balance_due,
            payment_status=snapshot.payment_status.value,
        )
