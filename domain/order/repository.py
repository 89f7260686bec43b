"""
订单仓储接口 - 读取订单总额并回写支付汇总
"""
from abc import ABC, abstractmethod
from typing import Optional

from .entity import OrderReference, OrderTotalSnapshot


class OrderRepository(ABC):

    @abstractmethod
    async def get(self, order_ref: str, *, for_update: bool = False) -> Optional[OrderReference]:
        """获取订单；for_update 时加行锁"""

    @abstractmethod
    async def set_gateway_customer_id(self, order_ref: str, customer_id: str) -> None:
        pass

    @abstractmethod
    async def apply_totals(self, snapshot: OrderTotalSnapshot) -> None:
        """持久化 paid/balance/status"""
