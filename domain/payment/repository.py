"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from .entity import Payment, PaymentMethod, ReceiptStatus


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录；网关标识冲突时抛出 DuplicatePaymentException"""

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""

    @abstractmethod
    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付并加行锁，直至事务结束"""

    @abstractmethod
    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_payment_link_id(self, payment_link_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_by_order(self, order_ref: str) -> List[Payment]:
        """获取订单下全部支付（按创建时间升序）"""

    @abstractmethod
    async def list_pending_links(self, order_ref: Optional[str] = None, limit: int = 500) -> List[Payment]:
        """获取待支付的支付链接记录，可按订单过滤"""

    @abstractmethod
    async def count_attempts(self, order_ref: str, methods: Iterable[PaymentMethod]) -> int:
        """统计订单下指定支付方式的历史尝试次数"""

    @abstractmethod
    async def list_by_receipt_status(self, status: ReceiptStatus, limit: int = 100) -> List[Payment]:
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """乐观锁更新；版本不一致时抛出 ConcurrentPaymentUpdateException"""

    @abstractmethod
    async def claim_receipt(self, payment_id: int, *, allow_resend: bool = False) -> bool:
        """条件更新 receipt_status -> sending，仅一个调用方能成功"""

    @abstractmethod
    async def set_receipt_status(self, payment_id: int, status: ReceiptStatus) -> None:
        pass

    @abstractmethod
    async def claim_refund(self, payment_id: int, expected_version: int, *, stale_before: datetime) -> bool:
        """条件更新认领退款：版本一致且无未过期的认领时成功，仅一个调用方能成功"""

    @abstractmethod
    async def release_refund_claim(self, payment_id: int) -> None:
        pass


class WebhookEventRepository(ABC):
    """已处理 webhook 事件台账"""

    @abstractmethod
    async def record(
        self,
        event_id: str,
        event_type: str,
        *,
        payment_id: Optional[int] = None,
        outcome: str = "applied",
    ) -> bool:
        """记录事件；若事件ID已存在返回 False"""

    @abstractmethod
    async def exists(self, event_id: str) -> bool:
        pass
