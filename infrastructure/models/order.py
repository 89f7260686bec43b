"""
销售订单数据库模型（支付引擎只读写总额与支付汇总字段）
"""
from sqlalchemy import Column, Integer, BigInteger, String, DateTime
from datetime import datetime, timezone

from .base import Base


class SalesOrderModel(Base):
    __tablename__ = "sales_orders"

    id = Column(Integer, primary_key=True, index=True)
    order_ref = Column(String(64), nullable=False, unique=True, comment="订单引用")
    order_no = Column(String(64), nullable=True, comment="订单编号")

    # 客户信息
    customer_ref = Column(String(64), nullable=True, comment="客户引用")
    customer_email = Column(String(255), nullable=True, comment="客户邮箱")
    customer_name = Column(String(255), nullable=True, comment="客户名称")
    gateway_customer_id = Column(String(255), nullable=True, comment="网关客户ID")

    # 金额（最小货币单位）
    currency = Column(String(3), nullable=False, default="usd", comment="货币代码")
    total_amount = Column(BigInteger, nullable=False, default=0, comment="订单总额")
    paid_amount = Column(BigInteger, nullable=False, default=0, comment="已付金额")
    balance_due = Column(BigInteger, nullable=False, default=0, comment="待付余额")
    overpaid_amount = Column(BigInteger, nullable=False, default=0, comment="超付金额")
    payment_status = Column(String(20), nullable=False, default="unpaid", comment="支付状态: unpaid/partially_paid/paid/refunded")

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="创建时间"
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="更新时间"
    )

    def __repr__(self):
        return (
            f"<SalesOrderModel(order_ref='{self.order_ref}', total={self.total_amount}, "
            f"paid={self.paid_amount}, status='{self.payment_status}')>"
        )
