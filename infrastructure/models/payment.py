"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, BigInteger, String, DateTime, Text, JSON, Index,
)
from datetime import datetime, timezone

from .base import Base


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    # 主键
    id = Column(Integer, primary_key=True, index=True)

    # 订单/客户信息
    order_ref = Column(String(64), nullable=False, index=True, comment="订单引用")
    customer_ref = Column(String(64), nullable=True, comment="客户引用")

    # 金额信息（整数最小货币单位）
    amount = Column(BigInteger, nullable=False, comment="支付金额（最小货币单位）")
    currency = Column(String(3), nullable=False, default="usd", comment="货币代码 ISO-4217（小写）")
    refunded_amount = Column(BigInteger, nullable=False, default=0, comment="已退款金额（最小货币单位）")
    refund_count = Column(Integer, nullable=False, default=0, comment="退款次数")

    # 支付方式与状态
    method = Column(String(20), nullable=False, comment="支付方式: payment_link/saved_card/card")
    status = Column(
        String(30),
        nullable=False,
        default="pending",
        index=True,
        comment="支付状态: pending/succeeded/failed/cancelled/refunded/partially_refunded"
    )

    # 网关标识（唯一约束防止 webhook 与 API 并发创建重复记录）
    payment_intent_id = Column(String(255), nullable=True, unique=True, comment="PaymentIntent ID")
    charge_id = Column(String(255), nullable=True, unique=True, comment="Charge ID")
    customer_id = Column(String(255), nullable=True, comment="网关客户ID")
    payment_method_id = Column(String(255), nullable=True, comment="网关支付方式ID")
    payment_link_id = Column(String(255), nullable=True, unique=True, comment="Payment Link ID")

    # 支付链接
    payment_link_url = Column(String(1024), nullable=True, comment="支付链接URL")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="支付链接过期时间")

    # 卡信息 / 失败原因
    card_last4 = Column(String(4), nullable=True, comment="卡号后四位")
    card_brand = Column(String(32), nullable=True, comment="卡品牌")
    error_message = Column(Text, nullable=True, comment="失败原因")

    # 收据发送状态（防止 webhook 重放导致重复通知）
    receipt_status = Column(String(16), nullable=False, default="none", comment="收据状态: none/sending/sent/failed")
    receipt_sent_at = Column(DateTime(timezone=True), nullable=True, comment="收据发送时间")

    # 退款认领时间（进行中的退款独占该支付，过期自动失效）
    refund_claimed_at = Column(DateTime(timezone=True), nullable=True, comment="退款认领时间")

    # 乐观锁版本号
    version = Column(Integer, nullable=False, default=0, comment="版本号")

    # 元数据（JSON格式，使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突）
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    # 时间戳
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

    # 索引
    __table_args__ = (
        Index("ix_payments_order_method_status", "order_ref", "method", "status"),
        Index("ix_payments_receipt_status", "receipt_status"),
        Index("ix_payments_created_at", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, order_ref='{self.order_ref}', "
            f"method='{self.method}', amount={self.amount}, status='{self.status}')>"
        )
