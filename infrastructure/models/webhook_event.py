"""
已处理 webhook 事件表 - 以网关事件ID去重
"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime, timezone

from .base import Base


class ProcessedWebhookEventModel(Base):
    __tablename__ = "processed_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False, default="stripe", comment="支付提供商")
    event_id = Column(String(255), nullable=False, unique=True, comment="网关事件ID")
    event_type = Column(String(100), nullable=False, comment="事件类型")
    payment_id = Column(Integer, nullable=True, index=True, comment="关联支付ID")
    outcome = Column(String(20), nullable=False, default="applied", comment="处理结果: applied/noop/rejected")
    received_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
        comment="接收时间"
    )
