"""
已处理 webhook 事件仓储
"""
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.exceptions import DuplicateWebhookEventException
from domain.payment.repository import WebhookEventRepository
from infrastructure.models.webhook_event import ProcessedWebhookEventModel


class SQLAlchemyWebhookEventRepository(WebhookEventRepository):

    def __init__(self, session: AsyncSession, provider: str = "stripe"):
        self.session = session
        self.provider = provider

    async def exists(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(ProcessedWebhookEventModel.id).where(ProcessedWebhookEventModel.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def record(
        self,
        event_id: str,
        event_type: str,
        *,
        payment_id: Optional[int] = None,
        outcome: str = "applied",
    ) -> bool:
        if await self.exists(event_id):
            return False
        try:
            self.session.add(
                ProcessedWebhookEventModel(
                    provider=self.provider,
                    event_id=event_id,
                    event_type=event_type,
                    payment_id=payment_id,
                    outcome=outcome,
                )
            )
            await self.session.flush()
        except IntegrityError as e:
            raise DuplicateWebhookEventException(event_id) from e
        return True
