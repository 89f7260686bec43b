"""
支付仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.payment.entity import (
    GatewayIds,
    Payment,
    PaymentMethod,
    PaymentStatus,
    ReceiptStatus,
)
from domain.payment.exceptions import (
    ConcurrentPaymentUpdateException,
    DuplicatePaymentException,
)
from domain.payment.repository import PaymentRepository
from infrastructure.models.payment import PaymentModel


logger = get_logger(__name__)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            order_ref=model.order_ref,
            customer_ref=model.customer_ref,
            amount=model.amount,
            currency=model.currency,
            refunded_amount=model.refunded_amount or 0,
            refund_count=model.refund_count or 0,
            method=PaymentMethod(model.method),
            status=PaymentStatus(model.status),
            gateway_ids=GatewayIds(
                payment_intent_id=model.payment_intent_id,
                charge_id=model.charge_id,
                customer_id=model.customer_id,
                payment_method_id=model.payment_method_id,
                payment_link_id=model.payment_link_id,
            ),
            metadata=dict(model.extra_metadata or {}),
            error_message=model.error_message,
            card_last4=model.card_last4,
            card_brand=model.card_brand,
            payment_link_url=model.payment_link_url,
            expires_at=model.expires_at,
            receipt_status=ReceiptStatus(model.receipt_status or ReceiptStatus.NONE.value),
            receipt_sent_at=model.receipt_sent_at,
            version=model.version or 0,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _mutable_values(self, entity: Payment) -> dict:
        ids = entity.gateway_ids
        return {
            "customer_ref": entity.customer_ref,
            "refunded_amount": entity.refunded_amount,
            "refund_count": entity.refund_count,
            "status": entity.status.value,
            "payment_intent_id": ids.payment_intent_id,
            "charge_id": ids.charge_id,
            "customer_id": ids.customer_id,
            "payment_method_id": ids.payment_method_id,
            "payment_link_id": ids.payment_link_id,
            "payment_link_url": entity.payment_link_url,
            "expires_at": entity.expires_at,
            "error_message": entity.error_message,
            "card_last4": entity.card_last4,
            "card_brand": entity.card_brand,
            "extra_metadata": entity.metadata,
        }

    def _column_values(self, entity: Payment, **extra) -> dict:
        values = {**self._mutable_values(entity), **extra}
        return {getattr(PaymentModel, key): value for key, value in values.items()}

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        now = datetime.now(timezone.utc)
        return PaymentModel(
            id=entity.id,
            order_ref=entity.order_ref,
            amount=entity.amount,
            currency=entity.currency,
            method=entity.method.value,
            receipt_status=entity.receipt_status.value,
            receipt_sent_at=entity.receipt_sent_at,
            version=entity.version,
            created_at=entity.created_at or now,
            updated_at=entity.updated_at or now,
            **self._mutable_values(entity),
        )

    @staticmethod
    def _identifier(payment: Payment) -> str:
        ids = payment.gateway_ids
        return ids.payment_intent_id or ids.payment_link_id or ids.charge_id or payment.order_ref

    async def _find_existing(self, payment: Payment) -> Optional[Payment]:
        ids = payment.gateway_ids
        clauses = []
        if ids.payment_intent_id:
            clauses.append(PaymentModel.payment_intent_id == ids.payment_intent_id)
        if ids.payment_link_id:
            clauses.append(PaymentModel.payment_link_id == ids.payment_link_id)
        if ids.charge_id:
            clauses.append(PaymentModel.charge_id == ids.charge_id)
        if not clauses:
            return None
        result = await self.session.execute(select(PaymentModel).where(or_(*clauses)).limit(1))
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        existing = await self._find_existing(payment)
        if existing is not None:
            raise DuplicatePaymentException(self._identifier(payment), existing)
        try:
            db_payment = self._to_model(payment)
            self.session.add(db_payment)
            await self.session.flush()
            await self.session.refresh(db_payment)
        except IntegrityError as e:
            # 并发插入：事务已失效，由调用方在新事务中读取已有记录
            logger.warning(
                "payment_create_conflict",
                order_ref=payment.order_ref,
                identifier=self._identifier(payment),
            )
            raise DuplicatePaymentException(self._identifier(payment)) from e
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            order_ref=db_payment.order_ref,
            method=db_payment.method,
            amount=db_payment.amount,
        )
        return self._to_entity(db_payment)

    async def _get_one(self, *criteria, for_update: bool = False) -> Optional[Payment]:
        stmt = select(PaymentModel).where(*criteria).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        """根据ID获取支付"""
        return await self._get_one(PaymentModel.id == payment_id)

    async def get_for_update(self, payment_id: int) -> Optional[Payment]:
        return await self._get_one(PaymentModel.id == payment_id, for_update=True)

    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Payment]:
        return await self._get_one(PaymentModel.payment_intent_id == payment_intent_id)

    async def get_by_charge_id(self, charge_id: str) -> Optional[Payment]:
        return await self._get_one(PaymentModel.charge_id == charge_id)

    async def get_by_payment_link_id(self, payment_link_id: str) -> Optional[Payment]:
        return await self._get_one(PaymentModel.payment_link_id == payment_link_id)

    async def list_by_order(self, order_ref: str) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.order_ref == order_ref)
            .order_by(PaymentModel.created_at.asc(), PaymentModel.id.asc())
            .execution_options(populate_existing=True)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_pending_links(self, order_ref: Optional[str] = None, limit: int = 500) -> List[Payment]:
        query = select(PaymentModel).where(
            PaymentModel.method == PaymentMethod.PAYMENT_LINK.value,
            PaymentModel.status == PaymentStatus.PENDING.value,
        )
        if order_ref is not None:
            query = query.where(PaymentModel.order_ref == order_ref)
        query = query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc()).limit(limit)
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return [self._to_entity(p) for p in result.scalars().all()]

    async def count_attempts(self, order_ref: str, methods: Iterable[PaymentMethod]) -> int:
        result = await self.session.execute(
            select(func.count(PaymentModel.id)).where(
                PaymentModel.order_ref == order_ref,
                PaymentModel.method.in_([PaymentMethod(m).value for m in methods]),
            )
        )
        return int(result.scalar_one())

    async def list_by_receipt_status(self, status: ReceiptStatus, limit: int = 100) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.receipt_status == ReceiptStatus(status).value)
            .order_by(PaymentModel.updated_at.asc())
            .limit(limit)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录（WHERE version = 当前版本）"""
        now = datetime.now(timezone.utc)
        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment.id, PaymentModel.version == payment.version)
            .values(self._column_values(payment, version=payment.version + 1, updated_at=now))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "payment_version_conflict",
                payment_id=payment.id,
                expected_version=payment.version,
            )
            raise ConcurrentPaymentUpdateException(payment.id, payment.version)

        payment.version += 1
        payment.updated_at = now
        logger.info(
            "payment_updated",
            payment_id=payment.id,
            order_ref=payment.order_ref,
            status=payment.status.value,
            refunded_amount=payment.refunded_amount,
            version=payment.version,
        )
        return payment

    async def claim_receipt(self, payment_id: int, *, allow_resend: bool = False) -> bool:
        claimable = [ReceiptStatus.NONE.value, ReceiptStatus.FAILED.value]
        if allow_resend:
            claimable.append(ReceiptStatus.SENT.value)
        result = await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id, PaymentModel.receipt_status.in_(claimable))
            .values(receipt_status=ReceiptStatus.SENDING.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim_refund(self, payment_id: int, expected_version: int, *, stale_before: datetime) -> bool:
        result = await self.session.execute(
            update(PaymentModel)
            .where(
                PaymentModel.id == payment_id,
                PaymentModel.version == expected_version,
                or_(
                    PaymentModel.refund_claimed_at.is_(None),
                    PaymentModel.refund_claimed_at < stale_before,
                ),
            )
            .values(refund_claimed_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_refund_claim(self, payment_id: int) -> None:
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(refund_claimed_at=None)
            .execution_options(synchronize_session=False)
        )

    async def set_receipt_status(self, payment_id: int, status: ReceiptStatus) -> None:
        values = {"receipt_status": ReceiptStatus(status).value}
        if status == ReceiptStatus.SENT:
            values["receipt_sent_at"] = datetime.now(timezone.utc)
        await self.session.execute(
            update(PaymentModel)
            .where(PaymentModel.id == payment_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
