"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import PaymentModel
from .order import SalesOrderModel
from .webhook_event import ProcessedWebhookEventModel

__all__ = [
    "Base",
    "metadata",
    "PaymentModel",
    "SalesOrderModel",
    "ProcessedWebhookEventModel",
]
