"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Every key is read with the ``PAYMENT__`` prefix, e.g. ``PAYMENT__STRIPE__SECRET_KEY``
or ``PAYMENT__LINK_TTL_HOURS``.
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field

from domain.order.entity import OverpaymentPolicy


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 10.0
    write: float = 10.0
    total: float = 30.0


class PaymentRetry(BaseModel):
    """Retry policy for read-only gateway calls. Mutating calls are never retried."""
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    api_version: Optional[str] = None


class NotificationSettings(BaseModel):
    # When unset, receipts are only logged
    receipt_endpoint: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = 10.0
    max_retries: int = 2


class PaymentSettings(BaseSettings):
    default_currency: str = "usd"
    link_ttl_hours: int = 24
    success_url: Optional[str] = None
    overpayment_policy: OverpaymentPolicy = OverpaymentPolicy.FLAG
    # optimistic-lock retries when reconciling a single event
    reconcile_max_attempts: int = 3
    # an unfinished refund claim blocks other refunds of the payment until it expires
    refund_claim_ttl_seconds: int = 300
    expired_link_batch_size: int = 500
    receipt_retry_batch_size: int = 100

    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
