"""
Payment DTOs (Pydantic v2) used at application boundaries.

Gateway DTOs carry what the adapter returns; request/result DTOs are what the
lifecycle service accepts from and hands back to the API and task layers.
All amounts are integer minor units.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from domain.payment.entity import PaymentMethod, PaymentStatus, ReceiptStatus
from domain.order.entity import OrderPaymentStatus


# ----------------------------------------------------------------------
# Gateway DTOs
# ----------------------------------------------------------------------
class GatewayPaymentLink(BaseModel):
    link_id: str
    url: str
    active: bool = True


class GatewayIntent(BaseModel):
    intent_id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    latest_charge_id: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def requires_action(self) -> bool:
        return self.status == "requires_action"


class GatewayCustomer(BaseModel):
    customer_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class GatewayPaymentMethod(BaseModel):
    payment_method_id: str
    customer_id: Optional[str] = None
    type: str = "card"
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


class GatewaySetupIntent(BaseModel):
    setup_intent_id: str
    client_secret: Optional[str] = None
    status: str


class GatewayCharge(BaseModel):
    charge_id: str
    payment_intent_id: Optional[str] = None
    amount: int
    amount_refunded: int = 0
    status: str
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None


class GatewayRefund(BaseModel):
    refund_id: str
    amount: int
    status: str
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class GatewayCheckoutSession(BaseModel):
    session_id: str
    status: Optional[str] = None
    payment_status: str
    payment_intent_id: Optional[str] = None
    payment_link_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_total: Optional[int] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == "paid"


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------
class CreatePaymentLinkRequest(BaseModel):
    return_url: Optional[str] = None


class ChargeRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)
    save_card: bool = False
    customer_id: Optional[str] = None
    # Optional caller-supplied key; otherwise derived from the order and attempt
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class RefundPaymentRequest(BaseModel):
    amount: Optional[int] = Field(default=None, gt=0, description="Minor units; omit to refund the remainder")
    reason: Literal["requested_by_customer", "duplicate", "fraudulent"] = "requested_by_customer"


class SavePaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------
class GatewayIdsDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    payment_link_id: Optional[str] = None


class PaymentDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_ref: str
    customer_ref: Optional[str] = None
    amount: int
    refunded_amount: int
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    gateway_ids: GatewayIdsDTO
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    payment_link_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    receipt_status: ReceiptStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PaymentLinkResult(BaseModel):
    payment_id: int
    payment_link_id: str
    url: str
    amount: int
    currency: str
    expires_at: Optional[datetime] = None
    reused: bool = False


class ChargeResult(BaseModel):
    payment_id: int
    payment_intent_id: str
    # raw gateway intent status (succeeded / processing / requires_action ...)
    status: str
    client_secret: Optional[str] = None
    requires_action: bool = False


class RefundOutcome(BaseModel):
    payment_id: int
    refund_id: str
    amount: int
    refunded_amount: int
    status: str
    payment_status: PaymentStatus


class CancelResult(BaseModel):
    payment_id: int
    status: PaymentStatus
    cancelled: bool


class SyncResult(BaseModel):
    payment_id: int
    status: PaymentStatus
    changed: bool
    gateway_status: Optional[str] = None


class ReceiptResult(BaseModel):
    payment_id: int
    receipt_status: ReceiptStatus
    sent: bool


class OrderTotalsDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_ref: str
    order_total: int
    paid_amount: int
    balance_due: int
    payment_status: OrderPaymentStatus
    overpaid_amount: int = 0


class WebhookResult(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: Literal["applied", "duplicate", "noop", "ignored", "rejected"]
    payment_id: Optional[int] = None


class PaymentReceipt(BaseModel):
    """Receipt notification payload."""
    payment_id: int
    order_ref: str
    order_no: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    amount: int
    amount_display: str
    currency: str
    method: PaymentMethod
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    paid_at: Optional[datetime] = None
