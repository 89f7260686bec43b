"""
Payment specific codes, caller-safe gateway error reasons and provider status mapping.
"""
from __future__ import annotations

from enum import Enum, IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    SIGNATURE_ERROR = 60002
    CARD_DECLINED = 60005
    REQUIRES_ACTION = 60006

    # Local ledger errors (61xxx)
    PAYMENT_NOT_FOUND = 61000
    ORDER_NOT_FOUND = 61001
    DUPLICATE_PAYMENT = 61002
    RECONCILIATION_CONFLICT = 61003
    CONCURRENT_UPDATE = 61004
    NOTIFICATION_FAILED = 61005


class GatewayErrorReason(str, Enum):
    """The only gateway failure reasons ever shown to callers."""

    CARD_DECLINED = "card_declined"
    REQUIRES_ACTION = "requires_action"
    PROCESSING_ERROR = "processing_error"


# PaymentIntent.status -> local payment status (None keeps the payment pending)
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "failed",
        "requires_confirmation": None,
        "requires_action": None,
        "processing": None,
        "requires_capture": None,
        "succeeded": "succeeded",
        "canceled": "cancelled",
    },
}


def map_provider_status(provider: str, provider_status: str | None) -> str | None:
    """Provider status -> local payment status; None while the payment is still in flight."""
    return PROVIDER_STATUS_TO_INTERNAL.get(provider, {}).get(provider_status)
