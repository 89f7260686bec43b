"""
Stripe event payload -> domain GatewayEvent translation.

Only the fields the reconciler acts on are lifted out; the raw ``data.object``
travels in ``extensions`` for logging and debugging.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

from domain.payment.events import (
    ChargeDisputeCreated,
    ChargeRefunded,
    CheckoutSessionCompleted,
    GatewayEvent,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    UnknownGatewayEvent,
)


def _ref(value: Any) -> Optional[str]:
    """Expandable field: either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, Mapping):
        return value.get("id")
    return str(value)


def _metadata(obj: Mapping[str, Any]) -> dict[str, str]:
    return {str(k): str(v) for k, v in (obj.get("metadata") or {}).items()}


def card_details(charge: Any) -> tuple[Optional[str], Optional[str]]:
    """(last4, brand) from an expanded charge, if present."""
    if not isinstance(charge, Mapping):
        return None, None
    card = (charge.get("payment_method_details") or {}).get("card") or {}
    return card.get("last4"), card.get("brand")


def _intent_charge(obj: Mapping[str, Any]) -> Any:
    latest = obj.get("latest_charge")
    if latest is not None:
        return latest
    # older API versions carry the charge in charges.data
    charges = (obj.get("charges") or {}).get("data") or []
    return charges[0] if charges else None


def _payment_intent_succeeded(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    charge = _intent_charge(obj)
    last4, brand = card_details(charge)
    return PaymentIntentSucceeded(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        payment_intent_id=obj["id"],
        amount=int(obj.get("amount_received") or obj.get("amount") or 0),
        charge_id=_ref(charge),
        customer_id=_ref(obj.get("customer")),
        payment_method_id=_ref(obj.get("payment_method")),
        card_last4=last4,
        card_brand=brand,
        metadata=_metadata(obj),
    )


def _payment_intent_failed(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    error = obj.get("last_payment_error") or {}
    return PaymentIntentFailed(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        payment_intent_id=obj["id"],
        failure_code=error.get("decline_code") or error.get("code"),
        failure_message=error.get("message"),
        metadata=_metadata(obj),
    )


def _payment_intent_canceled(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    return PaymentIntentCanceled(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        payment_intent_id=obj["id"],
        metadata=_metadata(obj),
    )


def _checkout_session(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    amount_total = obj.get("amount_total")
    return CheckoutSessionCompleted(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        session_id=obj["id"],
        payment_link_id=_ref(obj.get("payment_link")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        customer_id=_ref(obj.get("customer")),
        payment_status=str(obj.get("payment_status") or ""),
        amount_total=int(amount_total) if amount_total is not None else None,
        metadata=_metadata(obj),
    )


def _charge_refunded(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    return ChargeRefunded(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        charge_id=obj["id"],
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount=int(obj.get("amount") or 0),
        amount_refunded=int(obj.get("amount_refunded") or 0),
    )


def _dispute_created(event_id: str, event_type: str, obj: Mapping[str, Any]) -> GatewayEvent:
    return ChargeDisputeCreated(
        event_id=event_id,
        event_type=event_type,
        extensions=obj,
        dispute_id=obj["id"],
        charge_id=_ref(obj.get("charge")),
        payment_intent_id=_ref(obj.get("payment_intent")),
        amount=int(obj.get("amount") or 0),
        reason=obj.get("reason"),
    )


_TRANSLATORS: dict[str, Callable[[str, str, Mapping[str, Any]], GatewayEvent]] = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "payment_intent.canceled": _payment_intent_canceled,
    "checkout.session.completed": _checkout_session,
    "checkout.session.async_payment_succeeded": _checkout_session,
    "checkout.session.async_payment_failed": _checkout_session,
    "charge.refunded": _charge_refunded,
    "charge.dispute.created": _dispute_created,
}


def translate_event(event: Mapping[str, Any]) -> GatewayEvent:
    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    obj = (event.get("data") or {}).get("object") or {}
    translator = _TRANSLATORS.get(event_type)
    if translator is None or not obj.get("id"):
        return UnknownGatewayEvent(event_id=event_id, event_type=event_type, extensions=obj)
    return translator(event_id, event_type, obj)
