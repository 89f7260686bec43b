"""
Stripe adapter for the PaymentGateway port, using the official stripe-python SDK.

Notes on SDK usage:
- One ``stripe.StripeClient`` per adapter instance, owned by the application
  root; ``stripe.api_key`` is never set globally.
- The SDK's own network retries are disabled (``max_network_retries=0``):
  mutating calls carry an idempotency key and are not retried here, read
  calls go through ``BasePaymentClient._retry``.
- Webhook verification uses ``stripe.Webhook.construct_event`` with the
  ``Stripe-Signature`` header.
"""
from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import stripe

from application.dtos.payments import (
    GatewayCharge,
    GatewayCheckoutSession,
    GatewayCustomer,
    GatewayIntent,
    GatewayPaymentLink,
    GatewayPaymentMethod,
    GatewayRefund,
    GatewaySetupIntent,
)
from core.logging_config import get_logger
from core.settings import PaymentSettings
from domain.payment.events import GatewayEvent
from domain.payment.exceptions import WebhookSignatureError
from domain.payment.money import normalize_currency
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import STRIPE_TRANSIENT_ERRORS, map_stripe_error
from infrastructure.external.payments.stripe_events import card_details, translate_event


logger = get_logger(__name__)

T = TypeVar("T")


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def _ref(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None) or str(value)


def _str_metadata(metadata: Optional[dict[str, Any]]) -> dict[str, str]:
    # Stripe metadata values must be strings
    return {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}


def _request_options(idempotency_key: Optional[str]) -> dict[str, str]:
    return {"idempotency_key": idempotency_key} if idempotency_key else {}


def build_stripe_client(
    settings: PaymentSettings, http_client: Optional[stripe.HTTPXClient] = None
) -> stripe.StripeClient:
    """Construct the SDK client with httpx transport and configured timeouts."""
    if not settings.stripe.secret_key:
        raise RuntimeError("PAYMENT__STRIPE__SECRET_KEY not configured")
    if http_client is None:
        t = settings.timeouts
        http_client = stripe.HTTPXClient(
            timeout=httpx.Timeout(connect=t.connect, read=t.read, write=t.write, timeout=t.total)
        )
    return stripe.StripeClient(
        settings.stripe.secret_key,
        stripe_version=settings.stripe.api_version,
        max_network_retries=0,
        http_client=http_client,
    )


class StripeGateway(BasePaymentClient):
    provider = "stripe"
    transient_errors = STRIPE_TRANSIENT_ERRORS

    def __init__(self, settings: PaymentSettings, client: Optional[stripe.StripeClient] = None):
        super().__init__(
            timeouts=settings.timeouts.model_dump(),
            retry={"max": settings.retry.max, "base": settings.retry.base_backoff},
        )
        self._settings = settings
        self._http_client: Optional[stripe.HTTPXClient] = None
        if client is None:
            self._http_client = stripe.HTTPXClient(timeout=self.timeouts)
            client = build_stripe_client(settings, self._http_client)
        self._client = client
        # stripe>=12 groups services under ``v1``
        self._services = getattr(self._client, "v1", self._client)

    async def aclose(self) -> None:
        """Close the httpx transport this adapter created; injected clients belong to the caller."""
        if self._http_client is not None:
            await self._http_client.close_async()
            self._http_client = None

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]], *, read: bool = False) -> T:
        try:
            if read:
                return await self._retry(fn)
            return await fn()
        except stripe.StripeError as exc:
            error = map_stripe_error(exc, operation=operation)
            logger.warning(
                "gateway_call_failed",
                provider=self.provider,
                operation=operation,
                reason=error.reason.value,
                provider_code=error.provider_code,
                provider_message=error.provider_message,
            )
            raise error from exc

    # ------------------------------------------------------------------
    # Mapping helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _to_link(obj: Any) -> GatewayPaymentLink:
        data = _as_dict(obj)
        return GatewayPaymentLink(link_id=data["id"], url=data.get("url") or "", active=bool(data.get("active", True)))

    @staticmethod
    def _to_intent(obj: Any) -> GatewayIntent:
        data = _as_dict(obj)
        charge = data.get("latest_charge")
        last4, brand = card_details(charge)
        error = data.get("last_payment_error") or {}
        return GatewayIntent(
            intent_id=data["id"],
            status=data.get("status") or "",
            amount=int(data.get("amount") or 0),
            currency=data.get("currency") or "",
            client_secret=data.get("client_secret"),
            customer_id=_ref(data.get("customer")),
            payment_method_id=_ref(data.get("payment_method")),
            latest_charge_id=_ref(charge),
            card_last4=last4,
            card_brand=brand,
            last_error_code=error.get("decline_code") or error.get("code"),
            last_error_message=error.get("message"),
            metadata=_str_metadata(data.get("metadata")),
        )

    @staticmethod
    def _to_payment_method(obj: Any) -> GatewayPaymentMethod:
        data = _as_dict(obj)
        card = data.get("card") or {}
        return GatewayPaymentMethod(
            payment_method_id=data["id"],
            customer_id=_ref(data.get("customer")),
            type=data.get("type") or "card",
            card_brand=card.get("brand"),
            card_last4=card.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )

    # ------------------------------------------------------------------
    # Payment links
    # ------------------------------------------------------------------
    async def create_payment_link(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        return_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentLink:
        amount = self._validate_amount(amount)
        meta = _str_metadata(metadata)
        params: dict[str, Any] = {
            "line_items": [
                {
                    "price_data": {
                        "currency": normalize_currency(currency),
                        "product_data": {"name": description or "Invoice Payment"},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }
            ],
            "metadata": meta,
            # the intent carries the order too so payment_intent.* events can be matched
            "payment_intent_data": {"metadata": {**meta, "source": "payment_link"}},
            "restrictions": {"completed_sessions": {"limit": 1}},
        }
        redirect_url = return_url or self._settings.success_url
        if redirect_url:
            params["after_completion"] = {"type": "redirect", "redirect": {"url": redirect_url}}

        link = await self._call(
            "create_payment_link",
            lambda: self._services.payment_links.create_async(
                params=params, options=_request_options(idempotency_key)
            ),
        )
        result = self._to_link(link)
        self._log("payment_link_created", link_id=result.link_id, amount=amount, currency=currency)
        return result

    async def deactivate_payment_link(self, link_id: str) -> GatewayPaymentLink:
        link = await self._call(
            "deactivate_payment_link",
            lambda: self._services.payment_links.update_async(link_id, params={"active": False}),
        )
        self._log("payment_link_deactivated", link_id=link_id)
        return self._to_link(link)

    async def retrieve_payment_link(self, link_id: str) -> GatewayPaymentLink:
        link = await self._call(
            "retrieve_payment_link",
            lambda: self._services.payment_links.retrieve_async(link_id),
            read=True,
        )
        return self._to_link(link)

    async def list_link_sessions(self, link_id: str) -> list[GatewayCheckoutSession]:
        result = await self._call(
            "list_link_sessions",
            lambda: self._services.checkout.sessions.list_async(params={"payment_link": link_id, "limit": 10}),
            read=True,
        )
        sessions = []
        for item in _as_dict(result).get("data") or []:
            data = _as_dict(item)
            sessions.append(
                GatewayCheckoutSession(
                    session_id=data["id"],
                    status=data.get("status"),
                    payment_status=data.get("payment_status") or "",
                    payment_intent_id=_ref(data.get("payment_intent")),
                    payment_link_id=_ref(data.get("payment_link")),
                    customer_id=_ref(data.get("customer")),
                    amount_total=data.get("amount_total"),
                )
            )
        return sessions

    # ------------------------------------------------------------------
    # Intents / customers / payment methods
    # ------------------------------------------------------------------
    async def create_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: dict[str, str],
        save_payment_method: bool = False,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayIntent:
        amount = self._validate_amount(amount)
        params: dict[str, Any] = {
            "amount": amount,
            "currency": normalize_currency(currency),
            "confirm": True,
            # cards only, no redirect-based methods
            "payment_method_types": ["card"],
            "customer": customer_id,
            "payment_method": payment_method_id,
            "metadata": {**_str_metadata(metadata), "source": "charge"},
            "expand": ["latest_charge"],
        }
        if description:
            params["description"] = description
        if save_payment_method and customer_id:
            params["setup_future_usage"] = "off_session"

        intent = await self._call(
            "create_payment_intent",
            lambda: self._services.payment_intents.create_async(
                params=params, options=_request_options(idempotency_key)
            ),
        )
        result = self._to_intent(intent)
        self._log("payment_intent_created", intent_id=result.intent_id, status=result.status, amount=amount)
        return result

    async def get_or_create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer:
        if email:
            existing = await self._call(
                "list_customers",
                lambda: self._services.customers.list_async(params={"email": email, "limit": 1}),
                read=True,
            )
            data = _as_dict(existing).get("data") or []
            if data:
                found = _as_dict(data[0])
                return GatewayCustomer(customer_id=found["id"], email=found.get("email"), name=found.get("name"))

        params: dict[str, Any] = {"metadata": _str_metadata(metadata)}
        if email:
            params["email"] = email
        if name:
            params["name"] = name
        customer = _as_dict(
            await self._call(
                "create_customer",
                lambda: self._services.customers.create_async(
                    params=params, options=_request_options(idempotency_key)
                ),
            )
        )
        self._log("customer_created", customer_id=customer["id"])
        return GatewayCustomer(customer_id=customer["id"], email=customer.get("email"), name=customer.get("name"))

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod:
        """Upsert-or-fetch: a method already attached to ``customer_id`` is returned as is."""
        current = await self.retrieve_payment_method(payment_method_id)
        if current.customer_id == customer_id:
            return current

        attached = await self._call(
            "attach_payment_method",
            lambda: self._services.payment_methods.attach_async(
                payment_method_id, params={"customer": customer_id}
            ),
        )
        customer = _as_dict(
            await self._call(
                "retrieve_customer",
                lambda: self._services.customers.retrieve_async(customer_id),
                read=True,
            )
        )
        if not (customer.get("invoice_settings") or {}).get("default_payment_method"):
            await self._call(
                "update_customer",
                lambda: self._services.customers.update_async(
                    customer_id,
                    params={"invoice_settings": {"default_payment_method": payment_method_id}},
                ),
            )
        self._log("payment_method_attached", payment_method_id=payment_method_id, customer_id=customer_id)
        return self._to_payment_method(attached)

    async def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        detached = await self._call(
            "detach_payment_method",
            lambda: self._services.payment_methods.detach_async(payment_method_id),
        )
        self._log("payment_method_detached", payment_method_id=payment_method_id)
        return self._to_payment_method(detached)

    async def list_customer_payment_methods(self, customer_id: str) -> list[GatewayPaymentMethod]:
        result = await self._call(
            "list_payment_methods",
            lambda: self._services.payment_methods.list_async(params={"customer": customer_id, "type": "card"}),
            read=True,
        )
        return [self._to_payment_method(pm) for pm in _as_dict(result).get("data") or []]

    async def create_setup_intent(self, customer_id: str) -> GatewaySetupIntent:
        data = _as_dict(
            await self._call(
                "create_setup_intent",
                lambda: self._services.setup_intents.create_async(
                    params={"customer": customer_id, "payment_method_types": ["card"]}
                ),
            )
        )
        return GatewaySetupIntent(
            setup_intent_id=data["id"],
            client_secret=data.get("client_secret"),
            status=data.get("status") or "",
        )

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        intent = await self._call(
            "retrieve_intent",
            lambda: self._services.payment_intents.retrieve_async(intent_id, params={"expand": ["latest_charge"]}),
            read=True,
        )
        return self._to_intent(intent)

    async def retrieve_charge(self, charge_id: str) -> GatewayCharge:
        data = _as_dict(
            await self._call(
                "retrieve_charge",
                lambda: self._services.charges.retrieve_async(charge_id),
                read=True,
            )
        )
        last4, brand = card_details(data)
        return GatewayCharge(
            charge_id=data["id"],
            payment_intent_id=_ref(data.get("payment_intent")),
            amount=int(data.get("amount") or 0),
            amount_refunded=int(data.get("amount_refunded") or 0),
            status=data.get("status") or "",
            card_last4=last4,
            card_brand=brand,
        )

    async def retrieve_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod:
        pm = await self._call(
            "retrieve_payment_method",
            lambda: self._services.payment_methods.retrieve_async(payment_method_id),
            read=True,
        )
        return self._to_payment_method(pm)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------
    async def process_refund(
        self,
        *,
        charge_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund:
        if not charge_id and not payment_intent_id:
            raise ValueError("process_refund requires charge_id or payment_intent_id")
        amount = self._validate_amount(amount)
        params: dict[str, Any] = {"metadata": _str_metadata(metadata)}
        if charge_id:
            params["charge"] = charge_id
        else:
            params["payment_intent"] = payment_intent_id
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["reason"] = reason

        data = _as_dict(
            await self._call(
                "process_refund",
                lambda: self._services.refunds.create_async(
                    params=params, options=_request_options(idempotency_key)
                ),
            )
        )
        refund = GatewayRefund(
            refund_id=data["id"],
            amount=int(data.get("amount") or 0),
            status=data.get("status") or "",
            charge_id=_ref(data.get("charge")) or charge_id,
            payment_intent_id=_ref(data.get("payment_intent")) or payment_intent_id,
        )
        self._log("refund_created", refund_id=refund.refund_id, amount=refund.amount, status=refund.status)
        return refund

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def parse_webhook(self, payload: bytes, signature_header: Optional[str]) -> GatewayEvent:
        secret = self._settings.stripe.webhook_secret
        if not secret:
            raise WebhookSignatureError("Webhook secret not configured")
        if not signature_header:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature_header,
                secret=secret,
                tolerance=self._settings.webhook.tolerance_seconds,
            )
            # once verified, parse the raw JSON rather than the StripeObject
            event = json.loads(payload)
        except (stripe.SignatureVerificationError, ValueError) as exc:
            logger.warning("webhook_signature_invalid", provider=self.provider, error=str(exc))
            raise WebhookSignatureError() from exc
        return translate_event(event)
