"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

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
from domain.payment.events import GatewayEvent


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the remote payment processor.

    Amounts are integer minor units and are validated before any network call.
    Mutating calls accept an idempotency key and are never retried by the
    adapter; read calls may be retried with backoff.
    """

    provider: str

    async def create_payment_link(
        self,
        *,
        amount: int,
        currency: str,
        description: str,
        metadata: dict[str, str],
        return_url: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayPaymentLink: ...

    async def deactivate_payment_link(self, link_id: str) -> GatewayPaymentLink: ...

    async def retrieve_payment_link(self, link_id: str) -> GatewayPaymentLink: ...

    async def list_link_sessions(self, link_id: str) -> list[GatewayCheckoutSession]: ...

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
    ) -> GatewayIntent: ...

    async def get_or_create_customer(
        self,
        *,
        email: Optional[str],
        name: Optional[str],
        metadata: dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> GatewayCustomer: ...

    async def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod: ...

    async def detach_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod: ...

    async def list_customer_payment_methods(self, customer_id: str) -> list[GatewayPaymentMethod]: ...

    async def create_setup_intent(self, customer_id: str) -> GatewaySetupIntent: ...

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent: ...

    async def retrieve_charge(self, charge_id: str) -> GatewayCharge: ...

    async def retrieve_payment_method(self, payment_method_id: str) -> GatewayPaymentMethod: ...

    async def process_refund(
        self,
        *,
        charge_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> GatewayRefund: ...

    def parse_webhook(self, payload: bytes, signature_header: Optional[str]) -> GatewayEvent: ...

    async def aclose(self) -> None: ...
