"""
Factory for payment gateway clients.
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import PaymentGateway
from core.settings import PaymentSettings, payment_settings


def build_payment_gateway(settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    """Build the gateway adapter; the caller owns it and must ``aclose()`` it."""
    from .stripe_client import StripeGateway

    return StripeGateway(settings or payment_settings)
