"""
Stripe SDK errors mapped onto the caller-safe GatewayError taxonomy.
"""
from __future__ import annotations

import stripe

from domain.payment.exceptions import GatewayError
from shared.codes.payment_codes import GatewayErrorReason


# only these errors count as transient (read-only calls retry them)
STRIPE_TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
)

# CardError codes meaning the cardholder must authenticate
_ACTION_CODES = frozenset({"authentication_required"})


def map_stripe_error(exc: stripe.StripeError, *, operation: str) -> GatewayError:
    code = getattr(exc, "code", None)
    if isinstance(exc, stripe.CardError):
        reason = (
            GatewayErrorReason.REQUIRES_ACTION
            if code in _ACTION_CODES
            else GatewayErrorReason.CARD_DECLINED
        )
    else:
        reason = GatewayErrorReason.PROCESSING_ERROR
    return GatewayError(
        reason,
        operation=operation,
        provider_code=code,
        provider_message=getattr(exc, "user_message", None) or str(exc),
        retryable=isinstance(exc, STRIPE_TRANSIENT_ERRORS),
    )
