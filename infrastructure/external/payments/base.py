"""
Base payment client implementing shared concerns: timeouts, read retries, logging.

Concrete providers subclass and implement the PaymentGateway operations.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from domain.payment.money import ensure_minor_units


logger = get_logger(__name__)

T = TypeVar("T")


class BasePaymentClient:
    provider: str = "base"
    # read-only calls are retried on these
    transient_errors: tuple[type[BaseException], ...] = (httpx.TimeoutException, httpx.TransportError)

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"connect": 1.0, "read": 10.0, "write": 10.0, "total": 30.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    @property
    def timeouts(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeouts_cfg["connect"],
            read=self._timeouts_cfg["read"],
            write=self._timeouts_cfg["write"],
            timeout=self._timeouts_cfg["total"],
        )

    async def aclose(self) -> None:
        """Release provider resources; subclasses override when they hold any."""

    async def _retry(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Retry an idempotent read with exponential backoff. Never used for mutations."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(self.transient_errors),
            reraise=True,
        ):
            with attempt:
                return await fn()
        raise AssertionError("unreachable")  # pragma: no cover

    # Helpers
    @staticmethod
    def _validate_amount(amount: Optional[int], *, field: str = "amount") -> Optional[int]:
        if amount is None:
            return None
        return ensure_minor_units(amount, field=field)

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
