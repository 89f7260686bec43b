"""
Receipt notification port.

Implementations raise NotificationError on failure; callers record the failure
and retry on a schedule without touching the payment's status.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable

from application.dtos.payments import PaymentReceipt


@runtime_checkable
class ReceiptNotifier(Protocol):

    async def send_receipt(self, receipt: PaymentReceipt) -> None: ...

    async def aclose(self) -> None: ...
