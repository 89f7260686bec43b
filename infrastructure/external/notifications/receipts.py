"""
收据通知客户端

HttpReceiptNotifier 把收据载荷 POST 到外部通知服务（邮件/短信由对方负责）：
- 超时控制
- 瞬时错误（超时、网络错误、429/5xx）自动重试
- 任何最终失败统一抛出 NotificationError
"""
from __future__ import annotations

from typing import Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from application.dtos.payments import PaymentReceipt
from core.logging_config import get_logger
from domain.payment.exceptions import NotificationError


logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class _RetryableStatus(Exception):
    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"Transient status {status_code}")


class HttpReceiptNotifier:
    """通过 HTTP 接口发送支付收据"""

    def __init__(
        self,
        endpoint: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = endpoint
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "Order-Payments/1.0",
        }
        if api_key:
            self.default_headers["Authorization"] = f"Bearer {api_key}"
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """获取或创建HTTP客户端"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self.default_headers,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send_once(self, receipt: PaymentReceipt) -> None:
        response = await self.client.post(
            self.endpoint,
            json=receipt.model_dump(mode="json"),
            headers={"Idempotency-Key": f"receipt-{receipt.payment_id}"},
        )
        if response.status_code in RETRY_STATUS_CODES:
            raise _RetryableStatus(response.status_code)
        if response.is_error:
            raise NotificationError(
                receipt.payment_id,
                f"Receipt endpoint returned {response.status_code}",
            )

    async def send_receipt(self, receipt: PaymentReceipt) -> None:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=self.retry_delay, min=self.retry_delay, max=self.retry_delay * 8),
            retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError, _RetryableStatus)),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self._send_once(receipt)
        except NotificationError:
            raise
        except (httpx.HTTPError, _RetryableStatus) as exc:
            raise NotificationError(receipt.payment_id, f"Receipt delivery failed: {exc}") from exc
        logger.info("receipt_sent", payment_id=receipt.payment_id, order_ref=receipt.order_ref)


class LoggingReceiptNotifier:
    """未配置通知服务时仅记录日志"""

    async def send_receipt(self, receipt: PaymentReceipt) -> None:
        logger.info(
            "receipt_logged",
            payment_id=receipt.payment_id,
            order_ref=receipt.order_ref,
            amount=receipt.amount_display,
            currency=receipt.currency,
            customer_email=receipt.customer_email,
        )

    async def aclose(self) -> None:
        return None
