"""
收据通知适配器
"""
from __future__ import annotations

from typing import Optional

from application.ports.notifications import ReceiptNotifier
from core.settings import PaymentSettings, payment_settings

from .receipts import HttpReceiptNotifier, LoggingReceiptNotifier


def build_receipt_notifier(settings: Optional[PaymentSettings] = None) -> ReceiptNotifier:
    """配置了通知地址时走 HTTP 发送，否则仅记录日志"""
    cfg = (settings or payment_settings).notifications
    if cfg.receipt_endpoint:
        return HttpReceiptNotifier(
            endpoint=cfg.receipt_endpoint,
            api_key=cfg.api_key,
            timeout=cfg.timeout,
            max_retries=cfg.max_retries,
        )
    return LoggingReceiptNotifier()


__all__ = ["build_receipt_notifier", "HttpReceiptNotifier", "LoggingReceiptNotifier"]
