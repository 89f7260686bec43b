"""
Request ID 中间件
生成或透传追踪ID，并通过 contextvars 传递给日志系统和异步任务
"""
import uuid
from contextvars import ContextVar
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

import structlog


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Request ID 追踪中间件

    上游可通过 X-Request-ID 或 X-Correlation-ID 传入追踪ID；
    响应头始终回写 X-Request-ID。
    """

    HEADER_NAME = "X-Request-ID"
    FALLBACK_HEADERS = ("X-Correlation-ID",)

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(self.HEADER_NAME)
        for header in self.FALLBACK_HEADERS:
            if request_id:
                break
            request_id = request.headers.get(header)
        if not request_id:
            request_id = str(uuid.uuid4())

        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=self._client_ip(request),
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers[self.HEADER_NAME] = request_id
        return response

    @staticmethod
    def _client_ip(request: Request) -> str:
        # 代理场景优先取 X-Forwarded-For 的第一个地址
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
        return request.client.host if request.client else "unknown"


def get_request_id() -> Optional[str]:
    """当前请求的 request_id；不在请求上下文中返回 None"""
    return request_id_var.get()
