from __future__ import annotations

import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from marketplace_ledger.core.metrics import request_metrics
from marketplace_ledger.core.request_context import clear_request_context, set_request_context

logger = logging.getLogger(__name__)


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        user_id = _extract_user_id(request)
        set_request_context(request_id=request_id, user_id=user_id)

        status_code = 500
        endpoint = request.url.path
        method = request.method
        response = None

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            shop_id = getattr(request.state, "shop_id", None) or _extract_shop_id(request)
            duration_ms = round((time.perf_counter() - start) * 1000, 2)

            set_request_context(shop_id=shop_id)
            request_metrics.observe(endpoint=endpoint, method=method, status_code=status_code, duration_ms=duration_ms)

            logger.info(
                "request completed",
                extra={
                    "request_id": request_id,
                    "shop_id": shop_id,
                    "user_id": user_id,
                    "endpoint": endpoint,
                    "method": method,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                },
            )

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            clear_request_context()


def _extract_shop_id(request: Request) -> str | None:
    shop = request.path_params.get("shop_id")
    if shop:
        return str(shop)
    return None


def _extract_user_id(request: Request) -> str | None:
    user_id = (request.headers.get("X-User-ID") or "").strip()
    return user_id or None
