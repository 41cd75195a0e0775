import json
import logging
import time
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from . import redis_client as rc
from .responses import error_body

logger = logging.getLogger("hotel_booking.access")

RATE_LIMIT_EXEMPT = ("/docs", "/openapi.json", "/health", "/payments/webhook")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id

        start = time.perf_counter()
        line = {"request_id": request_id, "method": request.method, "path": request.url.path}
        try:
            response: Response = await call_next(request)
        except Exception:
            line.update(status=500, duration_ms=round((time.perf_counter() - start) * 1000, 2))
            logger.error(json.dumps(line))
            raise

        response.headers["X-Request-Id"] = request_id
        line.update(
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
            user_sub=getattr(request.state, "user_sub", None),
            user_roles=getattr(request.state, "user_roles", None),
        )
        logger.info(json.dumps(line))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, max_per_minute: int = 120):
        super().__init__(app)
        self.max_per_minute = max_per_minute

    async def dispatch(self, request: Request, call_next):
        if request.url.path in RATE_LIMIT_EXEMPT or request.url.path.startswith("/docs/"):
            return await call_next(request)

        ip = request.client.host if request.client else "unknown"
        epoch_minute = int(time.time() // 60)
        key = f"rl:ip:{ip}:{epoch_minute}"

        try:
            count = await rc.redis_client.incr(key)
            if count == 1:
                await rc.redis_client.expire(key, 70)
        except Exception as e:
            logger.warning("rate limiter unavailable: %s", e)
            return await call_next(request)

        if count > self.max_per_minute:
            request_id = getattr(request.state, "request_id", None)
            return error_body(429, "RATE_LIMITED", "Too many requests", request_id)

        return await call_next(request)
