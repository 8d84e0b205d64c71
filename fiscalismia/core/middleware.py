"""
Fiscalismia - Middleware

- Request logging with correlation IDs
- Rate limiting for expensive and sensitive endpoints
"""

import logging
import math
import time
import uuid
from collections import defaultdict
from contextvars import ContextVar
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from .config import API_ADDRESS

logger = logging.getLogger(__name__)

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


def get_request_id() -> str:
    """Get the current request ID from context."""
    return request_id_var.get()


def get_client_ip(request: Request) -> str:
    """Extract client IP, handling proxies."""
    client_ip = request.headers.get(
        "X-Forwarded-For", request.client.host if request.client else "unknown"
    )
    if "," in client_ip:
        client_ip = client_ip.split(",")[0].strip()
    return client_ip


# =============================================================================
# Request Logging Middleware
# =============================================================================


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every request with a request ID (X-Request-ID header), method, path,
    status code, duration and client IP.

    The request ID is also set in a context variable for downstream logging.
    For streaming responses the duration covers the time to first byte.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)
        client_ip = get_client_ip(request)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"[{request_id}] Unhandled exception: {type(e).__name__}: {e}",
                extra={
                    "request_id": request_id,
                    "path": request.url.path,
                    "method": request.method,
                    "client_ip": client_ip,
                },
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000

        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        if response.status_code >= 500:
            log_level = logging.ERROR

        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )

        response.headers["X-Request-ID"] = request_id
        return response


# =============================================================================
# Rate Limiting Middleware
# =============================================================================


class RateLimitConfig:
    """Configuration for rate limiting a specific path pattern."""

    def __init__(
        self,
        path_prefix: str,
        requests_per_minute: int = 60,
        exact: bool = False,
    ):
        self.path_prefix = path_prefix
        self.requests_per_minute = requests_per_minute
        self.exact = exact
        self.window_seconds = 60

    def matches(self, path: str) -> bool:
        if self.exact:
            return path == self.path_prefix
        return path.startswith(self.path_prefix)


def default_rate_limits(multiplicator: float = 1.0) -> list[RateLimitConfig]:
    """Default limits; the multiplicator scales every limit up or down."""

    def scaled(limit: int) -> int:
        return max(1, math.ceil(limit * multiplicator))

    return [
        # Triggers a Lambda invocation, S3 downloads and a full DB reload
        RateLimitConfig(f"{API_ADDRESS}/admin/raw_data_etl", requests_per_minute=scaled(3)),
        RateLimitConfig(f"{API_ADDRESS}/db_hc", requests_per_minute=scaled(30)),
        RateLimitConfig("/", requests_per_minute=scaled(60), exact=True),
    ]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Simple in-memory rate limiter using a sliding window.

    Suitable for single-instance deployments. Limits are applied per
    client IP and path prefix.
    """

    def __init__(self, app: ASGIApp, configs: list[RateLimitConfig] | None = None):
        super().__init__(app)
        self.configs = configs if configs is not None else default_rate_limits()
        self._request_counts: dict[tuple[str, str], list[datetime]] = defaultdict(list)

    def _find_config(self, path: str) -> RateLimitConfig | None:
        for config in self.configs:
            if config.matches(path):
                return config
        return None

    def _clean_old_requests(self, key: tuple[str, str], window: timedelta) -> list[datetime]:
        cutoff = datetime.now(timezone.utc) - window
        self._request_counts[key] = [ts for ts in self._request_counts[key] if ts > cutoff]
        return self._request_counts[key]

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        config = self._find_config(request.url.path)
        if config is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        key = (config.path_prefix, client_ip)
        recent_requests = self._clean_old_requests(key, timedelta(seconds=config.window_seconds))

        if len(recent_requests) >= config.requests_per_minute:
            logger.warning(
                f"Rate limit exceeded for {client_ip} on {config.path_prefix}",
                extra={"client_ip": client_ip, "path": request.url.path},
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": "Too many requests. Please try again later.",
                    "status_code": 429,
                },
                headers={"Retry-After": str(config.window_seconds)},
            )

        self._request_counts[key].append(datetime.now(timezone.utc))
        return await call_next(request)
