"""
Rate limiting middleware backed by the store's rate-limit buckets.
"""

import hashlib
import logging
from typing import Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..services.rate_limit_service import RateLimiter, RateLimitResult
from ..utils.exceptions import RateLimitError, VenueBookingError
from .error_handler import STATUS_MAP, error_body

logger = logging.getLogger(__name__)

# (method, path prefix, operation class); first match wins
OPERATION_CLASSES = (
    ("POST", "/api/v1/booking/response/", "booking_response"),
    ("POST", "/api/v1/booking/deposit/", "deposit_upload"),
    ("POST", "/api/v1/booking", "booking_submit"),
)

EXEMPT_PATHS = {"/", "/health", "/metrics", "/docs", "/redoc", "/openapi.json"}


def operation_class_for(method: str, path: str) -> Optional[str]:
    """Map a request to the operation class it is counted against, if any."""
    for rule_method, prefix, operation_class in OPERATION_CLASSES:
        if method == rule_method and (path == prefix.rstrip("/") or path.startswith(prefix)):
            return operation_class
    return None


def client_identity(request: Request, trusted_proxies: Iterable[str] = ()) -> str:
    """
    Client IP plus a short fingerprint of identifying headers.

    Forwarding headers are only honoured when the direct peer is one of
    ``trusted_proxies``; the client is then the right-most untrusted hop.
    """
    trusted = set(trusted_proxies)
    peer = request.client.host if request.client else "unknown"
    client_ip = peer

    if peer in trusted:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
            untrusted = [hop for hop in hops if hop not in trusted]
            if untrusted:
                client_ip = untrusted[-1]
        else:
            client_ip = request.headers.get("x-real-ip") or peer

    fingerprint_source = "|".join(
        request.headers.get(header, "")
        for header in ("user-agent", "accept-language")
    )
    fingerprint = hashlib.sha256(fingerprint_source.encode("utf-8")).hexdigest()[:12]
    return f"{client_ip}:{fingerprint}"


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """Count mutating public requests per client and operation class."""

    def __init__(self, app, enabled: bool = True, trusted_proxies: Iterable[str] = ()):
        super().__init__(app)
        self.enabled = enabled
        self.trusted_proxies = frozenset(trusted_proxies)

    async def dispatch(self, request: Request, call_next):
        limiter: Optional[RateLimiter] = getattr(request.app.state, "rate_limiter", None)
        if not self.enabled or limiter is None or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        operation_class = operation_class_for(request.method, request.url.path)
        if operation_class is None:
            return await call_next(request)

        identity = client_identity(request, self.trusted_proxies)
        try:
            result = await limiter.check_and_increment(identity, operation_class)
        except VenueBookingError as e:
            # Limiter configured to fail closed and the store is down
            return JSONResponse(
                status_code=STATUS_MAP[e.error_code],
                content=error_body(e, getattr(request.state, "request_id", "")),
            )

        if not result.allowed:
            logger.info(f"Rate limit exceeded for {operation_class} from {identity}")
            return self._create_rate_limit_response(request, result, limiter.window_seconds)

        response = await call_next(request)
        self._add_rate_limit_headers(response, result)
        return response

    def _create_rate_limit_response(
        self, request: Request, result: RateLimitResult, window: int
    ) -> JSONResponse:
        error = RateLimitError(limit=result.limit, window=window, retry_after=result.retry_after)
        response = JSONResponse(
            status_code=429,
            content=error_body(error, getattr(request.state, "request_id", "")),
            headers={"Retry-After": str(result.retry_after)},
        )
        self._add_rate_limit_headers(response, result)
        return response

    def _add_rate_limit_headers(self, response, result: RateLimitResult) -> None:
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(result.reset_at.timestamp()))
