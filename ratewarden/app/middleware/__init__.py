"""Middleware package for ratewarden."""

from ratewarden.app.middleware.rate_limit import (
    LimitInfo,
    RateLimitMiddleware,
    rate_limit_headers,
    request_metadata,
)

__all__ = [
    "LimitInfo",
    "RateLimitMiddleware",
    "rate_limit_headers",
    "request_metadata",
]
