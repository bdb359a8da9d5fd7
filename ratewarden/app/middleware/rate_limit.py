"""Rate limiting middleware.

Thin HTTP adapter over ``RateGuard``: builds request metadata, asks the
guard for an admission decision and translates it into RateLimit-* headers
(draft-ietf-httpapi-ratelimit-headers), a 429 JSON body and Retry-After.

What happens when the counting backend is unavailable, or an injected
resolver fails, is an explicit policy of this adapter (``fail_closed``),
never a default of the engine.
"""

import inspect
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from ratewarden.app.core.config import settings
from ratewarden.app.core.logging import get_log_context, get_logger
from ratewarden.app.core.utils import short_hash
from ratewarden.app.exceptions import BackendUnavailableError, StrategyError
from ratewarden.app.services.identity import RequestMetadata
from ratewarden.app.services.rate_limit.guard import RateGuard
from ratewarden.app.services.rate_limit.models import Admission, Decision

logger = get_logger(__name__)

GUARD_STATE_KEY = "rate_guard"


@dataclass(frozen=True)
class LimitInfo:
    """Details handed to ``on_limit_reached`` callbacks."""
    tier: str
    limit: Optional[int]
    current: int
    retry_after: int

    def to_dict(self) -> dict:
        return asdict(self)


LimitReachedCallback = Callable[[Request, LimitInfo], Union[None, Awaitable[None]]]


def request_metadata(request: Request) -> RequestMetadata:
    """Extract the fields the resolvers need from a Starlette request."""
    return RequestMetadata(
        headers=request.headers,
        client_host=request.client.host if request.client else None,
        path=request.url.path,
        method=request.method,
    )


def rate_limit_headers(limit: Optional[int], decision: Decision) -> dict[str, str]:
    """Build RateLimit-* headers; unbounded tiers get none."""
    if limit is None or decision.remaining is None:
        return {}
    return {
        "RateLimit-Limit": str(limit),
        "RateLimit-Remaining": str(decision.remaining),
        "RateLimit-Reset": str(decision.reset_epoch_seconds),
    }


def too_many_requests_body(admission: Admission) -> dict[str, Any]:
    return {
        "error": "Too many requests",
        "message": f"Rate limit exceeded for tier '{admission.tier}'",
        "tier": admission.tier,
        "limit": admission.limit,
        "current": admission.decision.current,
        "retry_after": admission.decision.retry_after_seconds,
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce tier-based rate limits on requests.

    The guard is either passed in or looked up on ``app.state.rate_guard``
    at request time, so it can be created inside the application lifespan.
    """

    def __init__(
        self,
        app,
        guard: Optional[RateGuard] = None,
        fail_closed: Optional[bool] = None,
        exempt_paths: Optional[Iterable[str]] = None,
        on_limit_reached: Optional[LimitReachedCallback] = None,
        enabled: Optional[bool] = None,
    ):
        super().__init__(app)
        if on_limit_reached is not None and not callable(on_limit_reached):
            raise TypeError("on_limit_reached must be callable")
        self.guard = guard
        self.fail_closed = settings.rate_limit_fail_closed if fail_closed is None else fail_closed
        self.exempt_paths = frozenset(
            settings.rate_limit_exempt_paths if exempt_paths is None else exempt_paths
        )
        self.on_limit_reached = on_limit_reached
        self.enabled = settings.rate_limit_enabled if enabled is None else enabled

    def _get_guard(self, request: Request) -> RateGuard:
        if self.guard is not None:
            return self.guard
        guard = getattr(request.app.state, GUARD_STATE_KEY, None)
        if guard is None:
            raise RuntimeError(
                "RateLimitMiddleware has no guard: pass one or set app.state.rate_guard"
            )
        return guard

    async def _notify_limit_reached(self, request: Request, admission: Admission) -> None:
        if self.on_limit_reached is None:
            return
        info = LimitInfo(
            tier=admission.tier,
            limit=admission.limit,
            current=admission.decision.current,
            retry_after=admission.decision.retry_after_seconds,
        )
        result = self.on_limit_reached(request, info)
        if inspect.isawaitable(result):
            await result

    def _admission_failure_response(
        self, request: Request, error: Union[BackendUnavailableError, StrategyError]
    ) -> Optional[Response]:
        """Apply the configured failure policy; None means let the request through.

        Strategy failures are logged at error level under either policy.
        """
        context = get_log_context(path=request.url.path, method=request.method)
        if self.fail_closed:
            logger.error(
                f"Rate limiting fail-closed triggered: {error.message}. Request denied.",
                extra=context,
            )
            return JSONResponse(
                status_code=error.status_code,
                content={
                    "error": "rate_limit_unavailable",
                    "message": "Rate limiting is temporarily unavailable. Please try again later.",
                },
            )

        log = logger.error if isinstance(error, StrategyError) else logger.warning
        log(
            f"Rate limiting fail-open triggered: {error.message}. "
            "Request allowed without rate limit check.",
            extra=context,
        )
        return None

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self.enabled or request.url.path in self.exempt_paths:
            return await call_next(request)

        guard = self._get_guard(request)

        try:
            admission = await guard.admit(request_metadata(request))
        except (BackendUnavailableError, StrategyError) as e:
            failure = self._admission_failure_response(request, e)
            if failure is not None:
                return failure
            return await call_next(request)

        request.state.rate_limit = admission
        headers = rate_limit_headers(admission.limit, admission.decision)

        if not admission.allowed:
            await self._notify_limit_reached(request, admission)
            retry_after = admission.decision.retry_after_seconds
            logger.warning(
                "Rate limit exceeded",
                extra=get_log_context(
                    identity_source=admission.identity_source.value,
                    key_hash=short_hash(admission.identity_key),
                    tier=admission.tier,
                    limit=admission.limit,
                    path=request.url.path,
                    method=request.method,
                    retry_after=retry_after,
                ),
            )
            headers["Retry-After"] = str(retry_after)
            return JSONResponse(
                status_code=429,
                content=too_many_requests_body(admission),
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
