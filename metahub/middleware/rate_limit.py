import math

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from metahub.errors import RateLimited
from metahub.persistence.models import now_utc
from metahub.services.rate_limit_store import InMemoryRateLimitStore, RateLimitStore

# Provider deliveries and probes are never throttled here
_EXEMPT_PREFIXES = ("/webhooks", "/api/healthz", "/api/metrics")
_WINDOW_SECONDS = 60


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-client fixed-window limiter over a shared :class:`RateLimitStore`.

    The store is taken from ``app.state.rate_limits`` when the lifespan set one,
    so the API limiter and the AI cooldowns count in the same backend. Hits run
    in the threadpool, off the event loop.
    """

    def __init__(self, app, requests_per_minute: int = 120, store: RateLimitStore | None = None):
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self._store = store
        self._fallback = InMemoryRateLimitStore()

    def _store_for(self, request: Request) -> RateLimitStore:
        if self._store is not None:
            return self._store
        return getattr(request.app.state, "rate_limits", None) or self._fallback

    def _check(self, request: Request) -> None:
        client_ip = request.client.host if request.client else "unknown"
        key = f"api:{client_ip}"
        window = self._store_for(request).hit(key, _WINDOW_SECONDS)
        if not window.allowed(self.requests_per_minute):
            raise RateLimited(key, window.retry_after(now_utc()))

    async def dispatch(self, request: Request, call_next):
        if request.url.path.startswith(_EXEMPT_PREFIXES):
            return await call_next(request)
        try:
            await run_in_threadpool(self._check, request)
        except RateLimited as exc:
            return JSONResponse(
                status_code=429,
                content={"detail": "Too many requests"},
                headers={"Retry-After": str(max(math.ceil(exc.retry_after), 1))},
            )
        return await call_next(request)
