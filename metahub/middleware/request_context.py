import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from metahub.monitoring.metrics import REQUEST_COUNT, REQUEST_LATENCY

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.trace_id = request.headers.get("x-trace-id", str(uuid.uuid4()))
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", None) or "unmatched"
        REQUEST_COUNT.labels(path=path, method=request.method, status=str(response.status_code)).inc()
        REQUEST_LATENCY.labels(path=path, method=request.method).observe(elapsed)
        if response.status_code >= 500:
            logger.error(
                "%s %s -> %d", request.method, request.url.path, response.status_code,
                extra={"trace_id": request.state.trace_id},
            )

        response.headers["x-trace-id"] = request.state.trace_id
        return response
