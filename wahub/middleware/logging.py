"""
Logging middleware for request/response logging.

Logs all HTTP requests with timing and context, and feeds the HTTP
request metrics.
"""
import time
import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from wahub.routes.metrics import track_request

logger = structlog.get_logger()


def _route_template(request: Request) -> str:
    # templated path keeps metric label cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all HTTP requests with timing and context.

    Adds: org_id, user_id, route, duration_ms, status to every log.
    """

    async def dispatch(self, request: Request, call_next):
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            self._logger(request).error(
                "request_failed",
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration * 1000, 2),
                error=str(e)
            )
            track_request(request.method, _route_template(request), 500, duration)
            raise

        duration = time.perf_counter() - start_time

        self._logger(request).info(
            "request_completed",
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )
        track_request(request.method, _route_template(request), response.status_code, duration)

        return response

    def _logger(self, request: Request):
        # org/user are set by the auth dependency while the request runs
        org_id = getattr(request.state, "org_id", None)
        user_id = getattr(request.state, "user_id", None)
        return logger.bind(
            org_id=str(org_id) if org_id else None,
            user_id=str(user_id) if user_id else None,
            route=request.url.path,
            method=request.method,
        )
