"""
Correlation ID Middleware

Tags every request with a correlation id. The id is set in the logging
context before the route runs, so trigger pipelines and flow walks spawned
by the request log under the same id.
"""

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from ...utils.logger import get_logger, set_correlation_id
from ...utils.idgen import generate_correlation_id

logger = get_logger(__name__)

HEADER = "X-Correlation-Id"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Correlation-Id or mint one, and echo it back"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        correlation_id = request.headers.get(HEADER) or generate_correlation_id()
        request.state.correlation_id = correlation_id
        set_correlation_id(correlation_id)

        response = await call_next(request)
        response.headers[HEADER] = correlation_id
        if response.status_code >= 500:
            logger.warning(f"{request.method} {request.url.path} -> {response.status_code}")
        return response
