"""Request correlation and access logging middleware"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_SECONDS = 2.0


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each HTTP request with an id and log its outcome"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Honour an upstream id so traces line up across the gateway
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.perf_counter()

        response: Response = await call_next(request)

        process_time = time.perf_counter() - start_time
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = str(round(process_time, 4))

        fields = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "process_time": round(process_time, 4),
            "client_host": request.client.host if request.client else "unknown",
        }
        if process_time > SLOW_REQUEST_SECONDS:
            logger.warning("Slow request detected", extra=fields)
        else:
            logger.info("Request completed", extra=fields)

        return response
