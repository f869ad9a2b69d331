"""Request tracking middleware for correlation IDs and request logging."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import time
import uuid

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"


class RequestTrackingMiddleware(BaseHTTPMiddleware):
    """Attach a correlation ID to every request and log its outcome.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID4 is
    generated. The ID is stored on ``request.state.request_id`` and echoed in
    the response headers.
    """

    # Polled frequently by clients; successful calls are logged at DEBUG.
    DEBUG_PATHS = frozenset(["/probe", "/favicon.ico"])
    # Status polling; state changes on the same path stay at INFO.
    DEBUG_GET_PATHS = frozenset(["/model"])

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        path = request.url.path
        is_debug_path = path in self.DEBUG_PATHS or (
            request.method == "GET" and path in self.DEBUG_GET_PATHS
        )
        log = logger.debug if is_debug_path else logger.info
        log(f"Request started: {request.method} {path} [request_id={request_id}]")

        start_time = time.monotonic()
        try:
            response = await call_next(request)
        except asyncio.CancelledError:
            duration = time.monotonic() - start_time
            logger.warning(
                f"Request cancelled by client: {request.method} {path} "
                f"duration={duration:.3f}s [request_id={request_id}]",
            )
            return JSONResponse(
                content={"error": "request cancelled by client"},
                status_code=499,
                headers={REQUEST_ID_HEADER: request_id},
            )
        except Exception:
            duration = time.monotonic() - start_time
            logger.exception(
                f"Request failed: {request.method} {path} "
                f"duration={duration:.3f}s [request_id={request_id}]",
            )
            raise

        duration = time.monotonic() - start_time
        response.headers[REQUEST_ID_HEADER] = request_id

        quiet = is_debug_path and response.status_code < 400
        (logger.debug if quiet else logger.info)(
            f"Request completed: {request.method} {path} "
            f"status={response.status_code} duration={duration:.3f}s "
            f"[request_id={request_id}]",
        )
        return response
