"""HTTP middleware: request ids, error mapping and slow request warnings."""

import time
import uuid
from datetime import datetime
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import WorkflowEngineError, create_error_response, get_status_code_for_error
from .logging import clear_logging_context, get_logger, set_logging_context

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id, logs it, and maps uncaught errors to JSON.

    An incoming ``X-Request-ID`` is reused so ids can be traced across
    services. Handlers normally convert ``WorkflowEngineError`` themselves;
    anything that escapes still gets the standard error body.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        start_time = time.time()
        set_logging_context(request_id=request_id, user_id=request.headers.get("x-user-id", "-"))

        try:
            response = await call_next(request)
        except WorkflowEngineError as e:
            logger.warning(f"{request.method} {request.url.path} failed: {e.error_code} - {e.message}")
            response = JSONResponse(status_code=get_status_code_for_error(e), content=create_error_response(e))
        except Exception as e:
            logger.error(f"{request.method} {request.url.path} raised {type(e).__name__}: {e}", exc_info=True)
            response = JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                    "request_id": request_id
                }
            )
        else:
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"({time.time() - start_time:.3f}s)"
            )
        finally:
            clear_logging_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SlowRequestMiddleware(BaseHTTPMiddleware):
    """Warns about slow requests and reports the response time in a header.

    Runs and resumes block until the execution ends or pauses, so a
    long request usually means a slow step rather than a slow server.
    """

    def __init__(self, app, slow_request_threshold: float = 5.0):
        super().__init__(app)
        self.slow_request_threshold = slow_request_threshold

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        response = await call_next(request)

        duration = time.time() - start_time
        if duration > self.slow_request_threshold:
            logger.warning(
                f"Slow request: {request.method} {request.url.path} took {duration:.3f}s "
                f"(threshold {self.slow_request_threshold}s)"
            )

        response.headers["X-Response-Time"] = f"{duration:.3f}s"
        return response
