"""
Gateway Middleware

- CorrelationIdMiddleware: binds the GitHub delivery id (or an explicit
  X-Correlation-ID) so gateway and worker log lines of one delivery match
- RequestLoggingMiddleware: one line per request with event, status and duration
- exception handlers: AppException -> its own status, anything else -> 500

Webhook responses are only ever 2xx, 4xx from validation, or 5xx; GitHub
redelivers on 5xx, so nothing here turns a delivery away on volume.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from reviewbot.core.exceptions import AppException, ErrorCode
from reviewbot.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"
DELIVERY_HEADER = "X-GitHub-Delivery"
EVENT_HEADER = "X-GitHub-Event"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(
            request.headers.get(CORRELATION_HEADER) or request.headers.get(DELIVERY_HEADER)
        )
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each finished request; rejected ones (>= 400) at warning"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        fields = {"method": request.method, "path": request.url.path}
        event = request.headers.get(EVENT_HEADER)
        if event:
            fields["github_event"] = event

        try:
            response = await call_next(request)
        except Exception:
            fields["duration_seconds"] = round(time.perf_counter() - started, 4)
            logger.error("Request failed", extra_data=fields, exc_info=True)
            raise

        fields["status_code"] = response.status_code
        fields["duration_seconds"] = round(time.perf_counter() - started, 4)
        if response.status_code < 400:
            logger.info("Request handled", extra_data=fields)
        else:
            logger.warning("Request rejected", extra_data=fields)
        return response


def _error_response(status_code: int, content: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=content,
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{exc.error_code.value} on {request.url.path}",
        extra_data={"error_code": exc.error_code.value, "message": exc.message, "details": exc.details},
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 without internals; for a webhook this makes GitHub redeliver"""
    logger.error(
        f"Unhandled {type(exc).__name__} on {request.url.path}",
        extra_data={"error": str(exc)},
        exc_info=exc,
    )
    return _error_response(
        500,
        {
            "error": {
                "code": ErrorCode.INTERNAL_ERROR.value,
                "message": "An unexpected error occurred",
                "details": {},
            }
        },
    )


def setup_middleware(app: FastAPI) -> None:
    # last added runs first: the correlation id is bound before the request is logged
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
