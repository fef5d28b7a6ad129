"""
HTTP middleware and exception handlers.

Every request gets a correlation id that is echoed back and attached to all
log records. Request logs carry no bodies; query values that may hold
credentials are redacted, and probe traffic is logged at debug level.
"""
import time
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.exceptions import AppException, ErrorCode
from app.core.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"

_REDACTED = "****"
_SENSITIVE_QUERY_KEYS = frozenset({"token", "access_token", "signature", "secret", "key"})
_QUIET_PATHS = frozenset({"/health", "/health/ready"})


def redact_query(params: dict[str, str]) -> dict[str, str]:
    return {
        name: _REDACTED if name.lower() in _SENSITIVE_QUERY_KEYS else value
        for name, value in params.items()
    }


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One record per request with status and duration; failures re-raised"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_data = {
            "method": request.method,
            "path": request.url.path,
            "query_params": redact_query(dict(request.query_params)),
            "client_host": request.client.host if request.client else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                extra_data={
                    **request_data,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True,
            )
            raise

        request_data["status_code"] = response.status_code
        request_data["duration_seconds"] = round(time.perf_counter() - started, 4)
        message = f"{request.method} {request.url.path} -> {response.status_code}"

        if response.status_code >= 500:
            logger.error(message, extra_data=request_data)
        elif response.status_code >= 400:
            logger.warning(message, extra_data=request_data)
        elif request.url.path in _QUIET_PATHS:
            logger.debug(message, extra_data=request_data)
        else:
            logger.info(message, extra_data=request_data)
        return response


def _error_response(status_code: int, body: dict) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={CORRELATION_HEADER: get_correlation_id()},
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        },
    )
    return _error_response(exc.status_code, exc.to_dict())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 with a generic message; the exception itself only goes to the log"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True,
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
    # added last runs first: the correlation id is set before request logging
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
