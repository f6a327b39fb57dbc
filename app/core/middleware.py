"""
FastAPI Middleware

Provides request/response middleware for:
- Correlation ID injection
- Request logging (with PII masking)
- Global error handling
- Security headers
"""
import re
import time
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.core.logging import (
    get_logger,
    set_correlation_id,
    get_correlation_id
)
from app.core.exceptions import AppException

logger = get_logger(__name__)

# מספרי טלפון בתוך ה-path (לדוגמה חיפוש לפי טלפון) - מוסתרים בלוגים
_PHONE_IN_PATH_RE = re.compile(r"(\+?\d{3})\d{4}(\d{3})")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware to add correlation ID to requests"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


def _mask_path_pii(path: str) -> str:
    """מיסוך מספרי טלפון ב-URL path - מחליף 4 ספרות אמצעיות ב-****"""
    return _PHONE_IN_PATH_RE.sub(r"\1****\2", path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware to log requests and responses (with PII masking)"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        start_time = time.time()
        safe_path = _mask_path_pii(request.url.path)

        logger.info(
            f"Request started: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "client_host": request.client.host if request.client else None,
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {request.method} {safe_path}",
                extra_data={
                    "method": request.method,
                    "path": safe_path,
                    "duration_seconds": round(time.time() - start_time, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        log_level = "info" if response.status_code < 400 else "warning"
        getattr(logger, log_level)(
            f"Request completed: {request.method} {safe_path}",
            extra_data={
                "method": request.method,
                "path": safe_path,
                "status_code": response.status_code,
                "duration_seconds": round(time.time() - start_time, 4),
            }
        )
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    כותרות אבטחה לכל תשובה. HSTS מוחל רק מחוץ למצב DEBUG
    כדי לא לחסום פיתוח מקומי ב-HTTP.
    """

    def __init__(self, app: FastAPI, *, debug: bool = False) -> None:
        super().__init__(app)
        self._debug = debug

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        if not self._debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Handle application exceptions"""
    logger.warning(
        f"Application exception: {exc.error_code.value}",
        extra_data={
            "error_code": exc.error_code.value,
            "message": exc.message,
            "details": exc.details,
            "path": request.url.path,
        }
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"X-Correlation-ID": get_correlation_id()}
    )


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Handle unexpected exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "ERR_1000",
                "message": "An unexpected error occurred",
                "details": {}
            }
        },
        headers={"X-Correlation-ID": get_correlation_id()}
    )


def setup_middleware(app: FastAPI) -> None:
    """Setup all middleware for the application"""
    from app.core.config import settings

    # ב-Starlette ה-middleware האחרון שנוסף הוא ה-outermost
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup exception handlers"""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
