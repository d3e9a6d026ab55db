"""
FastAPI Middleware for the AML Screening API

Provides CORS configuration, request logging, and error handling that maps
the screening error taxonomy onto HTTP status codes.
"""

import os
import re
import time
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from aml_errors import (
    AMLError,
    EDDError,
    InternalMatchingError,
    ListUnavailableError,
    MatchNotFoundError,
    ScreeningNotFoundError,
    ScreeningStateError,
    ScreeningTimeout,
    ValidationError,
)
from company_checks import CompanyRegistryError
from config_manager import ConfigurationError
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]

# Most specific class first
STATUS_BY_ERROR = [
    (ValidationError, 422),
    (ScreeningNotFoundError, 404),
    (MatchNotFoundError, 404),
    (EDDError, 409),
    (ScreeningStateError, 409),
    (ScreeningTimeout, 504),
    (ListUnavailableError, 503),
    (CompanyRegistryError, 502),
    (InternalMatchingError, 500),
]


def _build_cors_regex_pattern(allowed_origins: List[str]) -> tuple:
    """Build regex pattern for CORS from allowed origins list.

    Args:
        allowed_origins: List of allowed origins (may include wildcards like https://*.example.com)

    Returns:
        Tuple of (combined_regex_pattern or None, exact_origins list)
    """
    regex_patterns = []
    exact_origins = []

    for origin in allowed_origins:
        if "*" in origin:
            regex_patterns.append(re.escape(origin).replace(r"\*", r"[\w-]+"))
        else:
            exact_origins.append(origin)

    if not regex_patterns:
        return None, exact_origins

    combined_regex = "|".join(f"({p})" for p in regex_patterns + [re.escape(o) for o in exact_origins])
    return combined_regex, exact_origins


def setup_cors(app: FastAPI, allowed_origins: Optional[List[str]] = None) -> None:
    """Configure CORS middleware for the application.

    Origins come from api.cors_origins in config.yaml and can be
    overridden via the CORS_ORIGINS environment variable (comma-separated).
    Wildcard subdomains (https://*.example.com) are supported.
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",")]
    elif not allowed_origins:
        allowed_origins = DEFAULT_CORS_ORIGINS

    combined_regex, exact_origins = _build_cors_regex_pattern(allowed_origins)
    origin_kwargs: Dict[str, Any] = (
        {"allow_origin_regex": combined_regex} if combined_regex else {"allow_origins": exact_origins}
    )
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
        **origin_kwargs,
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized paths."""

    async def dispatch(self, request: Request, call_next: Callable):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        # Sanitize path to prevent log injection
        sanitized_path = sanitize_for_logging(str(request.url.path))
        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitized_path,
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        field: Field that caused the error (optional)
        suggestion: How to fix the error (optional)
        details: Extra context such as the failing entity id (optional)

    Returns:
        JSONResponse with standardized error format
    """
    error_detail: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if field:
        error_detail["field"] = field
    if suggestion:
        error_detail["suggestion"] = suggestion
    if details:
        error_detail["details"] = details

    return JSONResponse(status_code=status_code, content={"error": error_detail})


def status_for_error(exc: AMLError) -> int:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def aml_exception_handler(request: Request, exc: AMLError) -> JSONResponse:
    """Handler for screening errors.

    Args:
        request: FastAPI request object
        exc: AMLError subclass that was raised

    Returns:
        Standardized error response
    """
    request_id = getattr(request.state, "request_id", "unknown")
    status_code = status_for_error(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "AML error: type=%s code=%s message=%s request_id=%s",
        type(exc).__name__,
        exc.code,
        sanitize_for_logging(exc.message),
        request_id,
    )

    if isinstance(exc, ValidationError):
        return create_error_response(
            code=exc.code,
            message=exc.message,
            status_code=status_code,
            field=exc.field,
            suggestion=exc.suggestion,
        )

    return create_error_response(
        code=exc.code,
        message=exc.message,
        status_code=status_code,
        details=exc.details(),
    )


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Configuration error: %s", sanitize_for_logging(str(exc)))
    return create_error_response(
        code="CONFIGURATION_ERROR",
        message="Service configuration is invalid. Please contact administrator.",
        status_code=503,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions.

    Args:
        request: FastAPI request object
        exc: HTTPException that was raised

    Returns:
        Standardized error response
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(AMLError, aml_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
