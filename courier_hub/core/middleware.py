"""
FastAPI Middleware

- Request context: correlation ID and acting profile bound for logging
- Request logging (health probes at DEBUG)
- Domain error rendering
- Security headers; live dispatch data is never cached
- Per-establishment rate limiting on the intake webhook
"""
import re
import time
from collections import defaultdict
from typing import Callable
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from courier_hub.core.logging import (
    get_logger,
    set_actor_id,
    set_correlation_id,
    get_correlation_id
)
from courier_hub.core.exceptions import AppException, ConsistencyViolation, ErrorCode

logger = get_logger(__name__)

_INTAKE_PATH_RE = re.compile(r"/webhooks/intake/(?P<establishment_id>[^/]+)")
_PROBE_PATHS = ("/health", "/health/ready")


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation ID and the X-Actor-Id profile to the request context"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        correlation_id = set_correlation_id(request.headers.get("X-Correlation-ID"))
        request.state.correlation_id = correlation_id
        set_actor_id(request.headers.get("X-Actor-Id"))

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One line per request; failures are logged with the trace and re-raised"""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable
    ) -> Response:
        started = time.perf_counter()
        method, path = request.method, request.url.path
        quiet = path in _PROBE_PATHS

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Request failed: {method} {path}",
                extra_data={
                    "method": method,
                    "path": path,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    "error": str(e),
                },
                exc_info=True
            )
            raise

        extra = {
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration_seconds": round(time.perf_counter() - started, 4),
        }
        if request.query_params:
            extra["query_params"] = dict(request.query_params)

        if quiet and response.status_code < 400:
            logger.debug(f"{method} {path}", extra_data=extra)
        elif response.status_code < 400:
            logger.info(f"{method} {path}", extra_data=extra)
        else:
            logger.warning(f"{method} {path} -> {response.status_code}", extra_data=extra)
        return response


def _error_response(status_code: int, code: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details or {}}},
        headers={"X-Correlation-ID": get_correlation_id()},
    )


async def app_exception_handler(
    request: Request,
    exc: AppException
) -> JSONResponse:
    """Render domain exceptions; consistency violations are logged as CRITICAL"""
    extra = {
        "error_code": exc.error_code.value,
        "message": exc.message,
        "details": exc.details,
        "path": request.url.path,
    }
    if isinstance(exc, ConsistencyViolation):
        logger.critical(f"Consistency violation: {exc.message}", extra_data=extra)
    else:
        logger.warning(f"Request refused: {exc.error_code.value}", extra_data=extra)

    response = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
    response.headers["X-Correlation-ID"] = get_correlation_id()
    return response


async def generic_exception_handler(
    request: Request,
    exc: Exception
) -> JSONResponse:
    """Unexpected errors: full details in the log, a generic body to the client"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}",
        extra_data={
            "exception_type": type(exc).__name__,
            "message": str(exc),
            "path": request.url.path,
        },
        exc_info=True
    )
    return _error_response(500, ErrorCode.INTERNAL_ERROR.value, "An unexpected error occurred")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Security headers on every response.

    HSTS and the CSP upgrade are skipped in DEBUG so local HTTP keeps working.
    API responses carry ``Cache-Control: no-store``: queues, balances and
    delivery states go stale within seconds.
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
        response.headers["Referrer-Policy"] = "same-origin"

        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")

        if not self._debug:
            response.headers["Content-Security-Policy"] = "upgrade-insecure-requests"
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class IntakeRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window limit on the intake webhook, per client IP and establishment.

    A runaway automation flooding one establishment's queue does not block
    the requests it pushes for the others.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        max_requests: int = 100,
        window_seconds: int = 60,
    ) -> None:
        super().__init__(app)
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._requests: dict[tuple[str, str], list[float]] = defaultdict(list)

    def _cleanup_window(self, key: tuple[str, str], now: float) -> None:
        cutoff = now - self._window_seconds
        timestamps = [ts for ts in self._requests.get(key, []) if ts >= cutoff]
        if timestamps:
            self._requests[key] = timestamps
        else:
            self._requests.pop(key, None)

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        match = _INTAKE_PATH_RE.search(request.url.path)
        if match is None:
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        key = (client_ip, match.group("establishment_id"))
        now = time.time()
        self._cleanup_window(key, now)

        if len(self._requests.get(key, [])) >= self._max_requests:
            logger.warning(
                "Intake rate limit exceeded",
                extra_data={
                    "client_ip": client_ip,
                    "establishment_id": key[1],
                    "limit": self._max_requests,
                    "window_seconds": self._window_seconds,
                },
            )
            response = _error_response(
                429,
                ErrorCode.RATE_LIMITED.value,
                "Too many requests for this establishment. Please try again later.",
                {"retry_after_seconds": self._window_seconds},
            )
            response.headers["Retry-After"] = str(self._window_seconds)
            return response

        self._requests[key].append(now)
        return await call_next(request)


def setup_middleware(app: FastAPI) -> None:
    """Register middleware; the last one added is the outermost"""
    from courier_hub.core.config import settings

    # Request order: SecurityHeaders -> RequestContext -> RequestLogging -> IntakeRateLimit -> app
    app.add_middleware(
        IntakeRateLimitMiddleware,
        max_requests=settings.WEBHOOK_RATE_LIMIT_MAX_REQUESTS,
        window_seconds=settings.WEBHOOK_RATE_LIMIT_WINDOW_SECONDS,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, debug=settings.DEBUG)


def setup_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
