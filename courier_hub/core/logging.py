"""
Structured Logging Infrastructure

JSON lines in production, a readable single-line format in DEBUG. Every
record carries the request's correlation ID and, when a profile is acting,
its id. Shared by the API process and the Celery workers.
"""
import logging
import json
import sys
import time
import uuid
from datetime import datetime, timezone
from typing import Any
from contextvars import ContextVar
from functools import wraps

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")
# profile acting in the current request (X-Actor-Id)
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "celery": logging.INFO,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per record; ``extra_data`` lands under "extra"."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, var in (("correlation_id", correlation_id_var), ("actor_id", actor_id_var)):
            value = var.get()
            if value:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_entry["extra"] = extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class StructuredLogger(logging.Logger):
    """Logger whose level methods accept an ``extra_data`` dict"""

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # one more frame: this override sits between the caller and Logger._log
        super()._log(
            level,
            msg,
            args,
            exc_info=exc_info,
            extra=extra,
            stack_info=stack_info,
            stacklevel=stacklevel + 1,
        )


logging.setLoggerClass(StructuredLogger)


class ContextFilter(logging.Filter):
    """Exposes correlation_id and actor_id to %-style format strings"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.actor_id = actor_id_var.get() or "-"
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    app_name: str = "courier-hub"
) -> None:
    """
    Configure the root logger.

    Args:
        level: Logging level name
        json_format: JSON lines (production) or the readable DEBUG format
        app_name: Reported once at startup
    """
    numeric_level = getattr(logging, level.upper())
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s actor=%(actor_id)s] | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
        handler.addFilter(ContextFilter())

    root_logger.addHandler(handler)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    get_logger(__name__).debug("Logging configured", extra_data={
        "app_name": app_name,
        "level": level.upper(),
        "json": json_format,
    })


def generate_correlation_id() -> str:
    return uuid.uuid4().hex[:8]


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current context, generating one if missing"""
    cid = (correlation_id or "").strip() or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation ID; generated and kept when none is set"""
    cid = correlation_id_var.get()
    if not cid:
        cid = set_correlation_id()
    return cid


def set_actor_id(actor_id: str | None) -> None:
    """Bind the acting profile to log records of the current context"""
    actor_id_var.set((actor_id or "").strip())


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore


def log_async_operation(operation_name: str):
    """Log start, outcome and duration of an async service operation.

    Domain errors (AppException) are expected outcomes of a lost race or a
    stale screen: WARNING with the error code, no stack trace. Anything else
    is logged at ERROR with the trace. Both are re-raised.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            from courier_hub.core.exceptions import AppException

            logger = get_logger(func.__module__)
            started = time.perf_counter()

            def _extra(status: str, **fields: Any) -> dict[str, Any]:
                return {
                    "operation": operation_name,
                    "status": status,
                    "duration_seconds": round(time.perf_counter() - started, 4),
                    **fields,
                }

            logger.debug(
                f"Starting {operation_name}",
                extra_data={"operation": operation_name, "status": "started"}
            )

            try:
                result = await func(*args, **kwargs)
            except AppException as e:
                logger.warning(
                    f"Rejected {operation_name}: {e.message}",
                    extra_data=_extra("rejected", error_code=e.error_code.value),
                )
                raise
            except Exception as e:
                logger.error(
                    f"Failed {operation_name}: {e}",
                    extra_data=_extra("failed", error=str(e)),
                    exc_info=True
                )
                raise

            logger.info(f"Completed {operation_name}", extra_data=_extra("completed"))
            return result

        return wrapper
    return decorator
