"""
Error monitoring, logging setup and API exception handlers
"""

import logging
import traceback
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import settings
from services.errors import DomainError

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Configure console logging and an optional WARNING+ file log"""
    level = (level or settings.log_level).upper()
    log_file = log_file or settings.log_file
    formatter = logging.Formatter(LOG_FORMAT)

    root = logging.getLogger()
    root.setLevel(level)
    # Idempotent across app restarts in the same process (tests, reloads)
    for handler in list(root.handlers):
        if getattr(handler, "_worknotes", False):
            root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    console_handler._worknotes = True
    root.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.WARNING)
        file_handler.setFormatter(formatter)
        file_handler._worknotes = True
        root.addHandler(file_handler)


@dataclass
class ErrorEvent:
    timestamp: datetime
    error_type: str
    message: str
    component: str
    traceback: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class ErrorMonitor:
    """Keeps recent unexpected errors in memory for the health endpoint"""

    def __init__(self, max_events: int = 1000):
        self.events = deque(maxlen=max_events)
        self.error_counts = defaultdict(int)

    def capture_error(self, error: Exception, component: str, context: Optional[Dict[str, Any]] = None) -> ErrorEvent:
        event = ErrorEvent(
            timestamp=datetime.now(),
            error_type=type(error).__name__,
            message=str(error),
            component=component,
            traceback="".join(traceback.format_exception(type(error), error, error.__traceback__)),
            context=context or {},
        )
        self.events.append(event)
        self.error_counts[f"{component}:{event.error_type}"] += 1
        return event

    def health_check(self) -> Dict[str, Any]:
        now = datetime.now()
        last_hour = now - timedelta(hours=1)
        recent_errors = len([e for e in self.events if e.timestamp > last_hour])

        status = "healthy"
        if recent_errors > 10:
            status = "unhealthy"
        elif recent_errors > 3:
            status = "degraded"

        return {
            "status": status,
            "errors_last_hour": recent_errors,
            "total_events": len(self.events),
            "timestamp": now.isoformat(),
        }


# Global error monitor instance
error_monitor = ErrorMonitor()


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Invalid request",
            "details": jsonable_encoder(exc.errors()),
        },
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error_monitor.capture_error(exc, "api", context={"path": request.url.path, "method": request.method})
    content = {"error": "INTERNAL_ERROR", "message": "Internal server error"}
    if settings.is_development:
        content["details"] = {"type": type(exc).__name__, "message": str(exc)}
    return JSONResponse(status_code=500, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
