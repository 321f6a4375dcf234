"""Logging setup and request logging middleware."""

import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from app.core.config import settings


def setup_logging() -> logging.Logger:
    """Configure application logging."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if settings.LOG_FILE:
        Path(settings.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.LOG_FILE))

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # Quiet noisy libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger = logging.getLogger("app")
    logger.setLevel(log_level)
    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging request details."""

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = logging.getLogger("app.request")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start_time = time.time()
        request.state.request_id = request_id

        self.logger.info(
            "Request started: %s %s [client: %s] [request_id: %s]",
            request.method,
            request.url.path,
            request.client.host if request.client else "unknown",
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception:
            self.logger.error(
                "Request failed: %s %s [request_id: %s]",
                request.method,
                request.url.path,
                request_id,
                exc_info=True,
            )
            raise

        duration = time.time() - start_time
        self.logger.info(
            "Request completed: %s %s [status: %s] [duration: %.3fs] [request_id: %s]",
            request.method,
            request.url.path,
            response.status_code,
            duration,
            request_id,
        )
        response.headers["X-Request-ID"] = request_id
        return response


def add_logging_middleware(app: FastAPI) -> None:
    """Add request logging middleware to the FastAPI app."""
    app.add_middleware(RequestLoggingMiddleware)
