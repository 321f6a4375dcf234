"""Fee Reconciliation Service - FastAPI Application."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.exceptions import ConsistencyError, LedgerError
from app.middleware.logging import add_logging_middleware, setup_logging

setup_logging()
logger = logging.getLogger("app")

app = FastAPI(
    title=settings.APP_NAME,
    version="0.1.0",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
)

add_logging_middleware(app)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Render domain errors as structured payloads without internals."""
    if isinstance(exc, ConsistencyError):
        logger.error("Consistency error on %s: %s %s", request.url.path, exc.detail, exc.context)
    else:
        logger.warning("%s on %s: %s %s", exc.error, request.url.path, exc.detail, exc.context)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include API routes
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
