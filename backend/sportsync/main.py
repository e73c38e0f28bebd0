"""
backend/sportsync/main.py

Purpose:
    FastAPI application bootstrap: logging, database lifecycle, middleware and
    router wiring, and the error handlers shared by all admin endpoints.

Dependencies:
    - sportsync.database
    - sportsync.routers.admin_sync
"""

import logging
from contextlib import asynccontextmanager

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    ServerSelectionTimeoutError,
)

import sportsync.database as _db
from sportsync.config import settings
from sportsync.database import close_db, connect_db
from sportsync.middleware.logging import StructuredLoggingMiddleware, setup_logging
from sportsync.services.entity_registry import InvalidFilterError, UnknownEntityTypeError
from sportsync.services.settlement_trigger import wait_for_background_tasks

logger = logging.getLogger("sportsync")


@asynccontextmanager
async def lifespan(app: FastAPI):
    from sportsync.routers import admin_sync

    setup_logging()
    await connect_db()
    logger.info("SportSync admin API started")

    yield

    await wait_for_background_tasks()
    provider = admin_sync._provider
    if provider is not None:
        await provider.aclose()
    await close_db()


app = FastAPI(
    title="SportSync",
    description="Reconciliation and sync of sports reference data against Sportmonks",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from sportsync.routers.admin_sync import router as admin_sync_router

app.include_router(admin_sync_router)


def _field_of(loc: tuple) -> str:
    if not loc:
        return "unknown"
    return ".".join(str(part) for part in loc[1:]) if len(loc) > 1 else str(loc[-1])


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": _field_of(tuple(err.get("loc", ()))), "message": err.get("msg", "Invalid value.")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(UnknownEntityTypeError)
@app.exception_handler(InvalidFilterError)
async def registry_error_handler(request: Request, exc: ValueError):
    """Entity type and filter errors carry operator-facing messages; pass them through."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
@app.exception_handler(ConnectionFailure)
async def db_unavailable_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database unavailable (%s): %s %s", type(exc).__name__, request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    logger.warning("ValueError on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=400, content={"detail": "Invalid input."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection and provider circuit state."""
    from sportsync.routers import admin_sync

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    provider = admin_sync._provider
    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "provider": {
            "initialized": provider is not None,
            "circuit_open": bool(getattr(provider, "circuit_open", False)),
        },
    }
