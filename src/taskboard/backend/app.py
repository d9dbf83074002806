"""Taskboard operator API — FastAPI application.

Health and the manual operator actions around the resilience state. No
board/column/task routes live here; application code drives the
OrderedCollectionManager directly.

Run with: uvicorn taskboard.backend.app:app
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from taskboard import __version__
from taskboard.shared.enums import HealthStatus
from taskboard.shared.errors import (
    InvalidOperation,
    PersistenceFailure,
    PositionConflict,
    ServiceDegraded,
)
from taskboard.shared.models import ErrorResponse
from taskboard.shared.storage import StorageBackend

from .config import ResilienceSettings
from .ordering import OrderedCollectionManager
from .resilience import ResilienceContext
from .storage_json import JsonStorageBackend
from .storage_sqlite import SqliteStorageBackend

logger = logging.getLogger("taskboard.api")


def build_storage(settings: ResilienceSettings) -> StorageBackend:
    if settings.storage_backend == "sqlite":
        return SqliteStorageBackend(settings.sqlite_path)
    if settings.storage_backend == "json":
        return JsonStorageBackend(settings.data_dir)
    raise ValueError(f"Unknown storage_backend: {settings.storage_backend!r}")


# ═══════════════════════════════════════════════════════════════════════════
#  APP LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = ResilienceSettings.from_config()
    storage = build_storage(settings)
    await storage.initialize()
    context = ResilienceContext(storage, settings=settings)
    app.state.storage = storage
    app.state.resilience = context
    app.state.manager = OrderedCollectionManager(context)
    logger.info("Taskboard started with %s storage", settings.storage_backend)
    yield
    await context.drain()
    await storage.close()


app = FastAPI(
    title="Taskboard Operator API",
    version=__version__,
    description="Health and resilience controls for the taskboard persistence core",
    lifespan=lifespan,
)


# ═══════════════════════════════════════════════════════════════════════════
#  ERROR HANDLING
# ═══════════════════════════════════════════════════════════════════════════

def _error(status: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=error, message=message, status=status).model_dump(
            exclude_none=True
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail)
    return _error(
        exc.status_code,
        exc.detail if isinstance(exc.detail, str) else "error",
        str(exc.detail),
    )


@app.exception_handler(InvalidOperation)
async def invalid_operation_handler(request: Request, exc: InvalidOperation):
    return _error(400, "invalid_operation", str(exc))


@app.exception_handler(PositionConflict)
async def position_conflict_handler(request: Request, exc: PositionConflict):
    return _error(409, "position_conflict", str(exc))


@app.exception_handler(ServiceDegraded)
async def service_degraded_handler(request: Request, exc: ServiceDegraded):
    return _error(503, "service_degraded", str(exc))


@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
    return _error(503 if exc.retryable else 500, exc.kind.lower(), exc.error.message)


# ═══════════════════════════════════════════════════════════════════════════
#  HEALTH
# ═══════════════════════════════════════════════════════════════════════════

@app.get("/health")
async def health(request: Request):
    context: ResilienceContext = request.app.state.resilience
    report = await context.health()
    status = 503 if report.status is HealthStatus.UNHEALTHY else 200
    return JSONResponse(status_code=status, content=report.model_dump(mode="json"))


# ═══════════════════════════════════════════════════════════════════════════
#  OPERATOR ACTIONS
# ═══════════════════════════════════════════════════════════════════════════

@app.post("/v1/ops/recovery/attempt")
async def recovery_attempt(request: Request):
    context: ResilienceContext = request.app.state.resilience
    recovered = await context.recover()
    return {
        "recovered": recovered,
        "recovery": context.recovery.status().model_dump(mode="json"),
    }


@app.post("/v1/ops/recovery/reset")
async def recovery_reset(request: Request):
    context: ResilienceContext = request.app.state.resilience
    context.recovery.reset()
    return context.recovery.status().model_dump(mode="json")


@app.post("/v1/ops/degradation/restore")
async def degradation_restore(request: Request):
    context: ResilienceContext = request.app.state.resilience
    context.degradation.restore()
    logger.info("Degradation mode restored by operator")
    return {"mode": str(context.degradation.mode)}
