from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from estate_contracts.api.v1.router import v1_router
from estate_contracts.core.config import get_settings
from estate_contracts.core.errors import (
    AlreadySigned,
    ConcurrentModification,
    ContractLocked,
    InvalidParty,
    InvalidState,
    LifecycleError,
    NotFound,
    RenewalFailed,
    TransactionFailed,
)
from estate_contracts.core.logging import configure_logging
from estate_contracts.core.middleware import RequestIdMiddleware
from estate_contracts.db.session import SessionLocal
from estate_contracts.services.scheduler import build_scheduler

logger = logging.getLogger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS = (
    (NotFound, 404),
    (InvalidParty, 403),
    (ContractLocked, 423),
    (AlreadySigned, 409),
    (InvalidState, 409),
    (ConcurrentModification, 409),
    (RenewalFailed, 500),
    (TransactionFailed, 500),
)


def status_for(exc: LifecycleError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


async def lifecycle_error_handler(request: Request, exc: LifecycleError) -> JSONResponse:
    status = status_for(exc)
    body = exc.to_dict()
    if isinstance(exc, RenewalFailed):
        body["oldContractId"] = str(exc.old_contract_id)
    if status >= 500:
        logger.error("request failed", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=status, content={"detail": body})


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": {"code": "invalid_request", "message": str(exc)}})


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = build_scheduler(settings, SessionLocal)
        scheduler.start()
    app.state.scheduler = scheduler
    try:
        yield
    finally:
        if scheduler is not None:
            scheduler.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware: Request ID
    app.add_middleware(RequestIdMiddleware, header_name=settings.request_id_header)

    # Engine errors -> HTTP
    app.add_exception_handler(LifecycleError, lifecycle_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)

    # API v1
    app.include_router(v1_router, prefix=settings.api_prefix)

    return app


app = create_app()
