"""Main FastAPI application."""

import asyncio
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.api import offers, trades, events
from app.core.errors import (
    EngineError,
    ValidationError,
    NotFound,
    NotAuthorized,
    InvalidState,
    Expired,
    ItemLocked,
    ConcurrentModification,
    DependencyFailure,
)
from app.services import build_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# HTTP status per error kind; subclasses inherit their parent's status
ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ItemLocked: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    NotAuthorized: status.HTTP_403_FORBIDDEN,
    InvalidState: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    Expired: status.HTTP_410_GONE,
    DependencyFailure: status.HTTP_502_BAD_GATEWAY,
}

# Create FastAPI app
app = FastAPI(
    title="Negotiation Engine API",
    version="1.0.0",
    description="Offer and trade negotiation, fulfilment and dispute handling for a peer-to-peer marketplace"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(
    offers.router,
    prefix=f"{settings.API_V1_PREFIX}/offers",
    tags=["offers"]
)
app.include_router(
    trades.router,
    prefix=f"{settings.API_V1_PREFIX}/trades",
    tags=["trades"]
)
app.include_router(
    events.router,
    prefix=f"{settings.API_V1_PREFIX}",
    tags=["events"]
)

_scheduler_task: Optional[asyncio.Task] = None
_scheduler_stop = asyncio.Event()


@app.on_event("startup")
async def startup():
    """Application startup tasks."""
    global _scheduler_task
    logger.info(f"Negotiation Engine API starting ({settings.ENVIRONMENT})")
    if settings.SCHEDULER_ENABLED:
        _scheduler_stop.clear()
        _scheduler_task = asyncio.create_task(build_scheduler().run_forever(_scheduler_stop))


@app.on_event("shutdown")
async def shutdown():
    """Application shutdown tasks."""
    if _scheduler_task is not None:
        _scheduler_stop.set()
        await _scheduler_task
    logger.info("Negotiation Engine API shutting down")


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Negotiation Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "redoc": "/redoc",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "environment": settings.ENVIRONMENT,
    }


def error_status(exc: EngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    """Map engine errors to a status code and a user-facing category."""
    code = error_status(exc)
    if isinstance(exc, DependencyFailure):
        logger.warning(f"{request.method} {request.url.path}: {exc.dependency} unavailable")
    detail = {
        "code": exc.code,
        "category": exc.category,
        "message": exc.message,
    }
    if isinstance(exc, ValidationError):
        detail["field"] = exc.field
    return JSONResponse(status_code=code, content={"detail": detail})


# Global exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )
