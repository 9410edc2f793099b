"""Subscription Engine: FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from subscription_engine.api.v1.analytics import router as analytics_router
from subscription_engine.api.v1.plans import router as plans_router
from subscription_engine.api.v1.subscriptions import router as subscriptions_router
from subscription_engine.api.v1.sweeps import router as sweeps_router
from subscription_engine.api.v1.usage import router as usage_router
from subscription_engine.billing.exceptions import DependencyUnavailableError, SubscriptionEngineError
from subscription_engine.config import settings

# Configure root logger so all subscription_engine.* loggers output to stderr.
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup and shutdown events."""
    yield
    # Shutdown: dispose engine connections
    from subscription_engine.database import engine

    await engine.dispose()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Subscription lifecycle, proration, usage limits and billing sweeps.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(SubscriptionEngineError)
async def subscription_engine_error_handler(request: Request, exc: SubscriptionEngineError) -> JSONResponse:
    """Render typed engine errors with the status code of their kind."""
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.error_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def database_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Report a lost database connection as a transient dependency failure."""
    logger.error("%s %s -> database unavailable: %s", request.method, request.url.path, exc)
    error = DependencyUnavailableError("Database is unavailable")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Routers
app.include_router(plans_router)
app.include_router(subscriptions_router)
app.include_router(usage_router)
app.include_router(sweeps_router)
app.include_router(analytics_router)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": settings.app_name}


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("subscription_engine.main:app", host=settings.host, port=settings.port)
