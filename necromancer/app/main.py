"""
FastAPI Application Entry Point.

Wires the dispatch services onto the application and exposes the v1 API.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from necromancer.app.core.config import settings
from necromancer.app.api.v1.router import router as api_v1_router
from necromancer.app.core.observability import ObservabilityMiddleware, configure_logging
from necromancer.app.core.redis_client import redis_client, ping_redis, close_redis
from necromancer.app.db.session import AsyncSessionLocal, create_schema
from necromancer.app.services.container import build_dispatch_services
from necromancer.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)

configure_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create tables, start the offer expiry sweeper.
    Shutdown: stop the sweeper, close Redis.
    """
    await create_schema()

    app.state.dispatch.sweeper.start()
    yield
    await app.state.dispatch.sweeper.stop()
    await close_redis()


app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Tow-truck request dispatch: driver directory, matching and request lifecycle",
    lifespan=lifespan,
)

app.state.dispatch = build_dispatch_services(redis_client, AsyncSessionLocal)

app.add_middleware(ObservabilityMiddleware)

app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """Liveness plus Redis reachability. Dispatch keeps working without Redis."""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": await ping_redis(),
    }


app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
