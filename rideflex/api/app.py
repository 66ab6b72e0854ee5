"""
FastAPI application factory.

* Registers routes for trips, riders, drivers, payments, reviews and admin.
* Starts / stops the checkout expiry worker via lifespan events.
* Renders domain errors as ``{"kind", "detail"}`` with their status code.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from rideflex.api.middleware import limiter
from rideflex.api.routes import admin, drivers, payments, reviews, riders, trips
from rideflex.domain.errors import RideFlexError
from rideflex.infrastructure.redis_client import close_redis
from rideflex.workers import expiry as _expiry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expiry worker on startup; stop it and the Redis pool on shutdown."""
    await _expiry.start_expiry_loop()
    yield
    await _expiry.stop_expiry_loop()
    await close_redis()


async def rideflex_error_handler(request: Request, exc: RideFlexError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"kind": exc.kind, "detail": exc.detail},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="RideFlex API",
        description=(
            "Ride-hailing marketplace backend: proximity driver matching, "
            "surge-priced fares, a guarded trip lifecycle and payment "
            "settlement that stays correct when redirects and webhooks race."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(RideFlexError, rideflex_error_handler)

    # Routers
    for module in (trips, riders, drivers, payments, reviews, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app
