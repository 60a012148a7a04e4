"""FastAPI application entrypoint.

Configures CORS and error rendering, includes routers, and exposes a
healthcheck endpoint.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import boxtal as boxtal_router
from .routers import carts as carts_router
from .routers import shipments as shipments_router
from .routers import stripe_webhooks as stripe_webhooks_router
from .telemetry import capture_exception, init_sentry
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


def _error_body(detail) -> dict:
    if isinstance(detail, dict) and "error" in detail:
        return detail
    return {"error": detail if isinstance(detail, str) else jsonable_encoder(detail)}


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else (first.get("msg") or "Invalid request")
    logger.info(f"[API] Validation error on {request.url.path}: {message}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": message, "details": jsonable_encoder(errors)},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"[API] Unhandled error on {request.method} {request.url.path}: {exc}")
    capture_exception(exc, extra={"path": request.url.path, "method": request.method})
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="PayLive API",
        description="""
        Checkout and shipping backend for PayLive live-shopping stores.

        This API provides endpoints for:
        - Buyer carts
        - Shipments: order history, editing a paid order, cancellation, returns, invoices
        - Boxtal: parcel points, quotes, shipping orders
        - Stripe and Boxtal webhooks

        ## Authentication

        `Authorization: Bearer <Clerk session token>`. The Clerk user's
        public metadata carries the buyer's Stripe customer id and role.
        """,
        version="1.0.0",
    )

    # Trust X-Forwarded-Proto from the load balancer
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list
    allowed_origins = [origin.strip() for origin in settings.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]
    frontend = settings.FRONTEND_URL.rstrip("/")
    if frontend and frontend not in allowed_origins:
        allowed_origins.append(frontend)
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(carts_router.router)
    app.include_router(shipments_router.router)
    app.include_router(boxtal_router.router)
    app.include_router(stripe_webhooks_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
        description="""
        Simple health check endpoint to verify the API is running.
        Does not require authentication; used by the load balancer.
        """
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        if init_sentry(settings.SENTRY_DSN):
            logger.info("[STARTUP] Sentry initialized")
        else:
            logger.info("[STARTUP] Sentry disabled (no SENTRY_DSN)")

    return app


app = create_app()
