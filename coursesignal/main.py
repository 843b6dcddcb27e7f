"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from .routers import analytics as analytics_router
from .routers import launches as launches_router
from .routers import public as public_router
from .routers import purchases as purchases_router
from .routers import tracking as tracking_router
from .telemetry import init_sentry
from .workers.arq_enqueue import reset_arq_pool
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401

TRACKING_PATHS = ("/v1/track", "/v1/identify")


class TrackingCORSMiddleware(BaseHTTPMiddleware):
    """Handle CORS for the tracking script endpoints.

    WHY: The script runs on creators' own domains (Kajabi, Teachable, custom
    sites), which cannot be enumerated in BACKEND_CORS_ORIGINS. The endpoints
    need no credentials, so a wildcard origin is safe.
    """

    async def dispatch(self, request, call_next):
        if request.url.path not in TRACKING_PATHS:
            return await call_next(request)

        cors_headers = {
            "Access-Control-Allow-Origin": "*",
            "Access-Control-Allow-Methods": "POST, OPTIONS",
            "Access-Control-Allow-Headers": "Content-Type",
            "Access-Control-Max-Age": "86400",
        }

        # Preflight
        if request.method == "OPTIONS":
            return StarletteResponse(status_code=200, headers=cors_headers)

        response = await call_next(request)
        for key, value in cors_headers.items():
            response.headers[key] = value
        return response


def create_app() -> FastAPI:
    init_sentry()

    app = FastAPI(
        title="CourseSignal API",
        description="""
        CourseSignal attributes online-course revenue to the traffic sources
        that produced it.

        This API provides endpoints for:
        - Tracking pings and identity capture from the site script
        - Signed purchase webhooks from platform adapters
        - Revenue, source and match-rate analytics
        - Launch management and public launch recaps
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS is a comma-separated list: "https://app.coursesignal.io,http://localhost:3000"
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added after CORSMiddleware so it runs first
    app.add_middleware(TrackingCORSMiddleware)

    app.include_router(tracking_router.router)
    app.include_router(purchases_router.router)
    app.include_router(analytics_router.router)
    app.include_router(launches_router.router)
    app.include_router(public_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the shared arq Redis pool used by the reattribute endpoint."""
        await reset_arq_pool()
        logger.info("[SHUTDOWN] arq pool closed")

    return app


app = create_app()
