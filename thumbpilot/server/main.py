"""
ThumbPilot service host.

Builds the engine (gateway, resilient platform and generator clients,
orchestrator, scheduler) at startup and exposes campaign endpoints.
"""

import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from thumbpilot.common.cache import redis_client
from thumbpilot.common.config import Settings, get_settings
from thumbpilot.common.database import close_db, create_tables, db, init_db
from thumbpilot.common.exceptions import NotFoundError, ThumbPilotError
from thumbpilot.common.logger import clear_log_context, get_logger, log_context
from thumbpilot.common.resilience import ResilientCaller
from thumbpilot.common.utils import generate_id
from thumbpilot.engine import CampaignOrchestrator, OptimizationScheduler
from thumbpilot.schemas.response import ErrorResponse
from thumbpilot.server.middleware.metrics import MetricsMiddleware, metrics_endpoint
from thumbpilot.server.routers import campaigns, health
from thumbpilot.services import (
    HttpGeneratorClient,
    LoggingNotificationBus,
    NotificationBus,
    RedisNotificationBus,
    ResilientGenerator,
    ResilientPlatform,
    SqlAlchemyGateway,
    YouTubeClient,
)

logger = get_logger(__name__)


async def _notification_bus() -> NotificationBus:
    try:
        await redis_client.connect()
    except Exception as e:
        logger.warning("Redis unavailable, notifications go to the log", error=str(e))
        await redis_client.close()
        return LoggingNotificationBus()
    return RedisNotificationBus(redis_client)


def build_orchestrator(settings: Settings, notifications: NotificationBus) -> CampaignOrchestrator:
    """Wire the gateway and resilient external clients into an orchestrator."""
    gateway = SqlAlchemyGateway(db.session_factory, http_timeout=settings.platform.timeout)
    retry = settings.resilience.retry

    platform = ResilientPlatform(
        YouTubeClient(settings.platform),
        ResilientCaller.from_settings("platform", settings.resilience.platform, retry),
    )
    generator = ResilientGenerator(
        HttpGeneratorClient(gateway, settings.generator),
        ResilientCaller.from_settings("generator", settings.resilience.generator, retry),
    )
    return CampaignOrchestrator(
        gateway=gateway,
        platform=platform,
        generator=generator,
        notifications=notifications,
        settings=settings.engine,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings = get_settings()

    # Startup
    logger.info(
        "Starting ThumbPilot server",
        version=settings.app_version,
        env=settings.env,
    )

    # Initialize database
    await init_db()
    if settings.debug:
        await create_tables()

    notifications = await _notification_bus()
    orchestrator = build_orchestrator(settings, notifications)
    scheduler = OptimizationScheduler(orchestrator)
    app.state.orchestrator = orchestrator
    app.state.scheduler = scheduler

    if settings.scheduler.enabled:
        scheduler.start(settings.scheduler.interval_minutes)

    logger.info("ThumbPilot server started successfully")

    yield

    # Shutdown
    logger.info("Shutting down ThumbPilot server")
    await scheduler.stop()
    await orchestrator.tasks.cancel_all()
    await orchestrator.platform.close()
    await orchestrator.generator.close()
    await redis_client.close()
    await close_db()
    logger.info("ThumbPilot server stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="ThumbPilot",
        description="Autonomous thumbnail A/B optimization",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.monitoring.enabled:
        app.add_middleware(MetricsMiddleware)
        app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], tags=["monitoring"])

    # Request logging middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next: Any) -> Any:
        """Log all requests with timing."""
        request_id = request.headers.get("X-Request-ID") or generate_id()
        log_context(request_id=request_id)

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            clear_log_context("request_id")

        duration_ms = (time.perf_counter() - start_time) * 1000

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms:.2f}ms"
        return response

    # Exception handlers
    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                message=exc.message,
                details=exc.details,
            ).model_dump(),
        )

    @app.exception_handler(ThumbPilotError)
    async def thumbpilot_error_handler(
        request: Request,
        exc: ThumbPilotError,
    ) -> JSONResponse:
        """Handle ThumbPilot errors."""
        logger.warning(
            "ThumbPilot error",
            error=exc.__class__.__name__,
            message=exc.message,
            details=exc.details,
        )

        return JSONResponse(
            status_code=400,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                message=exc.message,
                details=exc.details,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_error_handler(
        request: Request,
        exc: Exception,
    ) -> JSONResponse:
        """Handle unexpected errors."""
        logger.error(
            "Unexpected error",
            error=str(exc),
            error_type=exc.__class__.__name__,
        )

        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                error="InternalServerError",
                message="An unexpected error occurred",
            ).model_dump(),
        )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(campaigns.router, prefix="/api/v1/campaigns", tags=["campaigns"])

    return app


# Create app instance
app = create_app()


def main() -> None:
    """Run the server using uvicorn."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "thumbpilot.server.main:app",
        host=settings.server.host,
        port=settings.server.port,
        workers=settings.server.workers,
        reload=settings.server.reload,
        log_level="info" if not settings.debug else "debug",
    )


if __name__ == "__main__":
    main()
