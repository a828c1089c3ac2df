"""
CRM Automation Engine - FastAPI Application

Wires the automation runtime (trigger, flow and drip engines) to the HTTP
surface and runs the background scheduler for the lifetime of the process.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import settings
from .api.routes import api_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .repositories.mongo_client import create_indexes, close_connection, health_check
from .scheduler.automation_scheduler import is_scheduler_running, start_scheduler, stop_scheduler
from .services.runtime import get_runtime
from .utils.logger import setup_logging, get_logger

setup_logging()
logger = get_logger(__name__)

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup creates indexes, builds the runtime and starts the scheduler.

    Shutdown stops polling first so no new drip runs or flow resumes are
    picked up, then drains in-flight trigger pipelines and flow walks
    before the Mongo client goes away.
    """
    logger.info("Starting CRM Automation Engine...")

    try:
        create_indexes()
    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")

    runtime = get_runtime()
    if settings.scheduler_enabled:
        start_scheduler(runtime.drip_engine, runtime.flow_engine)
    else:
        logger.info("Automation scheduler disabled")

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    await runtime.shutdown()
    close_connection()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    application = FastAPI(
        title="CRM Automation Engine",
        description="Event triggers, visual flows and drip campaigns for CRM automation",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    _configure_middleware(application)
    register_error_handlers(application)
    _configure_routes(application)

    return application


def _configure_middleware(app: FastAPI) -> None:
    # allow_credentials must be off for a wildcard origin
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationIdMiddleware)


def _configure_routes(app: FastAPI) -> None:
    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health", tags=["Health"])
    async def health():
        """Database connectivity, scheduler state and background work in flight"""
        mongo_health = health_check()
        runtime = get_runtime()
        return {
            "status": "healthy" if mongo_health.get("status") == "healthy" else "degraded",
            "version": API_VERSION,
            "environment": settings.environment,
            "mongo": mongo_health,
            "scheduler": {
                "enabled": settings.scheduler_enabled,
                "running": is_scheduler_running(),
            },
            "background_tasks": {
                "triggers": runtime.trigger_supervisor.pending,
                "flows": runtime.flow_supervisor.pending,
            },
        }

    @app.get("/", tags=["Health"])
    async def root():
        return {
            "name": "CRM Automation Engine",
            "version": API_VERSION,
            "docs": "/api/docs" if settings.debug else None
        }


app = create_app()
