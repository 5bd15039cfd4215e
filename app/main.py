"""Shipwright -- FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routers.health import router as health_router
from app.api.routers.jobs import router as jobs_router
from app.clients import deploy_client, llm_client, notify_client, template_client
from app.config import VERSION, settings
from app.logging_setup import configure_logging
from app.middleware import RequestIDMiddleware
from app.middleware.exception_handler import setup_exception_handlers
from app.repos.store import close_store, get_store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(application: FastAPI):
    """Startup: logging and the job store.  Shutdown: HTTP clients, then the store."""
    configure_logging()
    get_store()
    logger.info("Shipwright %s starting (store=%s)", VERSION, settings.STORE_BACKEND)
    yield
    await llm_client.close_client()
    await deploy_client.close_client()
    await template_client.close_client()
    await notify_client.close_client()
    await close_store()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Shipwright",
        version=VERSION,
        description="Self-healing generation-to-deployment pipeline",
        lifespan=lifespan,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
    )

    setup_exception_handlers(application)
    application.add_middleware(RequestIDMiddleware)

    application.include_router(health_router)
    application.include_router(jobs_router)
    return application


app = create_app()
