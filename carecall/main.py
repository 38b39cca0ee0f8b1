"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

from carecall.api.v1.routes import api_router
from carecall.core.config import get_settings
from carecall.core.container import build_container

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Builds the store, ledger, carrier and call services
      (skipped when a container was installed beforehand)

    Shutdown:
    - Closes every live voice session
    """
    # ========================
    # STARTUP
    # ========================
    settings = get_settings()
    logger.info(f"Starting CareCall telephony service ({settings.environment})...")

    if getattr(app.state, "container", None) is None:
        app.state.container = await build_container(settings)

    logger.info("CareCall telephony service started")

    yield  # Application is running

    # ========================
    # SHUTDOWN
    # ========================
    logger.info("Shutting down CareCall telephony service...")
    try:
        await app.state.container.registry.shutdown()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")
    logger.info("CareCall telephony service shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    application = FastAPI(
        title="CareCall Telephony",
        description="Scheduled companion calls with a realtime voice agent",
        version="1.0.0",
        lifespan=lifespan
    )
    application.include_router(api_router, prefix=settings.api_prefix)
    return application


app = create_app()
