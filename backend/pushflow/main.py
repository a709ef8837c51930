"""Main FastAPI application: device API plus the queue worker."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import settings
from .database import init_db, close_db
from .routers import devices_router
from .services.dispatcher import build_dispatcher
from .services.push_sender import PushConfig, build_gateway
from .services.scheduler import worker_service

# Configure logging
logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def push_config_from_settings() -> PushConfig:
    """Provider credentials from the environment."""
    return PushConfig(
        apns_key_path=settings.apns_key_path,
        apns_key_id=settings.apns_key_id,
        apns_team_id=settings.apns_team_id,
        apns_bundle_id=settings.apns_bundle_id,
        apns_use_sandbox=settings.apns_use_sandbox,
        fcm_credentials_path=settings.fcm_credentials_path,
        concurrency=settings.push_concurrency,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    logger.info(f"Starting pushflow {__version__}")

    # Initialize database
    await init_db()
    logger.info("Database initialized")

    gateway = build_gateway(push_config_from_settings())
    app.state.gateway = gateway

    if settings.worker_enabled:
        worker_service.start(build_dispatcher(gateway))
    else:
        logger.info("Worker disabled - API only")

    yield

    # Shutdown
    worker_service.stop()
    await gateway.close()
    await close_db()
    logger.info("Shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="pushflow",
        description="Notification scheduling and multi-channel delivery",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, restrict to your domain
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(devices_router)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "worker": worker_service.running,
        }

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=settings.web_port)
