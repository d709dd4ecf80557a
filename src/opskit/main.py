"""FastAPI application entry point for OpsKit."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from opskit import __version__
from opskit.api.routes import router
from opskit.config import Settings, get_settings
from opskit.engine import Engine

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    engine: Engine = app.state.engine
    settings = engine.settings
    maintenance_task: asyncio.Task | None = None

    # Startup
    logger.info(f"Starting OpsKit v{__version__}")
    logger.info(f"Debug mode: {settings.debug}")

    if settings.maintenance_enabled:
        logger.info("Starting background maintenance...")
        maintenance_task = asyncio.create_task(engine.maintenance.run())
    else:
        logger.info("Background maintenance disabled (set OPSKIT_MAINTENANCE_ENABLED=true to enable)")

    yield

    # Shutdown
    if maintenance_task:
        logger.info("Stopping background maintenance...")
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass

    await engine.shutdown()
    logger.info("Shutting down OpsKit")


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Configuration (defaults to the environment)
        engine: Pre-built engine, mainly for tests
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="OpsKit",
        description="Artifact cache and sandboxed execution engine for admin scripts",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.engine = engine or Engine.from_settings(settings)
    app.include_router(router)

    return app


def main() -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "opskit.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
