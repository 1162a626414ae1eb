"""FastAPI application entry point."""

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from autoflow.config import Settings
from autoflow.db.database import close_database, init_database
from autoflow.services.engine import init_engine, shutdown_engine

settings = Settings.from_env()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    await init_database(settings.database_path)

    if not settings.secrets_key:
        logger.warning("SECRETS_KEY is not set; using a development key for token encryption")

    engine = await init_engine(settings)
    logger.info(f"Workflow engine started with services: {', '.join(sorted(engine.adapters))}")

    yield

    # Shutdown
    await shutdown_engine()
    await close_database()


app = FastAPI(
    title="AutoFlow",
    description="Cross-service workflow automation engine",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


# Import and include routers after app is created to avoid circular imports
from autoflow.api import integrations, workflows  # noqa: E402

app.include_router(workflows.router, prefix="/api/v1", tags=["workflows"])
app.include_router(integrations.router, prefix="/api/v1", tags=["integrations"])
