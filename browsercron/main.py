"""browsercron application entry point.

Quick Start:
    $ browsercron-server       # Start the API server
    $ browsercron run-due      # Run due tasks once (for external cron)

Environment:
    BROWSERCRON_ENV            # development/production (default: development)
    BROWSERCRON_LOG_LEVEL      # DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from browsercron import __version__
from browsercron.api.routes import router, set_orchestrator
from browsercron.config import get_settings
from browsercron.database import close_db, init_db
from browsercron.logging_config import get_logger, setup_logging
from browsercron.orchestrator import Orchestrator

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    settings = get_settings()
    logger.info("browsercron_starting", version=__version__, env=settings.browsercron_env)

    await init_db()

    orchestrator = Orchestrator(settings)
    set_orchestrator(orchestrator)
    await orchestrator.startup()
    logger.info("browsercron_ready", host=settings.api_host, port=settings.api_port)

    yield

    logger.info("browsercron_shutting_down")
    try:
        await orchestrator.shutdown()
    except Exception as exc:
        logger.warning("orchestrator_shutdown_error", error=str(exc))
    set_orchestrator(None)
    await close_db()


app = FastAPI(
    title="browsercron",
    description="Scheduled natural-language browser automation",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router, prefix="/api")


def main() -> None:
    """Run the API server with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "browsercron.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.browsercron_env == "development",
        log_level=settings.browsercron_log_level.lower(),
    )


if __name__ == "__main__":
    main()
