"""Job Engine - FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobengine.config import settings
from jobengine.api.v1.router import v1_router
from jobengine.api.v1.health import router as health_root_router
from jobengine.api.v1 import health as health_api
from jobengine.api.v1 import jobs as jobs_api
from jobengine.engine import build_engine

logger = logging.getLogger(__name__)

# Global engine reference
_engine = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    global _engine

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Job Engine on port %d", settings.api_port)
    logger.info("Storage backend: %s", settings.storage_backend)

    _engine = build_engine(settings)
    await _engine.start()
    logger.info("Handlers registered: %s", [t.value for t in _engine.registry.supported_types])

    # Wire engine into API endpoints
    jobs_api.set_jobs(_engine.jobs)
    jobs_api.set_registry(_engine.registry)
    health_api.set_registry(_engine.registry)
    health_api.set_watchdog(_engine.watchdog)

    yield

    # Shutdown
    logger.info("Shutting down Job Engine")
    await _engine.stop()


app = FastAPI(
    title="Job Engine",
    description="Checkpointed, resumable background jobs for the image pipelines",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("jobengine.main:app", host="0.0.0.0", port=settings.api_port)
