#!/usr/bin/env python3
"""
ciserver: FastAPI service that queues and runs project builds.
API key authentication (CI_API_KEY) required for all endpoints except /health.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ciserver.api.builds import router as builds_router
from ciserver.api.metrics import router as metrics_router
from ciserver.api.projects import router as projects_router
from ciserver.api.queue import router as queue_router
from ciserver.core.builds import build_store
from ciserver.core.config import get_settings
from ciserver.core.coordinator import build_coordinator
from ciserver.core.logging import setup_logging
from ciserver.core.request_logging import RequestLoggingMiddleware
from ciserver.core.security import APIKeyMiddleware
from ciserver.db.database import init_db
from ciserver.schemas.build import HookName

settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.log_level)

# Initialize database on startup
init_db()

LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))
VERSION = "1.0.0"

logger = logging.getLogger("ciserver")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the build coordinator and settle builds a previous run left behind."""
    build_coordinator.start()
    recovery = build_store.recover_interrupted()
    for build in recovery.failed:
        build_coordinator.hooks.run(HookName.ON_FAILED, build.project_id, build.id)
    for build in recovery.queued:
        build_coordinator.enqueue(build.project_id, build.id)
    logger.info(f"ciserver_started version={VERSION} build_timeout_s={settings.build_timeout_s:g}")
    yield
    build_coordinator.stop()


app = FastAPI(
    title="ciserver",
    description="Continuous-integration build runner with a single-worker build queue",
    version=VERSION,
    lifespan=lifespan,
)

# Add request logging middleware (must be first to capture all requests)
app.add_middleware(RequestLoggingMiddleware)

# Add authentication middleware
app.add_middleware(APIKeyMiddleware)

app.include_router(projects_router)
app.include_router(builds_router)
app.include_router(queue_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "coordinator": "running" if build_coordinator.running else "stopped"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=LISTEN_HOST, port=PORT)
