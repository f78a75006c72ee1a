"""
troupesync.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn troupesync.api.main:app --port 8000

Startup builds the provider client, the sync orchestrator and the
scheduler, and starts the background loops.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from troupesync.api.deps import get_config, get_engine  # noqa: E402
from troupesync.api.routes.sync import router as sync_router  # noqa: E402
from troupesync.services.limit_service import init_global_limits  # noqa: E402
from troupesync.services.scheduler import SyncScheduler  # noqa: E402
from troupesync.services.sync_service import SyncOrchestrator  # noqa: E402
from troupesync.sources.google import GoogleClient  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — engine, orchestrator, scheduler."""
    config = get_config()
    engine = get_engine()
    init_global_limits(engine)

    client = GoogleClient(
        timeout=config.http_timeout_seconds,
        max_retries=config.http_max_retries,
        backoff=config.http_backoff_seconds,
    )
    orchestrator = SyncOrchestrator(engine, client, workers=config.ingest_workers)
    scheduler = SyncScheduler(engine, orchestrator, config)
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("%s API started — engine ready (%s)", config.service_name, engine.url.database)
    yield
    scheduler.stop()
    client.close()
    logger.info("%s API shutting down", config.service_name)


app = FastAPI(
    title="Troupe Sync API",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(sync_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
