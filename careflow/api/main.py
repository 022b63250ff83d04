"""Main FastAPI application"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool

from careflow.api import live, queries, review
from careflow.api.dependencies import get_bridge, get_lifecycle
from careflow.config import settings
from careflow.database import init_db
from careflow.services.notification_bridge import NotificationBridge
from careflow.services.query_lifecycle import QueryLifecycle

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def resume_unfinished(lifecycle: QueryLifecycle, stalled_for: Optional[float] = None) -> None:
    try:
        await run_in_threadpool(lifecycle.resume_processing, stalled_for)
    except Exception:
        logger.exception("Resuming queries left in processing failed")


async def run_maintenance(lifecycle: QueryLifecycle) -> None:
    """Background task: finish stalled queries and forget idle rate-limit windows"""
    while True:
        await asyncio.sleep(settings.MAINTENANCE_INTERVAL_SECONDS)
        await resume_unfinished(lifecycle, settings.PIPELINE_STALL_SECONDS)
        lifecycle.rate_limiter.prune()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database, warm rate limits, resume unfinished queries and watch heartbeats"""
    init_db()

    lifecycle = app.dependency_overrides.get(get_lifecycle, get_lifecycle)()
    bridge = app.dependency_overrides.get(get_bridge, get_bridge)()
    lifecycle.warm_rate_limiter()

    tasks = [
        # Anything still in processing was cut off by the previous shutdown
        asyncio.create_task(resume_unfinished(lifecycle)),
        asyncio.create_task(run_maintenance(lifecycle)),
        asyncio.create_task(bridge.run_heartbeat_monitor()),
    ]
    logger.info("CareFlow API started")
    yield

    for task in tasks:
        task.cancel()
    # Worker threads cannot be interrupted, so do not wait on a slow model call
    await asyncio.wait(tasks, timeout=5)
    await bridge.close_all()
    logger.info("CareFlow API stopped")


app = FastAPI(
    title="CareFlow API",
    description="Patient query triage with safety scoring and clinician review",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(queries.router)
app.include_router(review.router)
app.include_router(live.router)


@app.get("/")
def root():
    """Return API info"""
    return {
        "message": "CareFlow API",
        "version": "1.0.0",
        "endpoints": {
            "queries": "/api/queries",
            "review": "/api/review",
            "patient_updates": "/ws/patients/{patient_id}",
            "clinician_updates": "/ws/clinicians/{clinician_id}",
        }
    }


@app.get("/health")
def health_check(bridge: NotificationBridge = Depends(get_bridge)):
    """Health check endpoint"""
    return {"status": "healthy", "connections": bridge.get_connection_stats()}
