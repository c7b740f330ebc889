"""NCDTrack — FastAPI Application Entry Point.

Facility and district progress tracking for carb counting, prevention
screening and NCD remission.
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlmodel import Session

from ncdtrack.config import settings
from ncdtrack.core.errors import EngineError
from ncdtrack.database import engine, init_db, test_connection, db_url
from ncdtrack.engine.seeder import load_roster, seed
from ncdtrack.scheduler.jobs import start_scheduler, stop_scheduler
from ncdtrack.api.admin_routes import router as admin_router
from ncdtrack.api.metric_routes import router as metric_router
from ncdtrack.api.visit_routes import router as visit_router
from ncdtrack.core.logging import get_logger

logger = get_logger("main")

VERSION = "1.0.0"

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


def _seed_from_roster() -> None:
    """Seed baseline rows from ROSTER_PATH when configured."""
    if not (settings.seed_on_startup and settings.roster_path):
        return
    try:
        with Session(engine) as session:
            report = seed(session, load_roster(settings.roster_path))
        logger.info(
            f"🌱 Startup seed: {report.created} created, {report.skipped} existing, "
            f"{report.excluded} excluded"
        )
    except EngineError as e:
        logger.error(f"❌ Startup seed failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle."""
    logger.info("🚀 NCDTrack starting up...")
    logger.info(f"🌍 Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")
    # Test connection first
    db_ok = test_connection()
    if db_ok:
        try:
            init_db()
            _seed_from_roster()
        except Exception as e:
            logger.error(f"❌ Table creation failed: {e}")
    else:
        logger.error("❌ Database NOT connected — endpoints will fail")
    if not IS_SERVERLESS:
        start_scheduler()
    yield
    if not IS_SERVERLESS:
        stop_scheduler()
    logger.info("NCDTrack shut down")


app = FastAPI(
    title="NCDTrack",
    description="Facility and district progress tracking — carb counting, prevention screening, NCD remission.",
    version=VERSION,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(admin_router)
app.include_router(visit_router)
app.include_router(metric_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "ncdtrack",
        "version": VERSION,
    }


@app.get("/debug/db", tags=["System"])
async def debug_db():
    """Debug endpoint — check database connectivity."""
    from ncdtrack.database import _mask_url

    error = None
    connected = False
    try:
        connected = test_connection()
    except Exception as e:
        error = str(e)

    backend = "postgresql" if db_url.startswith("postgresql") else "sqlite"
    return {
        "connected": connected,
        "backend": backend,
        "url": _mask_url(db_url),
        "environment": "serverless" if IS_SERVERLESS else "local",
        "error": error,
    }
