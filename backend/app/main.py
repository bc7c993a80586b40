"""Vroom Sync Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from vroom.errors import VroomError

from .config import get_settings
from .database import get_storage_instance, reset_instances
from .errors import vroom_error_handler
from .logging_config import get_logger, setup_logging
from .rate_limit import limiter
from .routes import sync_router, vehicles_router

logger = get_logger("vroom.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings = get_settings()
    setup_logging(settings.debug)
    logger.info(f"Starting Vroom Sync API (debug={settings.debug})")
    yield
    # Shutdown
    logger.info("Shutting down Vroom Sync API")
    reset_instances()


app = FastAPI(
    title="Vroom Sync API",
    description="Backup, spreadsheet mirror and restore for Vroom expense data",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_exception_handler(VroomError, vroom_error_handler)

# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(sync_router)
app.include_router(vehicles_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "vroom-sync",
        "version": "0.1.0",
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with actual database verification."""
    db_status = "disconnected"
    try:
        storage = get_storage_instance()
        with storage._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    overall_status = "healthy" if db_status == "connected" else "degraded"

    return {
        "status": overall_status,
        "database": db_status,
    }
