"""RELIA Farm-out Dispatch API"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from app.core.config import get_settings
from app.core.logging import configure_logging, logger
from app.routers import drivers, farmout


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, settings.normalized_log_format())
    logger.info(
        "RELIA dispatch API starting",
        version="0.1.0",
        auth_enabled=settings.auth_enabled,
        trip_status_feed=bool(settings.trip_status_feed_url),
    )
    yield
    # Shutdown
    logger.info("RELIA dispatch API shutting down")


app = FastAPI(
    title="RELIA Farm-out Dispatch API",
    description="Farm-out reservation status, driver trip updates, and assignment snapshots",
    version="0.1.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(farmout.router)
app.include_router(drivers.router)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "RELIA Farm-out Dispatch API",
        "version": "0.1.0",
        "endpoints": {
            "farmout": "/farmout",
            "drivers": "/drivers",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
