import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import engine
from app.middleware.exceptions import register_exception_handlers
from app.routers import health, locations, pallets, systems
from app.utils.cache import close_redis

logger = logging.getLogger("tracker")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Release the Redis pool and DB engine on shutdown."""
    logger.info("RMA tracker starting (%s)", settings.environment)
    try:
        yield
    finally:
        await close_redis()
        await engine.dispose()
        logger.info("RMA tracker stopped")


app = FastAPI(
    title="RMA Tracker",
    description="Pallet lifecycle and unit location ledger for the RMA repair pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(pallets.router, prefix="/api/v1/pallets", tags=["pallets"])
app.include_router(systems.router, prefix="/api/v1/systems", tags=["systems"])
app.include_router(locations.router, prefix="/api/v1/locations", tags=["locations"])
