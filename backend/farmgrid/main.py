import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from farmgrid.config import settings
from farmgrid.database import engine
from farmgrid.middleware.exceptions import register_exception_handlers
from farmgrid.routers import farms, health
from farmgrid.utils.cache import close_redis

logger = logging.getLogger("farmgrid")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"FarmGrid starting ({settings.environment})")
    try:
        yield
    finally:
        await close_redis()
        await engine.dispose()
        logger.info("FarmGrid stopped")


app = FastAPI(
    title="FarmGrid",
    description="Farm plot grid management and crop record keeping",
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
app.include_router(farms.router, prefix="/api/farms", tags=["farms"])
