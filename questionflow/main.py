import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from questionflow.api import confusion_routes
from questionflow.api import doubt_routes
from questionflow.api import realtime
from questionflow.api import session_routes
from questionflow.api.deps import Services
from questionflow.core.config import get_settings
from questionflow.core.errors import register_exception_handlers
from questionflow.core.logging_config import configure_logging
from questionflow.db import database
from questionflow.db.redis_cache import RedisCache
from questionflow.services.broadcaster import RoomBroadcaster
from questionflow.services.code_resolver import CodeIndex, CodeResolver
from questionflow.services.confusion import ConfusionAggregator
from questionflow.services.doubt_ledger import DoubtLedger
from questionflow.services.session_facade import SessionFacade
from questionflow.services.similarity import SimilarityMatcher

logger = logging.getLogger("questionflow")


def build_services(settings, session_factory, cache: RedisCache) -> Services:
    broadcaster = RoomBroadcaster()
    resolver = CodeResolver(CodeIndex())
    return Services(
        broadcaster=broadcaster,
        facade=SessionFacade(session_factory, resolver, broadcaster),
        ledger=DoubtLedger(
            session_factory,
            broadcaster,
            matcher=SimilarityMatcher(
                threshold=settings.SIMILARITY_THRESHOLD,
                max_candidates=settings.SIMILARITY_MAX_CANDIDATES,
            ),
            anonymous_name=settings.ANONYMOUS_NAME,
        ),
        confusion=ConfusionAggregator(
            session_factory,
            broadcaster,
            cache=cache,
            window_seconds=settings.CONFUSION_WINDOW_SECONDS,
            cache_ttl=settings.CONFUSION_CACHE_TTL_SECONDS,
        ),
        cache=cache,
    )


# ── Lifespan ──────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle for the realtime engine."""
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    logger.info("QuestionFlow starting up …")

    # ── Database ──
    session_factory = database.init_engine(settings.DATABASE_URL)
    await database.init_db()
    logger.info("✓ Database tables initialised")

    # ── Cache (Redis) ──
    cache = RedisCache(settings.REDIS_URL)
    await cache.connect()
    if not cache.is_connected:
        logger.warning("Redis unavailable - confusion stats are computed on every request")

    services = build_services(settings, session_factory, cache)
    active = await services.facade.load_index()
    logger.info(f"✓ {active} active session(s) indexed")
    app.state.services = services

    yield  # ← Application serves requests here

    # ── Shutdown ──
    logger.info("QuestionFlow shutting down …")
    await cache.disconnect()
    await database.close_db()
    logger.info("Shutdown complete.")


# ── App ───────────────────────────────────────────────────────────────
app = FastAPI(
    title="QuestionFlow Realtime Engine",
    description="Live classroom doubts and confusion tracking with realtime fan-out",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_exception_handlers(app)

# ── Routers ───────────────────────────────────────────────────────────
app.include_router(session_routes.router, prefix="/api", tags=["Sessions"])
app.include_router(doubt_routes.router, prefix="/api", tags=["Doubts"])
app.include_router(confusion_routes.router, prefix="/api", tags=["Confusion"])
app.include_router(realtime.router, tags=["Realtime"])


@app.get("/")
async def root():
    """Root endpoint - welcome message"""
    return {
        "message": "QuestionFlow Realtime Engine",
        "status": "operational",
        "version": "1.0.0",
        "docs": "/docs",
        "realtime": "/ws",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    services: Services = app.state.services
    return {
        "service": "questionflow",
        "status": "healthy",
        "redis": "connected" if services.cache.is_connected else "unavailable",
        "rooms": services.broadcaster.room_count(),
        "indexed_codes": len(services.facade.index),
    }


def run() -> None:
    settings = get_settings()
    uvicorn.run("questionflow.main:app", host="0.0.0.0", port=settings.API_PORT)


if __name__ == "__main__":
    run()
