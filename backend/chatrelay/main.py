"""Main FastAPI application."""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Any, Optional

from chatrelay.config import get_settings
from chatrelay.middleware.logging import LoggingMiddleware, get_logger
from chatrelay.api import chats, health, realtime
from chatrelay.database import engine, Base, SessionLocal
from chatrelay.services.hub import build_hub

settings = get_settings()
logger = get_logger()


async def connect_redis(url: str) -> Optional[Any]:
    """Async Redis client, or None when disabled or unreachable."""
    url = (url or "").strip()
    if not url:
        return None
    from redis.asyncio import Redis

    client = Redis.from_url(url, decode_responses=True)
    try:
        await client.ping()
    except Exception as e:
        logger.warning("redis_unavailable", error=str(e))
        await client.aclose()
        return None
    logger.info("redis_connected", url=url.split("@")[-1])
    return client


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - startup and shutdown."""
    # Startup
    Base.metadata.create_all(bind=engine)
    logger.info("database_tables_ready")

    app.state.redis = await connect_redis(settings.redis_url)
    app.state.hub = build_hub(settings, SessionLocal, redis_client=app.state.redis)
    logger.info(
        "relay_started",
        guard="redis" if app.state.redis is not None else "memory",
        responder_configured=app.state.hub.intake.responder.configured
    )

    yield  # App runs here

    # Shutdown
    await app.state.hub.intake.responder.close()
    if app.state.redis is not None:
        await app.state.redis.aclose()
    logger.info("relay_stopped")

# Create FastAPI app
app = FastAPI(
    title="ChatRelay",
    description="Realtime support chat relay between visitors and administrators",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

# CORS middleware - Allow frontend origins
allowed_origins = [
    "http://localhost:5173",  # Local development
    "http://localhost:3000",  # Alternative local port
    settings.frontend_url,     # Production frontend
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-ID"]
)

# Logging middleware
app.add_middleware(LoggingMiddleware)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(chats.router, tags=["chats"])
app.include_router(realtime.router, tags=["realtime"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "ChatRelay",
        "version": "0.1.0",
        "docs": "/docs" if settings.debug else "disabled",
        "endpoints": {
            "health": "/health",
            "chats": "GET /api/chats",
            "realtime": "WS /ws"
        }
    }


# uvicorn chatrelay.main:app --reload
