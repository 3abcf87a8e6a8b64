"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from classstats.config import settings
from classstats.api import (
    health_router,
    events_router,
    schedules_router,
    stats_router,
)

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s  %(name)-25s  %(levelname)-8s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Class stats engine starting (env=%s)", settings.ENV)
    yield
    logger.info("Class stats engine shut down")


app = FastAPI(
    title="Class Stats Engine",
    description="Idempotent quiz-event ingestion into class statistics and leaderboards",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ─────────────────────────────────────────────────────────────────

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ───────────────────────────────────────────────────────────────────

app.include_router(health_router, tags=["Health"])
app.include_router(events_router, prefix="/api/events", tags=["Events"])
app.include_router(schedules_router, prefix="/api/classes", tags=["Schedules"])
app.include_router(stats_router, prefix="/api", tags=["Stats"])


@app.get("/")
async def root():
    return {
        "name": "Class Stats Engine",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/health",
    }
