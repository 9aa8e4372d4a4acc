"""FastAPI application: lifespan, CORS and the chat routes."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from narrative_tracker.config import get_settings
from narrative_tracker.database import engine, init_db
from narrative_tracker.routers import chats
from narrative_tracker.utils.logging_config import get_logger

logger = get_logger("tracker.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    settings = get_settings()
    if not settings.extraction_model:
        logger.warning("EXTRACTION_MODEL is not set; extraction requests will fail until it is")
    yield
    await engine.dispose()


app = FastAPI(title=get_settings().app_name, version="1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chats.router)
