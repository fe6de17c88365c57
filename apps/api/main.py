"""
VeriIA - FastAPI Backend
Credit-metered writing tools: AI detection, plagiarism, humanizer, summarizer.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    tools,
    detections,
)
from services.detections import purge_expired_detections


async def _periodic_detection_purge() -> None:
    interval_minutes = max(int(settings.DETECTION_PURGE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with async_session_maker() as db:
                removed = await purge_expired_detections(db)
            if removed:
                print(f"🧹 Detection retention purge: removed={removed}")
        except Exception as exc:
            print(f"⚠️ Detection retention purge failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting VeriIA API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    purge_task = None
    if int(settings.DETECTION_PURGE_INTERVAL_MINUTES) > 0:
        purge_task = asyncio.create_task(_periodic_detection_purge())
        print(
            "📅 Detection retention purge enabled "
            f"(every {int(settings.DETECTION_PURGE_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if purge_task is not None:
        purge_task.cancel()
        try:
            await purge_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="VeriIA API",
    description="Credit-metered AI detection, plagiarism, humanizer and summarizer tools",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(tools.router, prefix="/tools", tags=["Tools"])
app.include_router(detections.router, prefix="/detections", tags=["Detections"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "VeriIA API",
        "version": "0.1.0",
        "status": "running"
    }
