"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis

from config import settings

router = APIRouter()


def _provider_status() -> dict:
    return {
        "winston": "configured" if settings.WINSTON_API_KEY else "missing",
        "openrouter": "configured" if settings.OPENROUTER_API_KEY else "missing",
    }


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns database, redis and provider key status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "providers": _provider_status(),
    }

    try:
        from database import engine
        from sqlalchemy import text
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    # Rate limiting falls back to in-process counters, so redis only degrades.
    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once both provider keys are set."""
    missing = []
    if not settings.WINSTON_API_KEY:
        missing.append("WINSTON_API_KEY")
    if not settings.OPENROUTER_API_KEY:
        missing.append("OPENROUTER_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
