"""
Health check endpoints.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from config import settings
from database import get_session_maker
from services.job_queue import JobQueue

router = APIRouter()


async def _database_up(session_maker: async_sessionmaker) -> bool:
    async with session_maker() as db:
        await db.execute(text("SELECT 1"))
    return True


@router.get("/health")
async def health_check(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """
    Health check endpoint.
    Reports database, Redis and analysis queue status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "analyzer": "openai" if settings.OPENAI_API_KEY else "mock",
        "queue": None,
    }

    try:
        await _database_up(session_maker)
        health_status["database"] = "up"
        health_status["queue"] = await JobQueue(session_maker).stats()
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

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
async def readiness_check(session_maker: async_sessionmaker = Depends(get_session_maker)):
    """Kubernetes-style readiness probe."""
    try:
        await _database_up(session_maker)
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "database": f"down: {str(e)}"},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
