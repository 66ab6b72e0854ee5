"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- liveness plus store / cache reachability
"""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from rideflex.api.dependencies import get_db
from rideflex.api.schemas import HealthResponse
from rideflex.domain.errors import UpstreamError
from rideflex.infrastructure.redis_client import get_redis

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        redis = await get_redis()
        await redis.ping()
    except Exception as exc:
        raise UpstreamError(f"Dependency unavailable: {exc}") from exc
    return HealthResponse()
