"""Health check endpoints."""
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.redis import RedisClient
from db.session import get_async_session


logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    redis: str


@router.get("/health", response_model=HealthResponse, name="health")
async def health_check(
    request: Request,
    db: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """Check application, database and Redis health."""
    db_status = "healthy"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    redis_client: RedisClient = request.app.state.redis
    if not redis_client.enabled:
        redis_status = "disabled"
    elif await redis_client.ping():
        redis_status = "healthy"
    else:
        redis_status = "unhealthy"

    healthy = db_status == "healthy" and redis_status != "unhealthy"
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        database=db_status,
        redis=redis_status,
    )
