"""
Health Check Endpoints

Probes for load balancers and container orchestration. PostgreSQL is a
hard dependency; Redis is soft because the session store falls back to
process memory.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clinicbot.config import settings
from clinicbot.infra.database import check_db_health
from clinicbot.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

API_VERSION = "0.1.0"

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


async def _run_check(name: str, check) -> str:
    try:
        return "ok" if await check() else "failed"
    except Exception as e:
        logger.error(f"Readiness check {name} errored: {e}")
        return "error"


@router.get("", response_model=HealthResponse, summary="Basic health check")
async def health() -> HealthResponse:
    """200 whenever the process is serving requests."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=API_VERSION,
        environment=settings.app_env,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={503: {"description": "Database unavailable"}},
)
async def ready():
    """
    Database down -> 503 not_ready.
    Redis down -> 200 degraded (sessions kept in memory).
    """
    checks = {
        "database": await _run_check("database", check_db_health),
        "redis": await _run_check("redis", check_redis_health),
    }

    if checks["database"] != "ok":
        logger.warning(f"Readiness failed: {checks}")
        response = ReadyResponse(
            status="not_ready",
            timestamp=datetime.now(timezone.utc),
            checks=checks,
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return ReadyResponse(
        status="ready" if checks["redis"] == "ok" else "degraded",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )


@router.get("/live", response_model=LiveResponse, summary="Liveness probe")
async def live() -> LiveResponse:
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
