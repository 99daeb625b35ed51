"""
VolumeScaler Controller - Health Check Endpoints.

Liveness и Readiness probes для Kubernetes.

- /health/live: процесс запущен и event loop отвечает
- /health/ready: standby реплика, или leader с синхронизированным Change Feed
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

router = APIRouter()


class HealthResponse(BaseModel):
    """Ответ health check."""
    status: str
    timestamp: datetime
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Ответ readiness check."""
    status: str  # ok, fail
    timestamp: datetime
    checks: dict
    leader: Optional[str] = None


@router.get(
    "/live",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness Probe",
    description="Проверка что приложение запущено и отвечает"
)
async def liveness(request: Request):
    """
    Liveness probe.

    Всегда возвращает 200 OK если приложение запущено.
    """
    settings = request.app.state.settings
    return HealthResponse(
        status="ok",
        timestamp=datetime.now(timezone.utc),
        version=settings.app.version,
        service=settings.app.name
    )


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    summary="Readiness Probe",
    description="Проверка готовности controller (leader election + initial sync)"
)
async def readiness(request: Request):
    """
    Readiness probe.

    Returns:
        200 OK - реплика в standby, или leader с синхронизированным Change Feed
        503 Service Unavailable - startup не завершён, sync не выполнен или fatal ошибка
    """
    runtime = request.app.state.runtime
    runtime_status = runtime.status()
    ready = runtime.is_ready()

    response = ReadinessResponse(
        status="ok" if ready else "fail",
        timestamp=datetime.now(timezone.utc),
        checks={
            "runtime": "ok" if runtime_status["started"] else "not_started",
            "leader_election": runtime_status["leader_election"],
            "change_feed": "synced" if runtime_status["change_feed_synced"] else "not_synced",
        },
        leader=runtime_status["leader"],
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json"),
    )
