"""Health check endpoints."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from webdeploy import __version__
from webdeploy.api.deps import OrchestratorDep
from webdeploy.config import settings

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    version: str
    environment: str
    cloud_backend: str
    active_deployments: int
    timestamp: datetime


@router.get("/health", response_model=HealthResponse)
async def health_check(orchestrator: OrchestratorDep) -> HealthResponse:
    """Report service health and which cloud backend deployments go to."""
    return HealthResponse(
        version=__version__,
        environment=settings.app_env,
        cloud_backend=orchestrator.cloud.name,
        active_deployments=orchestrator.active_count,
        timestamp=datetime.utcnow(),
    )
