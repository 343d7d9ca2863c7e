"""Main router for API v1."""

from fastapi import APIRouter

from webdeploy.api.v1 import deployments, health, templates

router = APIRouter(prefix="/v1")

# Include sub-routers
router.include_router(health.router, tags=["health"])
router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
router.include_router(templates.router, prefix="/templates", tags=["templates"])
