"""Template discovery endpoints."""

from fastapi import APIRouter, Query

from webdeploy.api.deps import TemplatesDep
from webdeploy.models.cloud import TemplateDescriptor
from webdeploy.models.deployment import DeploymentType

router = APIRouter()


@router.get(
    "",
    response_model=list[TemplateDescriptor],
    summary="List infrastructure templates",
)
async def list_templates(resolver: TemplatesDep) -> list[TemplateDescriptor]:
    """Return every template in the templates directory."""
    return resolver.list_templates()


@router.get(
    "/resolve",
    response_model=TemplateDescriptor,
    summary="Resolve the template for a deployment type and framework",
)
async def resolve_template(
    resolver: TemplatesDep,
    deployment_type: DeploymentType = Query(...),
    framework: str = Query(..., min_length=1),
) -> TemplateDescriptor:
    """Show which template a deployment would use."""
    return resolver.resolve(deployment_type, framework)
