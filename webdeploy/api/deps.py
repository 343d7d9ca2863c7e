"""Dependency injection for API endpoints."""

from typing import Annotated

from fastapi import Depends

from webdeploy.core.events import EventBus, get_event_bus
from webdeploy.core.monitoring import DeploymentMonitor
from webdeploy.core.orchestrator import DeploymentOrchestrator, get_orchestrator
from webdeploy.core.status import DeploymentQueryService, StatusReconciler
from webdeploy.core.templates import TemplateResolver, get_template_resolver


async def get_events() -> EventBus:
    """Get the event bus."""
    return get_event_bus()


async def get_deployment_orchestrator() -> DeploymentOrchestrator:
    """Get the deployment orchestrator."""
    return get_orchestrator()


async def get_query_service(
    orchestrator: Annotated[DeploymentOrchestrator, Depends(get_deployment_orchestrator)],
) -> DeploymentQueryService:
    """Build the query service over the orchestrator's store and cloud."""
    reconciler = StatusReconciler(
        orchestrator.store,
        orchestrator.cloud.inspector,
        is_active=orchestrator.is_running,
    )
    return DeploymentQueryService(orchestrator.store, reconciler)


async def get_monitor(
    orchestrator: Annotated[DeploymentOrchestrator, Depends(get_deployment_orchestrator)],
) -> DeploymentMonitor:
    """Build the log and metric reader over the orchestrator's store and cloud."""
    return DeploymentMonitor(orchestrator.store, orchestrator.cloud.monitoring)


async def get_templates() -> TemplateResolver:
    """Get the template resolver."""
    return get_template_resolver()


# Type aliases for cleaner signatures
EventsDep = Annotated[EventBus, Depends(get_events)]
OrchestratorDep = Annotated[DeploymentOrchestrator, Depends(get_deployment_orchestrator)]
QueryDep = Annotated[DeploymentQueryService, Depends(get_query_service)]
MonitorDep = Annotated[DeploymentMonitor, Depends(get_monitor)]
TemplatesDep = Annotated[TemplateResolver, Depends(get_templates)]
