"""Deployment endpoints."""

import asyncio
import json
from datetime import datetime

from fastapi import APIRouter, Query, status
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from webdeploy.api.deps import EventsDep, MonitorDep, OrchestratorDep, QueryDep
from webdeploy.core.events import TERMINAL_EVENTS, Event
from webdeploy.core.exceptions import DeploymentNotFoundError
from webdeploy.models.deployment import (
    DeploymentListResponse,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentStatusResponse,
    FrontendConfiguration,
    ProgressEvent,
    StepResult,
)
from webdeploy.models.monitoring import (
    LogResourceType,
    LogsResponse,
    MetricResourceType,
    MetricStatistic,
    MetricsResponse,
)

router = APIRouter()

KEEPALIVE_SECONDS = 30.0


@router.post(
    "",
    response_model=DeploymentRecord,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a deployment",
)
async def create_deployment(
    request: DeploymentRequest,
    orchestrator: OrchestratorDep,
) -> DeploymentRecord:
    """Validate the request and start deploying in the background.

    Returns the IN_PROGRESS record; poll ``GET /deployments/{project_name}``
    or stream ``/stream`` for progress.
    """
    return await orchestrator.orchestrate(request)


@router.get(
    "",
    response_model=DeploymentListResponse,
    summary="List deployments",
)
async def list_deployments(query: QueryDep) -> DeploymentListResponse:
    """List all deployments, refreshing stale ones from the control plane."""
    return await query.list_deployments()


@router.get(
    "/{project_name}",
    response_model=DeploymentStatusResponse,
    responses={404: {"model": DeploymentStatusResponse}},
    summary="Get deployment status",
)
async def get_deployment(project_name: str, query: QueryDep):
    """Get the current status of a deployment.

    Unknown projects return 404 with a ``not_found`` record in the body.
    """
    response = await query.get_deployment_status(project_name)
    if response.record.status == DeploymentStatus.NOT_FOUND and response.record.stack_name is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=response.model_dump(mode="json"),
        )
    return response


@router.post(
    "/{project_name}/refresh",
    response_model=DeploymentStatusResponse,
    summary="Refresh deployment status from the control plane",
)
async def refresh_deployment(project_name: str, query: QueryDep) -> DeploymentStatusResponse:
    """Force a reconcile against the control plane."""
    return await query.refresh(project_name)


@router.get(
    "/{project_name}/progress",
    response_model=list[ProgressEvent],
    summary="Get the deployment progress log",
)
async def get_progress(project_name: str, orchestrator: OrchestratorDep) -> list[ProgressEvent]:
    """Return the full progress log, oldest first."""
    record = await orchestrator.current_status(project_name)
    if record is None:
        raise DeploymentNotFoundError(project_name)
    return record.progress_log


@router.post(
    "/{project_name}/frontend",
    response_model=StepResult,
    summary="Update frontend assets of a deployment",
)
async def update_frontend(
    project_name: str,
    config: FrontendConfiguration,
    orchestrator: OrchestratorDep,
) -> StepResult:
    """Upload new built assets to the deployment's bucket and invalidate the CDN.

    The base stack is left as it is. A failed upload is returned as a failed
    step result.
    """
    return await orchestrator.update_frontend(project_name, config)


@router.get(
    "/{project_name}/logs",
    response_model=LogsResponse,
    summary="Get CloudWatch logs of a deployment",
)
async def get_logs(
    project_name: str,
    monitor: MonitorDep,
    resource_type: LogResourceType = "lambda",
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    limit: int = Query(100, ge=1, le=10000),
    filter_pattern: str | None = None,
    log_group_name: str | None = None,
) -> LogsResponse:
    """Log events of the deployment's function or API stage, oldest first.

    The window defaults to the last hour.
    """
    return await monitor.get_logs(
        project_name,
        resource_type=resource_type,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        filter_pattern=filter_pattern,
        log_group_name=log_group_name,
    )


@router.get(
    "/{project_name}/metrics",
    response_model=MetricsResponse,
    summary="Get CloudWatch metrics of a deployment",
)
async def get_metrics(
    project_name: str,
    monitor: MonitorDep,
    resource_type: MetricResourceType = "lambda",
    metric_name: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    period: int = Query(300, ge=60),
    statistic: MetricStatistic = "Sum",
) -> MetricsResponse:
    """One statistic of a function, API or distribution metric."""
    return await monitor.get_metrics(
        project_name,
        resource_type=resource_type,
        metric_name=metric_name,
        start_time=start_time,
        end_time=end_time,
        period=period,
        statistic=statistic,
    )


@router.get(
    "/{project_name}/stream",
    summary="Stream deployment events (SSE)",
)
async def stream_deployment_events(
    project_name: str,
    orchestrator: OrchestratorDep,
    events: EventsDep,
) -> EventSourceResponse:
    """Stream real-time progress for a deployment using Server-Sent Events."""
    record = await orchestrator.current_status(project_name)
    if record is None:
        raise DeploymentNotFoundError(project_name)

    async def event_generator():
        queue = events.subscribe(project_name)

        try:
            # Send initial status
            yield {
                "event": "connected",
                "data": json.dumps(
                    {"project_name": project_name, "status": record.status.value}
                ),
            }

            if not orchestrator.is_running(project_name):
                yield {
                    "event": "deployment_finished",
                    "data": json.dumps({"status": record.status.value, "outputs": record.outputs}),
                }
                return

            # Stream events until the deployment finishes or the client disconnects
            while True:
                try:
                    event: Event = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                    sse = event.to_sse()
                    yield {"event": sse["event"], "data": json.dumps(sse["data"])}

                    if event.event_type in TERMINAL_EVENTS:
                        break

                except asyncio.TimeoutError:
                    # Send keepalive
                    yield {"event": "keepalive", "data": "{}"}

        finally:
            events.unsubscribe(project_name, queue)

    return EventSourceResponse(event_generator())
