"""Logs and metrics of deployed resources.

Targets are resolved from the deployment record: the Lambda function from
its resources or the FunctionArn output, the API from ApiId, ApiName and the
stage in ApiUrl, the distribution from CloudFrontDistributionId.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

from webdeploy.cloud.base import MonitoringClient
from webdeploy.config import settings
from webdeploy.core.exceptions import (
    DeploymentNotFoundError,
    MonitoringTargetNotFoundError,
    ValidationError,
)
from webdeploy.core.store import RecordStore
from webdeploy.models.deployment import DeploymentRecord
from webdeploy.models.monitoring import (
    LogResourceType,
    LogsResponse,
    MetricResourceType,
    MetricStatistic,
    MetricsResponse,
)
from webdeploy.utils.logging import get_logger

DEFAULT_WINDOW = timedelta(hours=1)

FUNCTION_RESOURCE_TYPES = ("AWS::Lambda::Function", "AWS::Serverless::Function")

DEFAULT_METRICS: dict[str, str] = {
    "lambda": "Invocations",
    "api-gateway": "Count",
    "cloudfront": "Requests",
}

METRIC_NAMESPACES: dict[str, str] = {
    "lambda": "AWS/Lambda",
    "api-gateway": "AWS/ApiGateway",
    "cloudfront": "AWS/CloudFront",
}

# CloudFront publishes its metrics in us-east-1 only
CLOUDFRONT_METRICS_REGION = "us-east-1"


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def resolve_window(
    start_time: datetime | None, end_time: datetime | None
) -> tuple[datetime, datetime]:
    """Query window in UTC; defaults to the hour before ``end_time``.

    Raises:
        ValidationError: If the window is empty
    """
    end = _utc(end_time) if end_time else datetime.now(timezone.utc)
    start = _utc(start_time) if start_time else end - DEFAULT_WINDOW
    if start >= end:
        raise ValidationError(
            "start_time must be before end_time",
            issues=[
                {
                    "code": "INVALID_TIME_RANGE",
                    "message": f"{start.isoformat()} is not before {end.isoformat()}",
                    "path": "start_time",
                }
            ],
        )
    return start, end


def function_name(record: DeploymentRecord) -> str | None:
    """Physical name of the deployment's Lambda function, if it has one."""
    for resource in record.resources:
        if resource.type in FUNCTION_RESOURCE_TYPES and resource.physical_id:
            return resource.physical_id
    arn = record.outputs.get("FunctionArn")
    if arn and ":function:" in arn:
        return arn.split(":function:", 1)[1].split(":", 1)[0]
    return None


def api_stage(record: DeploymentRecord) -> str:
    stage = urlparse(record.outputs.get("ApiUrl", "")).path.strip("/")
    return stage or "prod"


class DeploymentMonitor:
    """Reads CloudWatch logs and metrics for a deployment's resources."""

    def __init__(self, store: RecordStore, monitoring: MonitoringClient):
        self.store = store
        self.monitoring = monitoring
        self.logger = get_logger("monitor")

    async def _record(self, project_name: str) -> DeploymentRecord:
        record = await self.store.get(project_name)
        if record is None:
            raise DeploymentNotFoundError(project_name)
        return record

    async def get_logs(
        self,
        project_name: str,
        resource_type: LogResourceType = "lambda",
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int = 100,
        filter_pattern: str | None = None,
        log_group_name: str | None = None,
    ) -> LogsResponse:
        """Recent log events of the deployment's function or API stage.

        ``log_group_name`` overrides the group derived from the record.

        Raises:
            DeploymentNotFoundError: If there is no record
            MonitoringTargetNotFoundError: If the deployment lacks the resource
            MonitoringQueryError: If CloudWatch Logs could not be queried
        """
        record = await self._record(project_name)
        start, end = resolve_window(start_time, end_time)
        region = record.region or settings.aws_region

        log_group = log_group_name or self._log_group(record, resource_type)
        events = await self.monitoring.fetch_logs(
            log_group, region, start, end, limit, filter_pattern
        )
        self.logger.info(
            "monitor.logs",
            project=project_name,
            log_group=log_group,
            count=len(events),
        )
        return LogsResponse(
            project_name=project_name,
            resource_type=resource_type,
            log_group=log_group,
            region=region,
            start_time=start,
            end_time=end,
            events=events,
        )

    async def get_metrics(
        self,
        project_name: str,
        resource_type: MetricResourceType = "lambda",
        metric_name: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        period: int = 300,
        statistic: MetricStatistic = "Sum",
    ) -> MetricsResponse:
        """One statistic of a CloudWatch metric of the deployment.

        Raises:
            ValidationError: If the period or window is invalid
            DeploymentNotFoundError: If there is no record
            MonitoringTargetNotFoundError: If the deployment lacks the resource
            MonitoringQueryError: If CloudWatch could not be queried
        """
        if period < 60 or period % 60:
            raise ValidationError(
                f"Invalid metric period: {period}",
                issues=[
                    {
                        "code": "INVALID_PERIOD",
                        "message": "Period must be a positive multiple of 60 seconds",
                        "path": "period",
                    }
                ],
            )

        record = await self._record(project_name)
        start, end = resolve_window(start_time, end_time)
        region = record.region or settings.aws_region
        if resource_type == "cloudfront":
            region = CLOUDFRONT_METRICS_REGION

        namespace = METRIC_NAMESPACES[resource_type]
        metric = metric_name or DEFAULT_METRICS[resource_type]
        dimensions = self._dimensions(record, resource_type)

        datapoints = await self.monitoring.fetch_metric(
            namespace, metric, dimensions, region, start, end, period, statistic
        )
        self.logger.info(
            "monitor.metrics",
            project=project_name,
            namespace=namespace,
            metric=metric,
            count=len(datapoints),
        )
        return MetricsResponse(
            project_name=project_name,
            resource_type=resource_type,
            namespace=namespace,
            metric_name=metric,
            statistic=statistic,
            period=period,
            dimensions=dimensions,
            region=region,
            start_time=start,
            end_time=end,
            datapoints=datapoints,
        )

    def _log_group(self, record: DeploymentRecord, resource_type: str) -> str:
        if resource_type == "lambda":
            name = function_name(record)
            if not name:
                raise MonitoringTargetNotFoundError(record.project_name, "Lambda function")
            return f"/aws/lambda/{name}"

        api_id = record.outputs.get("ApiId")
        if not api_id:
            raise MonitoringTargetNotFoundError(record.project_name, "API Gateway API")
        return f"API-Gateway-Execution-Logs_{api_id}/{api_stage(record)}"

    def _dimensions(self, record: DeploymentRecord, resource_type: str) -> dict[str, str]:
        if resource_type == "lambda":
            name = function_name(record)
            if not name:
                raise MonitoringTargetNotFoundError(record.project_name, "Lambda function")
            return {"FunctionName": name}

        if resource_type == "api-gateway":
            if not record.outputs.get("ApiId"):
                raise MonitoringTargetNotFoundError(record.project_name, "API Gateway API")
            return {"ApiName": record.outputs.get("ApiName") or f"{record.project_name}-api"}

        distribution_id = record.outputs.get("CloudFrontDistributionId")
        if not distribution_id:
            raise MonitoringTargetNotFoundError(record.project_name, "CloudFront distribution")
        return {"DistributionId": distribution_id, "Region": "Global"}
