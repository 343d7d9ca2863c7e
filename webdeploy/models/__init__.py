"""Data models for webdeploy."""

from webdeploy.models.cloud import (
    DeclaredResource,
    StackApplyResult,
    StackDescription,
    SyncResult,
    TemplateDescriptor,
)
from webdeploy.models.deployment import (
    AttributeDefinition,
    BackendConfiguration,
    DatabaseConfiguration,
    DeploymentFailure,
    DeploymentListResponse,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentStatusResponse,
    DeploymentType,
    DomainConfiguration,
    FrontendConfiguration,
    KeySchemaElement,
    ProgressEvent,
    ResourceSummary,
    StepOutcome,
    StepResult,
)
from webdeploy.models.monitoring import (
    LogEvent,
    LogsResponse,
    MetricDatapoint,
    MetricsResponse,
)

__all__ = [
    # Request models
    "DeploymentType",
    "DeploymentRequest",
    "BackendConfiguration",
    "FrontendConfiguration",
    "DatabaseConfiguration",
    "AttributeDefinition",
    "KeySchemaElement",
    "DomainConfiguration",
    # Record models
    "DeploymentStatus",
    "DeploymentRecord",
    "DeploymentFailure",
    "ProgressEvent",
    "ResourceSummary",
    "StepOutcome",
    "StepResult",
    "DeploymentStatusResponse",
    "DeploymentListResponse",
    # Cloud models
    "DeclaredResource",
    "TemplateDescriptor",
    "StackApplyResult",
    "StackDescription",
    "SyncResult",
    # Monitoring models
    "LogEvent",
    "LogsResponse",
    "MetricDatapoint",
    "MetricsResponse",
]
