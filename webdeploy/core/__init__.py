"""Core functionality for webdeploy."""

from webdeploy.core.exceptions import (
    DeploymentInProgressError,
    DeploymentNotFoundError,
    FrontendNotDeployedError,
    InvalidTemplateError,
    MonitoringQueryError,
    MonitoringTargetNotFoundError,
    ReconcileQueryError,
    StackApplyError,
    StackNotFoundError,
    StepError,
    TemplateNotFoundError,
    ValidationError,
    WebDeployError,
)

__all__ = [
    "WebDeployError",
    "ValidationError",
    "TemplateNotFoundError",
    "DeploymentNotFoundError",
    "DeploymentInProgressError",
    "StackApplyError",
    "StepError",
    "ReconcileQueryError",
    "StackNotFoundError",
    "InvalidTemplateError",
    "FrontendNotDeployedError",
    "MonitoringTargetNotFoundError",
    "MonitoringQueryError",
]
