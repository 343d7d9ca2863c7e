"""Custom exceptions for webdeploy."""

from typing import Any


class WebDeployError(Exception):
    """Base exception for webdeploy."""

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(WebDeployError):
    """The deployment request is malformed or inconsistent."""

    status_code = 422

    def __init__(
        self,
        message: str,
        issues: list[dict[str, Any]] | None = None,
        warnings: list[dict[str, Any]] | None = None,
    ):
        self.issues = issues or []
        self.warnings = warnings or []
        super().__init__(message, {"issues": self.issues, "warnings": self.warnings})


class TemplateNotFoundError(WebDeployError):
    """No infrastructure template matches the deployment type and framework."""

    status_code = 400

    def __init__(self, deployment_type: str, framework: str, searched: list[str] | None = None):
        super().__init__(
            f"No template found for deployment type '{deployment_type}' "
            f"and framework '{framework}'",
            {
                "deployment_type": deployment_type,
                "framework": framework,
                "searched": searched or [],
            },
        )


class DeploymentNotFoundError(WebDeployError):
    """No deployment record exists for the project."""

    status_code = 404

    def __init__(self, project_name: str):
        super().__init__(
            f"Deployment not found: {project_name}",
            {"project_name": project_name},
        )


class DeploymentInProgressError(WebDeployError):
    """A deployment for the project is already running."""

    status_code = 409

    def __init__(self, project_name: str):
        super().__init__(
            f"A deployment of '{project_name}' is already in progress",
            {"project_name": project_name},
        )


class StackApplyError(WebDeployError):
    """Applying the base infrastructure stack failed."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ):
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        super().__init__(
            f"Stack apply failed: {message}",
            {
                "exit_code": exit_code,
                "stdout": stdout[-2000:] if stdout else None,
                "stderr": stderr[-2000:] if stderr else None,
            },
        )


class StepError(WebDeployError):
    """A provisioning step failed.

    ``outputs`` carries whatever the step produced before failing so the
    orchestrator can keep it on the record.
    """

    def __init__(
        self,
        step: str,
        message: str,
        outputs: dict[str, str] | None = None,
        stage: str | None = None,
    ):
        self.step = step
        self.stage = stage
        self.outputs = outputs or {}
        details: dict[str, Any] = {"step": step}
        if stage:
            details["stage"] = stage
        super().__init__(message, details)


class ReconcileQueryError(WebDeployError):
    """Querying the control plane for stack status failed."""

    status_code = 502

    def __init__(self, stack_name: str, message: str, code: str | None = None):
        self.stack_name = stack_name
        self.code = code
        super().__init__(
            f"Failed to query stack '{stack_name}': {message}",
            {"stack_name": stack_name, "code": code},
        )


class StackNotFoundError(WebDeployError):
    """The control plane has no stack with this name."""

    status_code = 404

    def __init__(self, stack_name: str, region: str | None = None):
        self.stack_name = stack_name
        self.region = region
        super().__init__(
            f"Stack {stack_name} does not exist",
            {"stack_name": stack_name, "region": region},
        )


class PreconditionFailedError(WebDeployError):
    """A remote configuration changed since it was read (stale ETag)."""

    status_code = 412


class InvalidTemplateError(WebDeployError):
    """An infrastructure template could not be parsed."""

    def __init__(self, source: str, message: str):
        super().__init__(
            f"Invalid template {source}: {message}",
            {"source": source},
        )


class FrontendNotDeployedError(WebDeployError):
    """The deployment has no website bucket to update."""

    status_code = 409

    def __init__(self, project_name: str):
        super().__init__(
            f"Deployment '{project_name}' has no WebsiteBucket output; "
            "deploy a frontend or fullstack application first",
            {"project_name": project_name},
        )


class MonitoringTargetNotFoundError(WebDeployError):
    """The deployment has no resource to read logs or metrics from."""

    status_code = 404

    def __init__(self, project_name: str, resource_type: str):
        super().__init__(
            f"Deployment '{project_name}' has no {resource_type} resource",
            {"project_name": project_name, "resource_type": resource_type},
        )


class MonitoringQueryError(WebDeployError):
    """Reading logs or metrics from CloudWatch failed."""

    status_code = 502

    def __init__(self, target: str, message: str, code: str | None = None):
        self.code = code
        super().__init__(
            f"Failed to read {target}: {message}",
            {"target": target, "code": code},
        )
