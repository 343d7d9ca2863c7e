"""Deployment data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class DeploymentType(str, Enum):
    """Kind of application being deployed."""

    BACKEND = "backend"
    FRONTEND = "frontend"
    FULLSTACK = "fullstack"


class DeploymentStatus(str, Enum):
    """Reconciled deployment status."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    DELETED = "deleted"
    UNKNOWN = "unknown"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in (
            DeploymentStatus.COMPLETED,
            DeploymentStatus.PARTIAL,
            DeploymentStatus.FAILED,
        )


# Request models


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class BackendConfiguration(_FrozenModel):
    """Lambda + API Gateway settings for the backend."""

    built_artifacts_path: str
    runtime: str
    startup_script: str | None = None
    entry_point: str | None = None
    architecture: Literal["x86_64", "arm64"] = "x86_64"
    memory_size: int = Field(default=512, ge=128, le=10240)
    timeout: int = Field(default=30, ge=1, le=900)
    stage: str = "prod"
    cors: bool = True
    environment: dict[str, str] = Field(default_factory=dict)


class FrontendConfiguration(_FrozenModel):
    """S3 + CloudFront settings for the static frontend."""

    built_assets_path: str
    index_document: str = "index.html"
    error_document: str | None = None

    @property
    def effective_error_document(self) -> str:
        return self.error_document or self.index_document


class AttributeDefinition(_FrozenModel):
    name: str
    type: Literal["S", "N", "B"]


class KeySchemaElement(_FrozenModel):
    name: str
    type: Literal["HASH", "RANGE"]


class DatabaseConfiguration(_FrozenModel):
    """Optional database attached to the deployment."""

    database_type: Literal["dynamodb", "aurora-serverless"] = "dynamodb"

    # DynamoDB
    table_name: str | None = None
    attribute_definitions: list[AttributeDefinition] = Field(default_factory=list)
    key_schema: list[KeySchemaElement] = Field(default_factory=list)
    billing_mode: Literal["PAY_PER_REQUEST", "PROVISIONED"] = "PAY_PER_REQUEST"
    read_capacity: int | None = None
    write_capacity: int | None = None

    # Aurora Serverless
    database_name: str | None = None
    engine: Literal["postgresql", "mysql"] = "postgresql"
    max_capacity: int = Field(default=2, ge=1)


class DomainConfiguration(_FrozenModel):
    """Custom domain and TLS certificate settings."""

    domain_name: str
    certificate_arn: str | None = None
    create_certificate: bool = True
    create_dns_records: bool = True
    hosted_zone_id: str | None = None


class DeploymentRequest(_FrozenModel):
    """Request to deploy an application."""

    project_name: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9-]+$")
    deployment_type: DeploymentType
    framework: str = Field(..., min_length=1)
    region: str = "us-east-1"

    backend_configuration: BackendConfiguration | None = None
    frontend_configuration: FrontendConfiguration | None = None
    database_configuration: DatabaseConfiguration | None = None
    domain_configuration: DomainConfiguration | None = None

    @property
    def stack_name(self) -> str:
        return f"{self.project_name}-stack"


# Record models


class ProgressEvent(BaseModel):
    """A timestamped progress message."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    message: str

    def __str__(self) -> str:
        return f"[{self.timestamp.isoformat()}] {self.message}"


class ResourceSummary(BaseModel):
    """One resource belonging to the deployment."""

    logical_id: str
    type: str
    status: str
    physical_id: str | None = None
    last_updated: datetime | None = None


class DeploymentFailure(BaseModel):
    """Structured failure stored on a record."""

    code: str
    message: str
    step: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class StepOutcome(BaseModel):
    """Summary of a provisioning step kept on the record."""

    success: bool
    resource_id: str | None = None
    connection_info: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    duration_ms: int | None = None
    completed_at: datetime | None = None


class DeploymentRecord(BaseModel):
    """Current known state of a project's deployment."""

    project_name: str
    status: DeploymentStatus = DeploymentStatus.IN_PROGRESS

    deployment_type: DeploymentType | None = None
    framework: str | None = None
    region: str | None = None
    attempt: int = 0

    stack_name: str | None = None
    stack_id: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    resources: list[ResourceSummary] = Field(default_factory=list)
    steps: dict[str, StepOutcome] = Field(default_factory=dict)

    progress_log: list[ProgressEvent] = Field(default_factory=list)
    error: DeploymentFailure | None = None
    message: str | None = None

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    last_updated: datetime = Field(default_factory=datetime.utcnow)
    last_reconciled_at: datetime | None = None

    @classmethod
    def not_found(cls, project_name: str) -> "DeploymentRecord":
        """Sentinel returned when nothing is deployed under this name."""
        return cls(
            project_name=project_name,
            status=DeploymentStatus.NOT_FOUND,
            message=f"No deployment found for project: {project_name}",
        )


class StepResult(BaseModel):
    """Outcome of a single provisioning step."""

    step_name: str
    success: bool
    resource_id: str | None = None
    connection_info: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    duration_ms: int = 0

    def to_outcome(self) -> StepOutcome:
        return StepOutcome(
            success=self.success,
            resource_id=self.resource_id,
            connection_info=self.connection_info,
            error=self.error,
            duration_ms=self.duration_ms,
            completed_at=datetime.utcnow(),
        )


class DeploymentStatusResponse(BaseModel):
    """API response wrapping a record with refresh diagnostics."""

    record: DeploymentRecord
    refreshed: bool = False
    refresh_error: str | None = None


class DeploymentListResponse(BaseModel):
    """Response for listing deployments."""

    deployments: list[DeploymentRecord]
    total: int
