"""Models exchanged with cloud collaborators."""

from pydantic import BaseModel, Field

from webdeploy.models.deployment import DeploymentType, ResourceSummary


class DeclaredResource(BaseModel):
    """A resource declared in an infrastructure template."""

    logical_id: str
    type: str


class TemplateDescriptor(BaseModel):
    """An infrastructure template resolved for a deployment."""

    name: str
    path: str
    deployment_type: DeploymentType
    framework: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    parameters: list[str] = Field(default_factory=list)
    declared_resources: list[DeclaredResource] = Field(default_factory=list)


class StackApplyResult(BaseModel):
    """Result of applying the base stack."""

    stack_name: str
    stack_id: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    resources: list[ResourceSummary] = Field(default_factory=list)


class StackDescription(BaseModel):
    """Snapshot of a stack as reported by the control plane."""

    stack_name: str
    native_status: str
    status_reason: str | None = None
    stack_id: str | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    resources: list[ResourceSummary] = Field(default_factory=list)


class SyncResult(BaseModel):
    """Result of mirroring a local directory into a bucket."""

    uploaded: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.uploaded or self.deleted)
