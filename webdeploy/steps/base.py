"""Base class for provisioning steps."""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Generic, Mapping, TypeVar

from pydantic import BaseModel

from webdeploy.cloud.base import CloudProvider, ProgressCallback
from webdeploy.core.exceptions import StepError
from webdeploy.models.deployment import DeploymentType, StepResult
from webdeploy.utils.logging import get_logger

ConfigT = TypeVar("ConfigT", bound=BaseModel)


async def _discard(message: str) -> None:
    return None


@dataclass(frozen=True)
class StepContext:
    """What a step may know about the deployment it runs in."""

    project_name: str
    region: str
    deployment_type: DeploymentType
    stack_name: str
    outputs: Mapping[str, str] = field(default_factory=dict)
    report: ProgressCallback = _discard

    def __post_init__(self) -> None:
        # Steps get a read-only snapshot of the outputs known so far
        object.__setattr__(self, "outputs", MappingProxyType(dict(self.outputs)))


class ProvisioningStep(ABC, Generic[ConfigT]):
    """Base class for provisioning steps.

    Subclasses implement:
    - name: Step identifier, used as the key on the record
    - description: What the step provisions
    - _provision(): The work itself; raise StepError to fail with partial outputs

    ``provision()`` never raises for a step failure. Cancellation propagates.
    """

    def __init__(self, cloud: CloudProvider):
        self.cloud = cloud
        self.logger = get_logger(f"step.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Step name/identifier."""
        pass

    @property
    @abstractmethod
    def description(self) -> str:
        """Human-readable description of what this step provisions."""
        pass

    @abstractmethod
    async def _provision(self, config: ConfigT, context: StepContext) -> StepResult:
        pass

    async def provision(self, config: ConfigT, context: StepContext) -> StepResult:
        """Run the step and convert failures into a failed result."""
        start_time = time.time()
        self.logger.info("step.started", step=self.name, project=context.project_name)

        try:
            result = await self._provision(config, context)
        except asyncio.CancelledError:
            self.logger.warning("step.cancelled", step=self.name, project=context.project_name)
            raise
        except StepError as e:
            self.logger.error(
                "step.failed",
                step=self.name,
                project=context.project_name,
                stage=e.stage,
                error=e.message,
            )
            result = StepResult(
                step_name=self.name,
                success=False,
                outputs=e.outputs,
                error=e.message,
            )
        except Exception as e:
            self.logger.exception("step.exception", step=self.name, project=context.project_name)
            result = StepResult(step_name=self.name, success=False, error=str(e))

        result.duration_ms = int((time.time() - start_time) * 1000)
        if result.success:
            self.logger.info(
                "step.completed",
                step=self.name,
                project=context.project_name,
                duration_ms=result.duration_ms,
            )
        return result
