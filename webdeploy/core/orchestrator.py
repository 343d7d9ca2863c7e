"""Deployment Orchestrator.

Turns a deployment request into a running deployment: validates it, resolves
the infrastructure template, applies the base stack and then runs the
provisioning steps, folding every result into the deployment record.
"""

import asyncio

from pydantic import BaseModel

from webdeploy.cloud import CloudProvider, get_cloud_provider
from webdeploy.cloud.base import ProgressCallback
from webdeploy.config import settings
from webdeploy.core.events import EventBus, get_event_bus
from webdeploy.core.exceptions import (
    DeploymentInProgressError,
    DeploymentNotFoundError,
    FrontendNotDeployedError,
    StackApplyError,
)
from webdeploy.core.store import RecordStore, get_record_store
from webdeploy.core.templates import TemplateResolver, get_template_resolver
from webdeploy.core.validation import ensure_valid, ensure_valid_frontend
from webdeploy.models.cloud import StackApplyResult, TemplateDescriptor
from webdeploy.models.deployment import (
    DeploymentFailure,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentType,
    FrontendConfiguration,
    ResourceSummary,
    StepResult,
)
from webdeploy.steps import DatabaseStep, DomainStep, FrontendUploadStep, ProvisioningStep, StepContext
from webdeploy.utils.logging import get_logger


class DeploymentOrchestrator:
    """Orchestrates deployments, one background run per project.

    Run phases:
    1. stack - Build and deploy the base infrastructure stack
    2. frontend - Upload built assets (when a frontend is configured)
    3. database and domain - Run concurrently on the stack outputs

    A failed stack fails the deployment. A failed step after a healthy stack
    leaves the deployment PARTIAL.
    """

    def __init__(
        self,
        store: RecordStore | None = None,
        cloud: CloudProvider | None = None,
        events: EventBus | None = None,
        resolver: TemplateResolver | None = None,
    ):
        self.store = store or get_record_store()
        self.cloud = cloud or get_cloud_provider()
        self.events = events or get_event_bus()
        self.resolver = resolver or get_template_resolver()
        self.logger = get_logger("orchestrator")

        # Initialize steps
        self.frontend_step = FrontendUploadStep(self.cloud)
        self.database_step = DatabaseStep(self.cloud)
        self.domain_step = DomainStep(self.cloud)

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._reserved: set[str] = set()

    def is_running(self, project_name: str) -> bool:
        """Whether a deployment of the project is still in flight."""
        if project_name in self._reserved:
            return True
        task = self._tasks.get(project_name)
        return task is not None and not task.done()

    @property
    def active_count(self) -> int:
        """Number of deployments currently in flight."""
        return sum(1 for name in self._tasks if self.is_running(name))

    async def orchestrate(self, request: DeploymentRequest) -> DeploymentRecord:
        """Start a deployment and return its IN_PROGRESS record.

        The run continues in the background; poll ``current_status``.

        Raises:
            ValidationError: If the request is invalid
            TemplateNotFoundError: If no template matches
            DeploymentInProgressError: If the project is already deploying
        """
        project_name = request.project_name

        ensure_valid(request)
        template = self.resolver.resolve(request.deployment_type, request.framework)

        if self.is_running(project_name):
            raise DeploymentInProgressError(project_name)
        self._reserved.add(project_name)

        try:
            record = await self._create_record(request)
            report = self._reporter(project_name)
            await report(
                f"Deployment attempt {record.attempt} started: {request.deployment_type.value} "
                f"({request.framework}) in {request.region} using template {template.name}"
            )

            task = asyncio.create_task(
                self._run(request, template), name=f"deploy-{project_name}"
            )
            self._tasks[project_name] = task
            task.add_done_callback(lambda t: self._on_run_done(project_name, t))
        finally:
            self._reserved.discard(project_name)

        self.logger.info(
            "orchestrator.deployment.accepted",
            project=project_name,
            attempt=record.attempt,
            template=template.name,
        )
        return await self.store.get(project_name) or record

    async def update_frontend(
        self, project_name: str, config: FrontendConfiguration
    ) -> StepResult:
        """Re-upload frontend assets to an existing deployment.

        Uses the WebsiteBucket and CloudFrontDistributionId already on the
        record; the base stack is not touched and the record status is kept.

        Raises:
            ValidationError: If the assets directory is unusable
            DeploymentNotFoundError: If nothing was deployed under the name
            DeploymentInProgressError: If a deployment of the project is running
            FrontendNotDeployedError: If the deployment has no website bucket
        """
        ensure_valid_frontend(project_name, config)

        record = await self.store.get(project_name)
        if record is None:
            raise DeploymentNotFoundError(project_name)
        if self.is_running(project_name):
            raise DeploymentInProgressError(project_name)
        if not record.outputs.get("WebsiteBucket"):
            raise FrontendNotDeployedError(project_name)

        self._reserved.add(project_name)
        try:
            report = self._reporter(project_name)
            await report(f"Frontend update started from {config.built_assets_path}")
            context = StepContext(
                project_name=project_name,
                region=record.region or settings.aws_region,
                deployment_type=record.deployment_type or DeploymentType.FRONTEND,
                stack_name=record.stack_name or f"{project_name}-stack",
                outputs=record.outputs,
                report=report,
            )
            result = await self._execute_step(self.frontend_step, config, context)
        finally:
            self._reserved.discard(project_name)

        self.logger.info(
            "orchestrator.frontend.updated",
            project=project_name,
            success=result.success,
        )
        return result

    async def current_status(self, project_name: str) -> DeploymentRecord | None:
        """Latest stored record, without contacting the control plane."""
        return await self.store.get(project_name)

    async def wait(self, project_name: str) -> DeploymentRecord | None:
        """Wait for the project's run to finish and return its record."""
        task = self._tasks.get(project_name)
        if task is not None:
            await asyncio.wait({task})
        return await self.store.get(project_name)

    async def shutdown(self) -> None:
        """Cancel every in-flight run; records keep their last written state."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            self.logger.info("orchestrator.shutdown", cancelled=len(tasks))

    async def _create_record(self, request: DeploymentRequest) -> DeploymentRecord:
        async with self.store.lock(request.project_name):
            existing = await self.store.get(request.project_name)
            record = DeploymentRecord(
                project_name=request.project_name,
                status=DeploymentStatus.IN_PROGRESS,
                deployment_type=request.deployment_type,
                framework=request.framework,
                region=request.region,
                attempt=existing.attempt + 1 if existing else 1,
                stack_name=request.stack_name,
            )
            if existing:
                # Same stack, same resource names: keep what is already known
                record.created_at = existing.created_at
                record.stack_id = existing.stack_id
                record.outputs = dict(existing.outputs)
                record.resources = list(existing.resources)
            return await self.store.put(record)

    def _reporter(self, project_name: str) -> ProgressCallback:
        """Progress sink: record, log and publish each message."""

        async def report(message: str) -> None:
            event = await self.store.append_progress(project_name, message)
            self.logger.info("orchestrator.progress", project=project_name, message=message)
            await self.events.publish_progress(project_name, message, event.timestamp)

        return report

    def _on_run_done(self, project_name: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(project_name) is task:
            del self._tasks[project_name]
        if not task.cancelled() and task.exception() is not None:
            self.logger.error(
                "orchestrator.run.crashed",
                project=project_name,
                error=str(task.exception()),
            )

    async def _run(self, request: DeploymentRequest, template: TemplateDescriptor) -> None:
        project_name = request.project_name
        report = self._reporter(project_name)

        self.logger.info("orchestrator.deployment.started", project=project_name)

        try:
            # Phase 1: Base stack
            try:
                applied = await self.cloud.stacks.apply(template, request, report)
            except StackApplyError as e:
                await self._fail_stack(project_name, e)
                return

            outputs = await self._fold_stack(project_name, applied, template)
            await report(f"Base stack {applied.stack_name} deployed")

            # Phases 2 and 3: Provisioning steps
            failed = await self._run_steps(request, outputs)
            await self._finish(project_name, failed)

        except asyncio.CancelledError:
            self.logger.warning("orchestrator.deployment.cancelled", project=project_name)
            raise
        except Exception as e:
            self.logger.exception("orchestrator.deployment.crashed", project=project_name)
            await self._fail(
                project_name,
                DeploymentFailure(
                    code="INTERNAL_ERROR",
                    message=str(e) or type(e).__name__,
                    details={"type": type(e).__name__},
                ),
            )

    async def _fold_stack(
        self,
        project_name: str,
        applied: StackApplyResult,
        template: TemplateDescriptor,
    ) -> dict[str, str]:
        resources = applied.resources or [
            ResourceSummary(
                logical_id=declared.logical_id,
                type=declared.type,
                status="DECLARED",
            )
            for declared in template.declared_resources
        ]

        def fold(record: DeploymentRecord) -> None:
            record.stack_name = applied.stack_name
            record.stack_id = applied.stack_id or record.stack_id
            record.outputs = {**record.outputs, **applied.outputs}
            record.resources = resources

        record = await self.store.update(project_name, fold)
        self.logger.info(
            "orchestrator.stack.applied",
            project=project_name,
            stack_name=applied.stack_name,
            outputs=sorted(applied.outputs),
        )
        return dict(record.outputs) if record else dict(applied.outputs)

    async def _run_steps(
        self, request: DeploymentRequest, outputs: dict[str, str]
    ) -> list[StepResult]:
        failed: list[StepResult] = []

        if request.frontend_configuration and request.deployment_type in (
            DeploymentType.FRONTEND,
            DeploymentType.FULLSTACK,
        ):
            result = await self._run_step(
                self.frontend_step, request.frontend_configuration, request, outputs
            )
            outputs.update(result.outputs)
            if not result.success:
                failed.append(result)

        # Database and domain only need the stack outputs
        pending = []
        if request.database_configuration:
            pending.append(
                self._run_step(self.database_step, request.database_configuration, request, outputs)
            )
        if request.domain_configuration:
            pending.append(
                self._run_step(self.domain_step, request.domain_configuration, request, outputs)
            )
        for result in await asyncio.gather(*pending):
            if not result.success:
                failed.append(result)

        return failed

    async def _run_step(
        self,
        step: ProvisioningStep,
        config: BaseModel,
        request: DeploymentRequest,
        outputs: dict[str, str],
    ) -> StepResult:
        context = StepContext(
            project_name=request.project_name,
            region=request.region,
            deployment_type=request.deployment_type,
            stack_name=request.stack_name,
            outputs=outputs,
            report=self._reporter(request.project_name),
        )
        return await self._execute_step(step, config, context)

    async def _execute_step(
        self, step: ProvisioningStep, config: BaseModel, context: StepContext
    ) -> StepResult:
        project_name = context.project_name
        report = context.report

        await report(f"Step {step.name} started: {step.description}")
        result = await step.provision(config, context)

        def fold(record: DeploymentRecord) -> None:
            record.outputs = {**record.outputs, **result.outputs}
            record.steps[step.name] = result.to_outcome()

        await self.store.update(project_name, fold)

        if result.success:
            await report(f"Step {step.name} completed in {result.duration_ms} ms")
        else:
            await report(f"Step {step.name} failed: {result.error}")
        await self.events.publish_step_completed(
            project_name, step.name, result.success, result.error
        )
        return result

    async def _finish(self, project_name: str, failed: list[StepResult]) -> None:
        if failed:
            names = ", ".join(result.step_name for result in failed)

            def mark_partial(record: DeploymentRecord) -> None:
                record.status = DeploymentStatus.PARTIAL
                record.error = DeploymentFailure(
                    code="STEP_FAILED",
                    message=f"{len(failed)} step(s) failed: {names}",
                    step=failed[0].step_name,
                    details={"failed_steps": {r.step_name: r.error for r in failed}},
                )
                record.message = "Base stack is deployed but some steps failed"

            record = await self.store.update(project_name, mark_partial)
            await self._reporter(project_name)(f"Deployment partially completed; failed steps: {names}")
        else:

            def mark_completed(record: DeploymentRecord) -> None:
                record.status = DeploymentStatus.COMPLETED
                record.error = None
                record.message = "Deployment completed"

            record = await self.store.update(project_name, mark_completed)
            await self._reporter(project_name)("Deployment completed")

        if record:
            self.logger.info(
                "orchestrator.deployment.finished",
                project=project_name,
                status=record.status.value,
            )
            await self.events.publish_deployment_finished(
                project_name, record.status.value, record.outputs
            )

    async def _fail_stack(self, project_name: str, error: StackApplyError) -> None:
        self.logger.error(
            "orchestrator.stack.failed",
            project=project_name,
            exit_code=error.exit_code,
            error=error.message,
        )
        await self._fail(
            project_name,
            DeploymentFailure(
                code="STACK_APPLY_FAILED",
                message=error.message,
                step="stack",
                details=error.details,
            ),
        )

    async def _fail(self, project_name: str, failure: DeploymentFailure) -> None:
        def mark_failed(record: DeploymentRecord) -> None:
            record.status = DeploymentStatus.FAILED
            record.error = failure
            record.message = failure.message

        record = await self.store.update(project_name, mark_failed)
        await self._reporter(project_name)(f"Deployment failed: {failure.message}")
        await self.events.publish_deployment_finished(
            project_name,
            DeploymentStatus.FAILED.value,
            record.outputs if record else {},
        )


# Singleton instance
_orchestrator: DeploymentOrchestrator | None = None


def get_orchestrator() -> DeploymentOrchestrator:
    """Get the deployment orchestrator singleton."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = DeploymentOrchestrator()
    return _orchestrator
