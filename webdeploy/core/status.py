"""Status reconciliation against the control plane, and the read side.

The control plane speaks CloudFormation stack statuses
(``UPDATE_ROLLBACK_COMPLETE``, ``CREATE_IN_PROGRESS``, ...). Clients see the
closed ``DeploymentStatus`` enum instead.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable

from webdeploy.cloud.base import StackInspector
from webdeploy.config import settings
from webdeploy.core.exceptions import (
    DeploymentNotFoundError,
    ReconcileQueryError,
    StackNotFoundError,
)
from webdeploy.core.store import RecordStore
from webdeploy.models.cloud import StackDescription
from webdeploy.models.deployment import (
    DeploymentListResponse,
    DeploymentRecord,
    DeploymentStatus,
    DeploymentStatusResponse,
    ResourceSummary,
)
from webdeploy.utils.logging import get_logger


def map_stack_status(native_status: str | None) -> DeploymentStatus:
    """Map a native stack status onto ``DeploymentStatus``.

    Case-insensitive; the first matching rule wins, so
    ``UPDATE_COMPLETE_CLEANUP_IN_PROGRESS`` is still in progress,
    ``UPDATE_ROLLBACK_COMPLETE`` is a failure and ``DELETE_COMPLETE`` means
    deleted.
    """
    status = (native_status or "").upper()
    if "IN_PROGRESS" in status:
        return DeploymentStatus.IN_PROGRESS
    if "FAILED" in status or "ROLLBACK" in status:
        return DeploymentStatus.FAILED
    if "DELETE" in status:
        return DeploymentStatus.DELETED
    if "COMPLETE" in status:
        return DeploymentStatus.COMPLETED
    return DeploymentStatus.UNKNOWN


def merge_resources(
    known: list[ResourceSummary], fresh: list[ResourceSummary]
) -> list[ResourceSummary]:
    """Merge resource lists by logical id.

    Known entries keep their position; an entry is replaced only by one at
    least as recent. New entries are appended in the order reported.
    """
    merged = {resource.logical_id: resource for resource in known}
    for resource in fresh:
        current = merged.get(resource.logical_id)
        if (
            current is None
            or current.last_updated is None
            or resource.last_updated is None
            or resource.last_updated >= current.last_updated
        ):
            merged[resource.logical_id] = resource
    return list(merged.values())


class StatusReconciler:
    """Folds fresh stack snapshots into deployment records.

    ``is_active`` tells whether the orchestrator is still running the
    current attempt of a project; while it is, the orchestrator owns the
    status and only outputs and resources are merged.
    """

    def __init__(
        self,
        store: RecordStore,
        inspector: StackInspector,
        is_active: Callable[[str], bool] | None = None,
    ):
        self.store = store
        self.inspector = inspector
        self.is_active = is_active or (lambda project_name: False)
        self.logger = get_logger("reconciler")

    async def reconcile(self, project_name: str) -> DeploymentRecord | None:
        """Refresh a record from the control plane.

        Returns None when there is no local record.

        Raises:
            ReconcileQueryError: If the control plane could not be queried;
                the record is left untouched
        """
        record = await self.store.get(project_name)
        if record is None:
            return None

        stack_name = record.stack_name or f"{project_name}-stack"
        region = record.region or settings.aws_region

        try:
            description: StackDescription | None = await self.inspector.describe_stack(
                stack_name, region
            )
        except StackNotFoundError:
            description = None
        except ReconcileQueryError as e:
            self.logger.warning(
                "reconciler.query_failed",
                project=project_name,
                stack_name=stack_name,
                error=e.message,
            )
            raise

        def merge(current: DeploymentRecord) -> None:
            # Checked under the store lock so a run that starts mid-describe still wins
            active = self.is_active(project_name)
            current.last_reconciled_at = datetime.utcnow()

            if description is None:
                # A stack we never saw is simply not there yet, or never will be
                if active or current.stack_id is None:
                    return
                current.status = DeploymentStatus.NOT_FOUND
                current.outputs = {}
                current.resources = []
                current.message = f"Stack {stack_name} does not exist"
                return

            if description.stack_id:
                current.stack_id = description.stack_id
            current.stack_name = description.stack_name
            current.outputs = {**current.outputs, **description.outputs}
            current.resources = merge_resources(current.resources, description.resources)

            if active:
                return

            mapped = map_stack_status(description.native_status)
            if mapped == DeploymentStatus.COMPLETED and current.status in (
                DeploymentStatus.PARTIAL,
                DeploymentStatus.FAILED,
            ) and current.error is not None:
                # A healthy stack does not undo a failed step or attempt
                return
            if mapped != current.status:
                self.logger.info(
                    "reconciler.status_changed",
                    project=project_name,
                    previous=current.status.value,
                    status=mapped.value,
                    native_status=description.native_status,
                )
            current.status = mapped
            if description.status_reason:
                current.message = description.status_reason

        updated = await self.store.update(project_name, merge)
        self.logger.debug(
            "reconciler.reconciled",
            project=project_name,
            found=description is not None,
            status=updated.status.value if updated else None,
        )
        return updated


class DeploymentQueryService:
    """Read side: status lookups with staleness-triggered refresh."""

    def __init__(
        self,
        store: RecordStore,
        reconciler: StatusReconciler,
        refresh_seconds: int | None = None,
    ):
        self.store = store
        self.reconciler = reconciler
        self.refresh_after = timedelta(
            seconds=settings.status_refresh_seconds if refresh_seconds is None else refresh_seconds
        )
        self.logger = get_logger("query")

    def is_stale(self, record: DeploymentRecord) -> bool:
        if record.last_reconciled_at is None:
            return True
        return datetime.utcnow() - record.last_reconciled_at >= self.refresh_after

    async def get_deployment_status(self, project_name: str) -> DeploymentStatusResponse:
        """Current record for a project.

        Absent projects yield the ``not_found`` sentinel. A failed refresh is
        reported in ``refresh_error`` alongside the stored record.
        """
        record = await self.store.get(project_name)
        if record is None:
            return DeploymentStatusResponse(record=DeploymentRecord.not_found(project_name))

        if not self.is_stale(record):
            return DeploymentStatusResponse(record=record)
        return await self._refreshed(record)

    async def refresh(self, project_name: str) -> DeploymentStatusResponse:
        """Force a refresh.

        Raises:
            DeploymentNotFoundError: If there is no record
            ReconcileQueryError: If the control plane could not be queried
        """
        record = await self.reconciler.reconcile(project_name)
        if record is None:
            raise DeploymentNotFoundError(project_name)
        return DeploymentStatusResponse(record=record, refreshed=True)

    async def list_deployments(self) -> DeploymentListResponse:
        """All records, refreshing the stale ones concurrently."""
        records = await self.store.list_records()
        responses = await asyncio.gather(
            *(
                self._refreshed(record) if self.is_stale(record)
                else self._stored(record)
                for record in records
            )
        )
        deployments = [response.record for response in responses]
        return DeploymentListResponse(deployments=deployments, total=len(deployments))

    async def _stored(self, record: DeploymentRecord) -> DeploymentStatusResponse:
        return DeploymentStatusResponse(record=record)

    async def _refreshed(self, record: DeploymentRecord) -> DeploymentStatusResponse:
        try:
            updated = await self.reconciler.reconcile(record.project_name)
        except ReconcileQueryError as e:
            return DeploymentStatusResponse(record=record, refresh_error=e.message)
        if updated is None:
            # Deleted between read and refresh
            return DeploymentStatusResponse(record=DeploymentRecord.not_found(record.project_name))
        return DeploymentStatusResponse(record=updated, refreshed=True)
