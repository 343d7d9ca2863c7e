"""Unit tests for status mapping and reconciliation."""

from datetime import datetime, timedelta

import pytest

from webdeploy.cloud.base import StackInspector
from webdeploy.cloud.fake import FakeCloudState, FakeStackInspector
from webdeploy.core.exceptions import DeploymentNotFoundError, ReconcileQueryError
from webdeploy.core.status import (
    DeploymentQueryService,
    StatusReconciler,
    map_stack_status,
    merge_resources,
)
from webdeploy.core.store import InMemoryRecordStore
from webdeploy.models.cloud import StackDescription
from webdeploy.models.deployment import (
    DeploymentFailure,
    DeploymentRecord,
    DeploymentStatus,
    ResourceSummary,
)


def _resource(logical_id: str, status: str, last_updated: datetime | None = None) -> ResourceSummary:
    return ResourceSummary(
        logical_id=logical_id,
        type="AWS::Lambda::Function",
        status=status,
        last_updated=last_updated,
    )


class TestMapStackStatus:
    """Tests for map_stack_status."""

    @pytest.mark.parametrize(
        ("native", "expected"),
        [
            ("CREATE_COMPLETE", DeploymentStatus.COMPLETED),
            ("UPDATE_IN_PROGRESS", DeploymentStatus.IN_PROGRESS),
            ("UPDATE_ROLLBACK_COMPLETE", DeploymentStatus.FAILED),
            ("DELETE_COMPLETE", DeploymentStatus.DELETED),
            ("WEIRD_STATE", DeploymentStatus.UNKNOWN),
        ],
    )
    def test_documented_examples(self, native: str, expected: DeploymentStatus):
        assert map_stack_status(native) == expected

    def test_in_progress_wins_over_everything(self):
        assert map_stack_status("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS") == DeploymentStatus.IN_PROGRESS
        assert map_stack_status("ROLLBACK_IN_PROGRESS") == DeploymentStatus.IN_PROGRESS
        assert map_stack_status("DELETE_IN_PROGRESS") == DeploymentStatus.IN_PROGRESS

    def test_failures(self):
        assert map_stack_status("CREATE_FAILED") == DeploymentStatus.FAILED
        assert map_stack_status("ROLLBACK_COMPLETE") == DeploymentStatus.FAILED
        assert map_stack_status("DELETE_FAILED") == DeploymentStatus.FAILED

    def test_case_insensitive(self):
        assert map_stack_status("create_complete") == DeploymentStatus.COMPLETED
        assert map_stack_status("Update_In_Progress") == DeploymentStatus.IN_PROGRESS

    def test_empty_and_missing(self):
        assert map_stack_status("") == DeploymentStatus.UNKNOWN
        assert map_stack_status(None) == DeploymentStatus.UNKNOWN


class TestMergeResources:
    """Tests for merge_resources."""

    def test_newer_entry_replaces_older(self):
        now = datetime.utcnow()
        known = [_resource("Fn", "CREATE_IN_PROGRESS", now)]
        fresh = [_resource("Fn", "CREATE_COMPLETE", now + timedelta(seconds=5))]

        merged = merge_resources(known, fresh)

        assert [r.status for r in merged] == ["CREATE_COMPLETE"]

    def test_older_entry_is_ignored(self):
        now = datetime.utcnow()
        known = [_resource("Fn", "UPDATE_COMPLETE", now)]
        fresh = [_resource("Fn", "CREATE_COMPLETE", now - timedelta(minutes=1))]

        merged = merge_resources(known, fresh)

        assert merged[0].status == "UPDATE_COMPLETE"

    def test_keeps_known_and_appends_new(self):
        known = [_resource("Api", "DECLARED"), _resource("Fn", "DECLARED")]
        fresh = [_resource("Bucket", "CREATE_COMPLETE"), _resource("Fn", "CREATE_COMPLETE")]

        merged = merge_resources(known, fresh)

        assert [r.logical_id for r in merged] == ["Api", "Fn", "Bucket"]
        assert merged[1].status == "CREATE_COMPLETE"

    def test_nothing_is_dropped(self):
        known = [_resource("Api", "CREATE_COMPLETE")]
        assert merge_resources(known, []) == known


class FailingInspector(StackInspector):
    """Inspector whose control plane is unreachable."""

    async def describe_stack(self, stack_name: str, region: str) -> StackDescription:
        raise ReconcileQueryError(stack_name, "Rate exceeded", code="Throttling")


class TestStatusReconciler:
    """Tests for StatusReconciler."""

    @pytest.fixture
    def state(self) -> FakeCloudState:
        return FakeCloudState()

    @pytest.fixture
    def store(self) -> InMemoryRecordStore:
        return InMemoryRecordStore()

    @pytest.fixture
    def reconciler(self, store: InMemoryRecordStore, state: FakeCloudState) -> StatusReconciler:
        return StatusReconciler(store, FakeStackInspector(state))

    async def _seed(self, store: InMemoryRecordStore, **fields) -> DeploymentRecord:
        record = DeploymentRecord(
            project_name="demo",
            stack_name="demo-stack",
            region="us-east-1",
            attempt=1,
            **fields,
        )
        return await store.put(record)

    def _stack(self, state: FakeCloudState, native_status: str, **fields) -> None:
        state.stacks["demo-stack"] = StackDescription(
            stack_name="demo-stack",
            native_status=native_status,
            stack_id="arn:aws:cloudformation:us-east-1:123456789012:stack/demo-stack/abc",
            **fields,
        )

    @pytest.mark.asyncio
    async def test_absent_record_returns_none(self, reconciler: StatusReconciler):
        assert await reconciler.reconcile("ghost") is None

    @pytest.mark.asyncio
    async def test_maps_native_status(self, reconciler, store, state):
        await self._seed(store, status=DeploymentStatus.IN_PROGRESS)
        self._stack(
            state,
            "UPDATE_ROLLBACK_COMPLETE",
            status_reason="Resource ApiFunction failed to update",
        )

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.FAILED
        assert record.message == "Resource ApiFunction failed to update"
        assert record.stack_id.endswith("/abc")
        assert record.last_reconciled_at is not None

    @pytest.mark.asyncio
    async def test_outputs_are_merged_not_dropped(self, reconciler, store, state):
        await self._seed(
            store,
            status=DeploymentStatus.COMPLETED,
            outputs={"DatabaseTableName": "demo-table", "ApiUrl": "https://old"},
        )
        self._stack(state, "UPDATE_COMPLETE", outputs={"ApiUrl": "https://new"})

        record = await reconciler.reconcile("demo")

        assert record.outputs == {"DatabaseTableName": "demo-table", "ApiUrl": "https://new"}

    @pytest.mark.asyncio
    async def test_active_run_keeps_status(self, store, state):
        await self._seed(store, status=DeploymentStatus.IN_PROGRESS)
        self._stack(state, "CREATE_COMPLETE", outputs={"ApiId": "abc"})
        reconciler = StatusReconciler(
            store, FakeStackInspector(state), is_active=lambda name: name == "demo"
        )

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.IN_PROGRESS
        assert record.outputs["ApiId"] == "abc"

    @pytest.mark.asyncio
    async def test_run_starting_during_describe_keeps_status(self, store, state):
        await self._seed(store, status=DeploymentStatus.COMPLETED)
        self._stack(state, "UPDATE_ROLLBACK_COMPLETE", status_reason="old attempt")
        running: set[str] = set()
        inspector = FakeStackInspector(state)
        original_describe = inspector.describe_stack

        async def describe_then_start(stack_name, region):
            description = await original_describe(stack_name, region)
            # A new run claims the project after the stack was read
            running.add("demo")
            return description

        inspector.describe_stack = describe_then_start
        reconciler = StatusReconciler(store, inspector, is_active=lambda name: name in running)

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.COMPLETED
        assert record.message != "old attempt"

    @pytest.mark.asyncio
    async def test_healthy_stack_does_not_hide_failed_step(self, reconciler, store, state):
        await self._seed(
            store,
            status=DeploymentStatus.PARTIAL,
            error=DeploymentFailure(code="STEP_FAILED", message="domain failed", step="domain"),
        )
        self._stack(state, "UPDATE_COMPLETE")

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.PARTIAL
        assert record.error.step == "domain"

    @pytest.mark.asyncio
    async def test_missing_stack_marks_not_found(self, reconciler, store):
        await self._seed(
            store,
            status=DeploymentStatus.COMPLETED,
            stack_id="arn:aws:cloudformation:us-east-1:123456789012:stack/demo-stack/abc",
            outputs={"ApiUrl": "https://x"},
            resources=[_resource("Fn", "CREATE_COMPLETE")],
        )

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.NOT_FOUND
        assert record.outputs == {}
        assert record.resources == []

    @pytest.mark.asyncio
    async def test_missing_stack_after_failed_first_attempt(self, reconciler, store):
        await self._seed(
            store,
            status=DeploymentStatus.FAILED,
            error=DeploymentFailure(code="STACK_APPLY_FAILED", message="sam deploy exited 1"),
        )

        record = await reconciler.reconcile("demo")

        assert record.status == DeploymentStatus.FAILED
        assert record.error.code == "STACK_APPLY_FAILED"

    @pytest.mark.asyncio
    async def test_query_failure_leaves_record_untouched(self, store):
        seeded = await self._seed(
            store, status=DeploymentStatus.COMPLETED, outputs={"ApiUrl": "https://x"}
        )
        reconciler = StatusReconciler(store, FailingInspector())

        with pytest.raises(ReconcileQueryError) as exc_info:
            await reconciler.reconcile("demo")

        assert exc_info.value.code == "Throttling"
        stored = await store.get("demo")
        assert stored.status == DeploymentStatus.COMPLETED
        assert stored.outputs == {"ApiUrl": "https://x"}
        assert stored.last_updated == seeded.last_updated
        assert stored.last_reconciled_at is None

    @pytest.mark.asyncio
    async def test_last_updated_never_regresses(self, reconciler, store, state):
        seeded = await self._seed(store, status=DeploymentStatus.IN_PROGRESS)
        self._stack(state, "CREATE_COMPLETE")

        first = await reconciler.reconcile("demo")
        second = await reconciler.reconcile("demo")

        assert seeded.last_updated < first.last_updated < second.last_updated


class TestDeploymentQueryService:
    """Tests for DeploymentQueryService."""

    @pytest.fixture
    def state(self) -> FakeCloudState:
        state = FakeCloudState()
        state.stacks["demo-stack"] = StackDescription(
            stack_name="demo-stack",
            native_status="CREATE_COMPLETE",
            stack_id="arn:aws:cloudformation:us-east-1:123456789012:stack/demo-stack/abc",
        )
        return state

    @pytest.fixture
    def store(self) -> InMemoryRecordStore:
        return InMemoryRecordStore()

    def _service(self, store, inspector, refresh_seconds: int = 30) -> DeploymentQueryService:
        return DeploymentQueryService(
            store, StatusReconciler(store, inspector), refresh_seconds=refresh_seconds
        )

    async def _seed(self, store: InMemoryRecordStore) -> None:
        await store.put(
            DeploymentRecord(
                project_name="demo",
                status=DeploymentStatus.IN_PROGRESS,
                stack_name="demo-stack",
                region="us-east-1",
                attempt=1,
            )
        )

    @pytest.mark.asyncio
    async def test_unknown_project_returns_not_found_sentinel(self, store, state):
        service = self._service(store, FakeStackInspector(state))

        response = await service.get_deployment_status("ghost")

        assert response.record.status == DeploymentStatus.NOT_FOUND
        assert response.record.project_name == "ghost"
        assert "stack.describe" not in state.calls

    @pytest.mark.asyncio
    async def test_stale_record_is_refreshed(self, store, state):
        await self._seed(store)
        service = self._service(store, FakeStackInspector(state))

        response = await service.get_deployment_status("demo")

        assert response.refreshed is True
        assert response.record.status == DeploymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_fresh_record_is_served_from_store(self, store, state):
        await self._seed(store)
        service = self._service(store, FakeStackInspector(state), refresh_seconds=3600)
        await service.refresh("demo")
        state.calls.clear()

        response = await service.get_deployment_status("demo")

        assert response.refreshed is False
        assert state.calls == []

    @pytest.mark.asyncio
    async def test_failed_refresh_returns_stored_record(self, store):
        await self._seed(store)
        service = self._service(store, FailingInspector())

        response = await service.get_deployment_status("demo")

        assert response.record.status == DeploymentStatus.IN_PROGRESS
        assert "Rate exceeded" in response.refresh_error

    @pytest.mark.asyncio
    async def test_forced_refresh_errors(self, store, state):
        service = self._service(store, FakeStackInspector(state))
        with pytest.raises(DeploymentNotFoundError):
            await service.refresh("ghost")

        await self._seed(store)
        with pytest.raises(ReconcileQueryError):
            await self._service(store, FailingInspector()).refresh("demo")

    @pytest.mark.asyncio
    async def test_list_refreshes_stale_records(self, store, state):
        await self._seed(store)
        await store.put(DeploymentRecord(project_name="alpha", stack_name="alpha-stack", attempt=1))
        service = self._service(store, FakeStackInspector(state))

        listing = await service.list_deployments()

        assert listing.total == 2
        statuses = {record.project_name: record.status for record in listing.deployments}
        assert statuses["demo"] == DeploymentStatus.COMPLETED
        # Never-created stack on an unfinished attempt is left alone
        assert statuses["alpha"] == DeploymentStatus.IN_PROGRESS
