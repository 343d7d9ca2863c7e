"""Unit tests for data models."""

from datetime import datetime

import pytest
from pydantic import ValidationError

from webdeploy.models.deployment import (
    BackendConfiguration,
    DeploymentRecord,
    DeploymentRequest,
    DeploymentStatus,
    DeploymentType,
    FrontendConfiguration,
    ProgressEvent,
    StepResult,
)
from webdeploy.models.cloud import SyncResult


class TestDeploymentRequest:
    """Tests for DeploymentRequest."""

    def test_defaults(self):
        request = DeploymentRequest(
            project_name="my-app",
            deployment_type="backend",
            framework="express",
        )

        assert request.deployment_type == DeploymentType.BACKEND
        assert request.region == "us-east-1"
        assert request.stack_name == "my-app-stack"

    @pytest.mark.parametrize("name", ["", "My App", "app_1", "a" * 65])
    def test_invalid_project_names(self, name: str):
        with pytest.raises(ValidationError):
            DeploymentRequest(project_name=name, deployment_type="backend", framework="express")

    def test_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            DeploymentRequest(
                project_name="my-app",
                deployment_type="backend",
                framework="express",
                provider="gcp",
            )

    def test_is_immutable(self):
        request = DeploymentRequest(
            project_name="my-app", deployment_type="frontend", framework="react"
        )

        with pytest.raises(ValidationError):
            request.project_name = "other"

    def test_backend_limits(self):
        config = BackendConfiguration(built_artifacts_path="dist", runtime="nodejs18.x")
        assert (config.memory_size, config.timeout, config.stage) == (512, 30, "prod")

        with pytest.raises(ValidationError):
            BackendConfiguration(built_artifacts_path="dist", runtime="nodejs18.x", memory_size=64)

    def test_error_document_defaults_to_index(self):
        config = FrontendConfiguration(built_assets_path="build", index_document="app.html")

        assert config.effective_error_document == "app.html"


class TestDeploymentRecord:
    """Tests for DeploymentRecord."""

    def test_not_found_sentinel(self):
        record = DeploymentRecord.not_found("ghost")

        assert record.status == DeploymentStatus.NOT_FOUND
        assert record.stack_name is None
        assert record.attempt == 0
        assert "ghost" in record.message

    def test_terminal_statuses(self):
        terminal = {status for status in DeploymentStatus if status.is_terminal}

        assert terminal == {
            DeploymentStatus.COMPLETED,
            DeploymentStatus.PARTIAL,
            DeploymentStatus.FAILED,
        }

    def test_json_round_trip_keeps_progress(self):
        record = DeploymentRecord(
            project_name="demo",
            progress_log=[ProgressEvent(timestamp=datetime(2024, 1, 1), message="started")],
        )

        restored = DeploymentRecord.model_validate_json(record.model_dump_json())

        assert restored.progress_log[0].message == "started"
        assert str(restored.progress_log[0]) == "[2024-01-01T00:00:00] started"


class TestStepResult:
    """Tests for StepResult."""

    def test_to_outcome_drops_outputs(self):
        result = StepResult(
            step_name="database",
            success=True,
            resource_id="demo-table",
            outputs={"DatabaseTableName": "demo-table"},
            duration_ms=120,
        )

        outcome = result.to_outcome()

        assert outcome.success
        assert outcome.resource_id == "demo-table"
        assert outcome.duration_ms == 120
        assert outcome.completed_at is not None
        assert not hasattr(outcome, "outputs")


class TestSyncResult:
    def test_changed(self):
        assert not SyncResult(unchanged=3).changed
        assert SyncResult(deleted=["old.js"]).changed
