"""Integration tests for API endpoints."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from httpx import AsyncClient

from webdeploy.cloud.fake import FakeCloudState
from webdeploy.core.exceptions import ReconcileQueryError
from webdeploy.core.orchestrator import DeploymentOrchestrator
from webdeploy.models.deployment import DeploymentRequest
from webdeploy.models.monitoring import LogEvent


def _body(request: DeploymentRequest, **overrides) -> dict:
    return {**request.model_dump(mode="json", exclude_none=True), **overrides}


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        """Test health check returns healthy status."""
        response = await client.get("/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["cloud_backend"] == "fake"
        assert data["active_deployments"] == 0
        assert "version" in data
        assert "timestamp" in data

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: AsyncClient):
        response = await client.get("/v1/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert response.headers["X-Response-Time"].endswith("ms")


class TestDeploymentsEndpoints:
    """Tests for deployment endpoints."""

    @pytest.mark.asyncio
    async def test_create_deployment(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
    ):
        response = await client.post("/v1/deployments", json=_body(backend_request))

        assert response.status_code == 202
        data = response.json()
        assert data["project_name"] == "demo"
        assert data["status"] == "in_progress"
        assert data["attempt"] == 1

        await orchestrator.wait("demo")

        status_response = await client.get("/v1/deployments/demo")
        assert status_response.status_code == 200
        record = status_response.json()["record"]
        assert record["status"] == "completed"
        assert "ApiUrl" in record["outputs"]

    @pytest.mark.asyncio
    async def test_unknown_deployment_returns_sentinel(self, client: AsyncClient):
        response = await client.get("/v1/deployments/nonexistent")

        assert response.status_code == 404
        record = response.json()["record"]
        assert record["status"] == "not_found"
        assert record["project_name"] == "nonexistent"

    @pytest.mark.asyncio
    async def test_invalid_request_lists_issues(
        self, client: AsyncClient, backend_request: DeploymentRequest
    ):
        response = await client.post(
            "/v1/deployments", json=_body(backend_request, region="nowhere")
        )

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "VALIDATION"
        assert [issue["code"] for issue in error["details"]["issues"]] == ["INVALID_REGION"]

    @pytest.mark.asyncio
    async def test_malformed_request(self, client: AsyncClient):
        response = await client.post(
            "/v1/deployments",
            json={"project_name": "Bad Name", "deployment_type": "backend", "framework": "x"},
        )

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_duplicate_deployment_conflicts(
        self,
        client: AsyncClient,
        cloud_state: FakeCloudState,
        backend_request: DeploymentRequest,
    ):
        cloud_state.delay = 0.05

        first = await client.post("/v1/deployments", json=_body(backend_request))
        second = await client.post("/v1/deployments", json=_body(backend_request))

        assert first.status_code == 202
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "DEPLOYMENT_IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_list_deployments(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")

        response = await client.get("/v1/deployments")

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["deployments"][0]["project_name"] == "demo"

    @pytest.mark.asyncio
    async def test_refresh_query_failure(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        cloud_state: FakeCloudState,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")
        cloud_state.failures["stack.describe"] = ReconcileQueryError(
            "demo-stack", "Rate exceeded", code="Throttling"
        )

        response = await client.post("/v1/deployments/demo/refresh")

        assert response.status_code == 502
        assert response.json()["error"]["code"] == "RECONCILE_QUERY"

        # A stale read still answers, with the refresh error attached
        status_response = await client.get("/v1/deployments/demo")
        assert status_response.status_code == 200
        assert "Rate exceeded" in status_response.json()["refresh_error"]

    @pytest.mark.asyncio
    async def test_refresh_unknown(self, client: AsyncClient):
        response = await client.post("/v1/deployments/ghost/refresh")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "DEPLOYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_progress_log(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")

        response = await client.get("/v1/deployments/demo/progress")

        assert response.status_code == 200
        messages = [event["message"] for event in response.json()]
        assert messages[-1] == "Deployment completed"

    @pytest.mark.asyncio
    async def test_progress_and_stream_of_unknown_project(self, client: AsyncClient):
        assert (await client.get("/v1/deployments/ghost/progress")).status_code == 404
        assert (await client.get("/v1/deployments/ghost/stream")).status_code == 404


class TestTemplatesEndpoints:
    """Tests for template discovery endpoints."""

    @pytest.mark.asyncio
    async def test_list_templates(self, client: AsyncClient):
        response = await client.get("/v1/templates")

        assert response.status_code == 200
        names = [template["name"] for template in response.json()]
        assert names == ["backend-default", "frontend-default", "fullstack-default"]

    @pytest.mark.asyncio
    async def test_resolve_template(self, client: AsyncClient):
        response = await client.get(
            "/v1/templates/resolve",
            params={"deployment_type": "frontend", "framework": "vue"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "frontend-default"
        assert data["metadata"]["description"].startswith("Static site")

    @pytest.mark.asyncio
    async def test_resolve_unknown_type(self, client: AsyncClient):
        response = await client.get(
            "/v1/templates/resolve",
            params={"deployment_type": "mobile", "framework": "swift"},
        )

        assert response.status_code == 422


class TestFrontendUpdateEndpoint:
    """Tests for POST /deployments/{project_name}/frontend."""

    @pytest.mark.asyncio
    async def test_update_frontend(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        cloud_state: FakeCloudState,
        fullstack_request: DeploymentRequest,
        frontend_assets: Path,
    ):
        await client.post("/v1/deployments", json=_body(fullstack_request))
        await orchestrator.wait("shop")
        (frontend_assets / "index.html").write_text("<!doctype html><title>v2</title>\n")

        response = await client.post(
            "/v1/deployments/shop/frontend",
            json={"built_assets_path": str(frontend_assets)},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["step_name"] == "frontend"
        assert data["connection_info"]["uploaded"] == 1
        assert len(cloud_state.invalidations) == 2

    @pytest.mark.asyncio
    async def test_update_frontend_of_backend(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
        frontend_assets: Path,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")

        response = await client.post(
            "/v1/deployments/demo/frontend",
            json={"built_assets_path": str(frontend_assets)},
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "FRONTEND_NOT_DEPLOYED"

    @pytest.mark.asyncio
    async def test_update_frontend_unknown(self, client: AsyncClient, frontend_assets: Path):
        response = await client.post(
            "/v1/deployments/ghost/frontend",
            json={"built_assets_path": str(frontend_assets)},
        )

        assert response.status_code == 404


class TestMonitoringEndpoints:
    """Tests for the logs and metrics endpoints."""

    @pytest.mark.asyncio
    async def test_logs(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        cloud_state: FakeCloudState,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        record = await orchestrator.wait("demo")
        function = next(r.physical_id for r in record.resources if r.logical_id == "ApiFunction")
        now = datetime.now(timezone.utc)
        cloud_state.log_events[f"/aws/lambda/{function}"] = [
            LogEvent(timestamp=now - timedelta(minutes=2), message="START RequestId: 1"),
            LogEvent(timestamp=now - timedelta(minutes=1), message="END RequestId: 1"),
        ]

        response = await client.get(
            "/v1/deployments/demo/logs", params={"filter_pattern": "START", "limit": 10}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["log_group"] == f"/aws/lambda/{function}"
        assert [event["message"] for event in data["events"]] == ["START RequestId: 1"]

    @pytest.mark.asyncio
    async def test_logs_limit_bounds(self, client: AsyncClient):
        response = await client.get("/v1/deployments/demo/logs", params={"limit": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_metrics(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")

        response = await client.get(
            "/v1/deployments/demo/metrics",
            params={"resource_type": "api-gateway", "statistic": "Average", "period": 60},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["namespace"] == "AWS/ApiGateway"
        assert data["metric_name"] == "Count"
        assert data["dimensions"] == {"ApiName": "demo-api"}
        assert data["datapoints"] == []

    @pytest.mark.asyncio
    async def test_metrics_without_distribution(
        self,
        client: AsyncClient,
        orchestrator: DeploymentOrchestrator,
        backend_request: DeploymentRequest,
    ):
        await client.post("/v1/deployments", json=_body(backend_request))
        await orchestrator.wait("demo")

        response = await client.get(
            "/v1/deployments/demo/metrics", params={"resource_type": "cloudfront"}
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "MONITORING_TARGET_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_monitoring_unknown_project(self, client: AsyncClient):
        assert (await client.get("/v1/deployments/ghost/logs")).status_code == 404
        assert (await client.get("/v1/deployments/ghost/metrics")).status_code == 404
