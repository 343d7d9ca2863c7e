"""Pytest configuration and fixtures."""

import os

# Keep tests off the real cloud and the on-disk record store
os.environ["CLOUD_BACKEND"] = "fake"
os.environ["RECORD_STORE_BACKEND"] = "memory"

from pathlib import Path  # noqa: E402

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from webdeploy.api.deps import get_deployment_orchestrator  # noqa: E402
from webdeploy.cloud import CloudProvider  # noqa: E402
from webdeploy.cloud.fake import FakeCloudState, create_fake_provider  # noqa: E402
from webdeploy.core.events import EventBus  # noqa: E402
from webdeploy.core.orchestrator import DeploymentOrchestrator  # noqa: E402
from webdeploy.core.store import InMemoryRecordStore  # noqa: E402
from webdeploy.core.templates import TemplateResolver  # noqa: E402
from webdeploy.main import app  # noqa: E402
from webdeploy.models.deployment import (  # noqa: E402
    AttributeDefinition,
    BackendConfiguration,
    DatabaseConfiguration,
    DeploymentRequest,
    DeploymentType,
    FrontendConfiguration,
    KeySchemaElement,
)


@pytest.fixture
def cloud_state() -> FakeCloudState:
    """Fresh in-memory cloud."""
    return FakeCloudState()


@pytest.fixture
def cloud(cloud_state: FakeCloudState) -> CloudProvider:
    """Fake provider backed by ``cloud_state``."""
    return create_fake_provider(cloud_state)


@pytest.fixture
def store() -> InMemoryRecordStore:
    """Create a fresh record store for tests."""
    return InMemoryRecordStore()


@pytest.fixture
def events() -> EventBus:
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def resolver() -> TemplateResolver:
    """Resolver over the templates shipped with the package."""
    return TemplateResolver()


@pytest.fixture
def orchestrator(
    store: InMemoryRecordStore,
    cloud: CloudProvider,
    events: EventBus,
    resolver: TemplateResolver,
) -> DeploymentOrchestrator:
    """Create orchestrator with test dependencies."""
    return DeploymentOrchestrator(store=store, cloud=cloud, events=events, resolver=resolver)


@pytest.fixture
async def client(orchestrator: DeploymentOrchestrator) -> AsyncClient:
    """Create an async test client wired to the test orchestrator."""
    app.dependency_overrides[get_deployment_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    # Cleanup after test
    await orchestrator.shutdown()
    app.dependency_overrides.clear()


@pytest.fixture
def backend_artifacts(tmp_path: Path) -> Path:
    """A built Node.js backend."""
    artifacts = tmp_path / "backend-dist"
    artifacts.mkdir()
    (artifacts / "index.js").write_text("exports.handler = async () => ({ statusCode: 200 });\n")
    (artifacts / "package.json").write_text('{"name": "demo", "version": "1.0.0"}\n')
    return artifacts


@pytest.fixture
def frontend_assets(tmp_path: Path) -> Path:
    """A built static frontend."""
    assets = tmp_path / "frontend-dist"
    (assets / "static").mkdir(parents=True)
    (assets / "index.html").write_text("<!doctype html><title>demo</title>\n")
    (assets / "static" / "app.js").write_text("console.log('demo');\n")
    return assets


@pytest.fixture
def backend_request(backend_artifacts: Path) -> DeploymentRequest:
    """Backend-only deployment of an express app."""
    return DeploymentRequest(
        project_name="demo",
        deployment_type=DeploymentType.BACKEND,
        framework="express",
        region="us-east-1",
        backend_configuration=BackendConfiguration(
            built_artifacts_path=str(backend_artifacts),
            runtime="nodejs18.x",
            entry_point="index.js",
        ),
    )


@pytest.fixture
def fullstack_request(backend_artifacts: Path, frontend_assets: Path) -> DeploymentRequest:
    """Fullstack deployment with a DynamoDB table."""
    return DeploymentRequest(
        project_name="shop",
        deployment_type=DeploymentType.FULLSTACK,
        framework="express-react",
        region="us-east-1",
        backend_configuration=BackendConfiguration(
            built_artifacts_path=str(backend_artifacts),
            runtime="nodejs18.x",
            entry_point="index.js",
        ),
        frontend_configuration=FrontendConfiguration(
            built_assets_path=str(frontend_assets),
        ),
        database_configuration=DatabaseConfiguration(
            database_type="dynamodb",
            attribute_definitions=[AttributeDefinition(name="id", type="S")],
            key_schema=[KeySchemaElement(name="id", type="HASH")],
        ),
    )
