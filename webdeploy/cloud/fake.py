"""In-memory cloud used for local development and tests.

State lives on a shared ``FakeCloudState`` so a stack applied by the deployer
is visible to the inspector, its bucket to the storage client and its
distribution to the CDN client. Any operation can be made to fail by
registering an exception under its name in ``state.failures``.
"""

import asyncio
import hashlib
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from webdeploy.cloud.base import (
    ApiDomainClient,
    CdnClient,
    CertificateManager,
    CloudProvider,
    DatabaseBackend,
    DnsClient,
    MonitoringClient,
    ObjectStorage,
    ProgressCallback,
    StackDeployer,
    StackInspector,
    certificate_covers,
    file_md5,
)
from webdeploy.core.exceptions import PreconditionFailedError, StackNotFoundError
from webdeploy.models.cloud import (
    StackApplyResult,
    StackDescription,
    TemplateDescriptor,
)
from webdeploy.models.deployment import DeploymentRequest, ResourceSummary
from webdeploy.models.monitoring import LogEvent, MetricDatapoint
from webdeploy.utils.logging import get_logger

logger = get_logger(__name__)

ACCOUNT_ID = "123456789012"


class FakeCloudError(Exception):
    """Error raised by fake collaborators when a failure is injected."""


def _short_hash(value: str, length: int = 10) -> str:
    return hashlib.sha1(value.encode()).hexdigest()[:length]


class FakeCloudState:
    """Shared state of the fake cloud."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.failures: dict[str, Exception] = {}
        self.calls: list[str] = []

        self.stacks: dict[str, StackDescription] = {}
        self.buckets: dict[str, dict[str, str]] = {}
        self.distributions: dict[str, dict[str, Any]] = {}
        self.invalidations: list[tuple[str, list[str]]] = []
        self.certificates: dict[str, dict[str, Any]] = {}
        self.hosted_zones: dict[str, str] = {}
        self.dns_records: dict[tuple[str, str], dict[str, str]] = {}
        self.api_domains: dict[str, dict[str, str]] = {}
        self.base_path_mappings: dict[str, tuple[str, str]] = {}
        self.tables: dict[str, dict[str, Any]] = {}
        self.security_groups: dict[str, str] = {}
        self.subnet_groups: dict[str, list[str]] = {}
        self.clusters: dict[str, dict[str, Any]] = {}
        self.log_events: dict[str, list[LogEvent]] = {}
        self.metrics: dict[tuple[str, str, tuple], list[MetricDatapoint]] = {}
        self.log_queries: list[tuple[str, str]] = []
        self.metric_queries: list[tuple[tuple, str]] = []

    async def call(self, operation: str) -> None:
        """Record an operation, simulate latency and raise injected failures."""
        self.calls.append(operation)
        if self.delay:
            await asyncio.sleep(self.delay)
        error = self.failures.get(operation)
        if error is not None:
            raise error


class _FakeClient:
    def __init__(self, state: FakeCloudState):
        self.state = state


class FakeStackDeployer(_FakeClient, StackDeployer):
    """Creates stack outputs from the template's declared resources."""

    async def apply(
        self,
        template: TemplateDescriptor,
        request: DeploymentRequest,
        report: ProgressCallback,
    ) -> StackApplyResult:
        await report(f"Building template {template.name}")
        await self.state.call("stack.apply")

        stack_name = request.stack_name
        existing = self.state.stacks.get(stack_name)
        native_status = "UPDATE_COMPLETE" if existing else "CREATE_COMPLETE"
        stack_id = (
            existing.stack_id
            if existing
            else f"arn:aws:cloudformation:{request.region}:{ACCOUNT_ID}:stack/{stack_name}/{uuid4()}"
        )

        suffix = _short_hash(request.project_name)
        outputs: dict[str, str] = {}
        resources: list[ResourceSummary] = []
        now = datetime.utcnow()

        for declared in template.declared_resources:
            physical_id = f"{request.project_name}-{declared.logical_id.lower()}"
            if declared.type in ("AWS::Serverless::Function", "AWS::Lambda::Function"):
                physical_id = f"{request.project_name}-{declared.logical_id}-{suffix}"
                outputs["FunctionArn"] = (
                    f"arn:aws:lambda:{request.region}:{ACCOUNT_ID}:function:{physical_id}"
                )
            elif declared.type in ("AWS::Serverless::Api", "AWS::ApiGateway::RestApi"):
                physical_id = suffix
                stage = (
                    request.backend_configuration.stage
                    if request.backend_configuration
                    else "prod"
                )
                outputs["ApiId"] = suffix
                outputs["ApiName"] = f"{request.project_name}-api"
                outputs["ApiUrl"] = (
                    f"https://{suffix}.execute-api.{request.region}.amazonaws.com/{stage}"
                )
            elif declared.type == "AWS::S3::Bucket":
                physical_id = f"{request.project_name}-website-{suffix}".lower()
                self.state.buckets.setdefault(physical_id, {})
                outputs["WebsiteBucket"] = physical_id
            elif declared.type == "AWS::CloudFront::Distribution":
                physical_id = f"E{suffix.upper()}"
                domain = f"d{suffix}.cloudfront.net"
                self.state.distributions.setdefault(
                    physical_id,
                    {
                        "config": {
                            "Aliases": {"Quantity": 0},
                            "ViewerCertificate": {"CloudFrontDefaultCertificate": True},
                            "Enabled": True,
                        },
                        "etag": "E1",
                        "domain": domain,
                    },
                )
                outputs["CloudFrontDistributionId"] = physical_id
                outputs["WebsiteURL"] = f"https://{domain}"

            resources.append(
                ResourceSummary(
                    logical_id=declared.logical_id,
                    type=declared.type,
                    status=native_status,
                    physical_id=physical_id,
                    last_updated=now,
                )
            )

        self.state.stacks[stack_name] = StackDescription(
            stack_name=stack_name,
            native_status=native_status,
            stack_id=stack_id,
            outputs=outputs,
            resources=resources,
        )
        await report(f"Stack {stack_name} reached {native_status}")
        logger.info("fake_cloud.stack_applied", stack_name=stack_name, outputs=outputs)

        return StackApplyResult(
            stack_name=stack_name,
            stack_id=stack_id,
            outputs=outputs,
            resources=resources,
        )


class FakeStackInspector(_FakeClient, StackInspector):
    async def describe_stack(self, stack_name: str, region: str) -> StackDescription:
        await self.state.call("stack.describe")
        stack = self.state.stacks.get(stack_name)
        if stack is None:
            raise StackNotFoundError(stack_name, region)
        return stack.model_copy(deep=True)


class FakeObjectStorage(_FakeClient, ObjectStorage):
    async def list_objects(self, bucket: str) -> dict[str, str]:
        await self.state.call("storage.list")
        if bucket not in self.state.buckets:
            raise FakeCloudError(f"NoSuchBucket: {bucket}")
        return dict(self.state.buckets[bucket])

    async def put_object(
        self, bucket: str, key: str, path: Path, content_type: str
    ) -> None:
        await self.state.call("storage.put")
        self.state.buckets.setdefault(bucket, {})[key] = file_md5(path)

    async def delete_objects(self, bucket: str, keys: list[str]) -> None:
        await self.state.call("storage.delete")
        objects = self.state.buckets.get(bucket, {})
        for key in keys:
            objects.pop(key, None)


class FakeCdnClient(_FakeClient, CdnClient):
    def _distribution(self, distribution_id: str) -> dict[str, Any]:
        try:
            return self.state.distributions[distribution_id]
        except KeyError:
            raise FakeCloudError(f"NoSuchDistribution: {distribution_id}") from None

    async def get_distribution_config(self, distribution_id: str) -> tuple[dict[str, Any], str]:
        await self.state.call("cdn.get_config")
        distribution = self._distribution(distribution_id)
        return dict(distribution["config"]), distribution["etag"]

    async def update_distribution_config(
        self, distribution_id: str, config: dict[str, Any], etag: str
    ) -> str:
        await self.state.call("cdn.update_config")
        distribution = self._distribution(distribution_id)
        if distribution["etag"] != etag:
            raise PreconditionFailedError(
                f"ETag mismatch for distribution {distribution_id}",
                {"expected": distribution["etag"], "received": etag},
            )
        distribution["config"] = dict(config)
        distribution["etag"] = f"E{int(distribution['etag'][1:]) + 1}"
        return distribution["etag"]

    async def get_domain_name(self, distribution_id: str) -> str:
        await self.state.call("cdn.get_domain")
        return self._distribution(distribution_id)["domain"]

    async def create_invalidation(self, distribution_id: str, paths: list[str]) -> str:
        await self.state.call("cdn.invalidate")
        self._distribution(distribution_id)
        self.state.invalidations.append((distribution_id, list(paths)))
        return f"I{len(self.state.invalidations)}"


class FakeCertificateManager(_FakeClient, CertificateManager):
    async def find_certificate(self, domain_names: list[str], region: str) -> str | None:
        await self.state.call("acm.find")
        for arn, cert in self.state.certificates.items():
            if cert["status"] != "ISSUED" or cert["region"] != region:
                continue
            if all(certificate_covers(cert["names"], name) for name in domain_names):
                return arn
        return None

    async def request_certificate(self, domain_names: list[str], region: str) -> str:
        await self.state.call("acm.request")
        arn = f"arn:aws:acm:{region}:{ACCOUNT_ID}:certificate/{uuid4()}"
        self.state.certificates[arn] = {
            "domain": domain_names[0],
            "names": list(domain_names),
            "region": region,
            "status": "PENDING_VALIDATION",
        }
        return arn

    async def wait_until_validated(self, certificate_arn: str) -> None:
        await self.state.call("acm.wait")
        self.state.certificates[certificate_arn]["status"] = "ISSUED"


class FakeDnsClient(_FakeClient, DnsClient):
    async def find_hosted_zone(self, domain_name: str) -> str | None:
        await self.state.call("dns.find_zone")
        candidates = [
            (zone_name, zone_id)
            for zone_name, zone_id in self.state.hosted_zones.items()
            if domain_name == zone_name or domain_name.endswith(f".{zone_name}")
        ]
        if not candidates:
            return None
        # Most specific zone wins
        return max(candidates, key=lambda item: len(item[0]))[1]

    async def upsert_alias(
        self,
        hosted_zone_id: str,
        record_name: str,
        target_dns_name: str,
        target_hosted_zone_id: str,
    ) -> None:
        await self.state.call("dns.upsert")
        self.state.dns_records[(hosted_zone_id, record_name)] = {
            "type": "A",
            "target": target_dns_name,
            "target_zone": target_hosted_zone_id,
        }


class FakeApiDomainClient(_FakeClient, ApiDomainClient):
    async def ensure_domain_name(
        self, domain_name: str, certificate_arn: str, region: str | None = None
    ) -> str:
        await self.state.call("apigw.domain")
        region = region or "us-east-1"
        domain = self.state.api_domains.setdefault(
            domain_name,
            {
                "certificate_arn": certificate_arn,
                "region": region,
                "regional_domain_name": (
                    f"d-{_short_hash(domain_name)}.execute-api.{region}.amazonaws.com"
                ),
            },
        )
        return domain["regional_domain_name"]

    async def ensure_base_path_mapping(
        self, domain_name: str, api_id: str, stage: str, region: str | None = None
    ) -> None:
        await self.state.call("apigw.mapping")
        self.state.base_path_mappings[domain_name] = (api_id, stage)


class FakeDatabaseBackend(_FakeClient, DatabaseBackend):
    async def create_table(self, table_spec: dict[str, Any]) -> None:
        await self.state.call("db.create_table")
        name = table_spec["TableName"]
        if name not in self.state.tables:
            self.state.tables[name] = {
                **table_spec,
                "TableArn": f"arn:aws:dynamodb:us-east-1:{ACCOUNT_ID}:table/{name}",
                "TableStatus": "CREATING",
            }

    async def wait_table_active(self, table_name: str) -> None:
        await self.state.call("db.wait_table")
        self.state.tables[table_name]["TableStatus"] = "ACTIVE"

    async def describe_table(self, table_name: str) -> dict[str, Any]:
        await self.state.call("db.describe_table")
        return dict(self.state.tables[table_name])

    async def ensure_security_group(self, group_name: str, description: str) -> str:
        await self.state.call("db.security_group")
        return self.state.security_groups.setdefault(
            group_name, f"sg-{_short_hash(group_name, 8)}"
        )

    async def ensure_subnet_group(self, group_name: str, description: str) -> str:
        await self.state.call("db.subnet_group")
        self.state.subnet_groups.setdefault(group_name, ["subnet-a", "subnet-b"])
        return group_name

    async def create_cluster(self, cluster_spec: dict[str, Any]) -> None:
        await self.state.call("db.create_cluster")
        identifier = cluster_spec["DBClusterIdentifier"]
        if identifier not in self.state.clusters:
            self.state.clusters[identifier] = {
                **cluster_spec,
                "Status": "creating",
                "Endpoint": f"{identifier}.cluster-{_short_hash(identifier, 12)}.rds.amazonaws.com",
                "Port": 5432 if "postgresql" in cluster_spec.get("Engine", "") else 3306,
            }

    async def wait_cluster_available(self, cluster_identifier: str) -> None:
        await self.state.call("db.wait_cluster")
        self.state.clusters[cluster_identifier]["Status"] = "available"

    async def describe_cluster(self, cluster_identifier: str) -> dict[str, Any]:
        await self.state.call("db.describe_cluster")
        return dict(self.state.clusters[cluster_identifier])


class FakeMonitoringClient(_FakeClient, MonitoringClient):
    """Serves log events and datapoints seeded on the state."""

    async def fetch_logs(
        self,
        log_group: str,
        region: str,
        start_time: datetime,
        end_time: datetime,
        limit: int,
        filter_pattern: str | None = None,
    ) -> list[LogEvent]:
        await self.state.call("logs.fetch")
        self.state.log_queries.append((log_group, region))
        events = [
            event
            for event in self.state.log_events.get(log_group, [])
            if start_time <= event.timestamp <= end_time
            and (not filter_pattern or filter_pattern in event.message)
        ]
        return sorted(events, key=lambda event: event.timestamp)[:limit]

    async def fetch_metric(
        self,
        namespace: str,
        metric_name: str,
        dimensions: dict[str, str],
        region: str,
        start_time: datetime,
        end_time: datetime,
        period: int,
        statistic: str,
    ) -> list[MetricDatapoint]:
        await self.state.call("metrics.fetch")
        key = (namespace, metric_name, tuple(sorted(dimensions.items())))
        self.state.metric_queries.append((key, region))
        points = [
            point
            for point in self.state.metrics.get(key, [])
            if start_time <= point.timestamp <= end_time
        ]
        return sorted(points, key=lambda point: point.timestamp)


def create_fake_provider(state: FakeCloudState | None = None) -> CloudProvider:
    """Build a provider whose collaborators share one in-memory state."""
    state = state or FakeCloudState()
    return CloudProvider(
        name="fake",
        stacks=FakeStackDeployer(state),
        inspector=FakeStackInspector(state),
        storage=FakeObjectStorage(state),
        cdn=FakeCdnClient(state),
        certificates=FakeCertificateManager(state),
        dns=FakeDnsClient(state),
        api_domains=FakeApiDomainClient(state),
        databases=FakeDatabaseBackend(state),
        monitoring=FakeMonitoringClient(state),
    )
