"""Interfaces over the cloud control plane.

Every collaborator has an AWS implementation (``webdeploy.cloud.aws``) and an
in-memory one (``webdeploy.cloud.fake``). Steps and the orchestrator only see
these interfaces.
"""

import asyncio
import hashlib
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable

from webdeploy.models.cloud import (
    StackApplyResult,
    StackDescription,
    SyncResult,
    TemplateDescriptor,
)
from webdeploy.models.deployment import DeploymentRequest
from webdeploy.models.monitoring import LogEvent, MetricDatapoint

ProgressCallback = Callable[[str], Awaitable[None]]


class StackDeployer(ABC):
    """Applies the base infrastructure stack."""

    @abstractmethod
    async def apply(
        self,
        template: TemplateDescriptor,
        request: DeploymentRequest,
        report: ProgressCallback,
    ) -> StackApplyResult:
        """Build, deploy and wait for the stack.

        Raises:
            StackApplyError: If the stack could not be applied
        """


class StackInspector(ABC):
    """Reads stack status from the control plane."""

    @abstractmethod
    async def describe_stack(self, stack_name: str, region: str) -> StackDescription:
        """Describe a stack.

        Raises:
            StackNotFoundError: If the stack does not exist
            ReconcileQueryError: If the query itself failed
        """


def file_md5(path: Path) -> str:
    """MD5 hex digest of a file, matching single-part S3 ETags."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class ObjectStorage(ABC):
    """Bucket storage with an idempotent directory mirror."""

    @abstractmethod
    async def list_objects(self, bucket: str) -> dict[str, str]:
        """Return ``{key: md5}`` for every object in the bucket."""

    @abstractmethod
    async def put_object(
        self, bucket: str, key: str, path: Path, content_type: str
    ) -> None:
        """Upload a single file."""

    @abstractmethod
    async def delete_objects(self, bucket: str, keys: list[str]) -> None:
        """Delete objects by key."""

    async def sync(self, local_dir: str | Path, bucket: str) -> SyncResult:
        """Mirror ``local_dir`` into ``bucket``.

        Uploads new or changed files, deletes remote keys that no longer
        exist locally and leaves identical files alone.
        """
        root = Path(local_dir)
        if not root.is_dir():
            # An empty listing would delete every remote object
            raise FileNotFoundError(f"Asset directory does not exist: {root}")

        local: dict[str, Path] = {
            path.relative_to(root).as_posix(): path
            for path in sorted(root.rglob("*"))
            if path.is_file()
        }
        remote = await self.list_objects(bucket)

        result = SyncResult()
        for key, path in local.items():
            if remote.get(key) == await asyncio.to_thread(file_md5, path):
                result.unchanged += 1
                continue
            content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
            await self.put_object(bucket, key, path, content_type)
            result.uploaded.append(key)

        stale = sorted(key for key in remote if key not in local)
        if stale:
            await self.delete_objects(bucket, stale)
            result.deleted.extend(stale)

        return result


class CdnClient(ABC):
    """CloudFront distribution operations."""

    @abstractmethod
    async def get_distribution_config(self, distribution_id: str) -> tuple[dict[str, Any], str]:
        """Return ``(config, etag)``."""

    @abstractmethod
    async def update_distribution_config(
        self, distribution_id: str, config: dict[str, Any], etag: str
    ) -> str:
        """Submit a config guarded by ``etag``; returns the new etag.

        Raises:
            PreconditionFailedError: If the etag is stale
        """

    @abstractmethod
    async def get_domain_name(self, distribution_id: str) -> str:
        """Return the distribution's ``*.cloudfront.net`` domain."""

    @abstractmethod
    async def create_invalidation(self, distribution_id: str, paths: list[str]) -> str:
        """Invalidate cached paths; returns the invalidation id."""


class CertificateManager(ABC):
    """ACM certificate operations.

    CloudFront only accepts certificates from us-east-1; regional API
    Gateway domains need one from the API's own region.
    """

    @abstractmethod
    async def find_certificate(self, domain_names: list[str], region: str) -> str | None:
        """Return the ARN of an issued certificate covering every name, if any."""

    @abstractmethod
    async def request_certificate(self, domain_names: list[str], region: str) -> str:
        """Request a DNS-validated certificate; the first name is primary, the rest SANs."""

    @abstractmethod
    async def wait_until_validated(self, certificate_arn: str) -> None:
        """Block until the certificate is issued."""


def arn_region(arn: str) -> str | None:
    """Region part of an ARN, or None for global or malformed ARNs."""
    parts = arn.split(":")
    if len(parts) < 6 or parts[0] != "arn":
        return None
    return parts[3] or None


def certificate_covers(certificate_names: list[str], domain_name: str) -> bool:
    """True if a certificate with these names is valid for ``domain_name``.

    A wildcard name covers exactly one extra label.
    """
    target = domain_name.lower().rstrip(".")
    for name in certificate_names:
        name = name.lower().rstrip(".")
        if name == target:
            return True
        if name.startswith("*."):
            label, _, parent = target.partition(".")
            if label and parent == name[2:]:
                return True
    return False


class DnsClient(ABC):
    """Route53 operations."""

    @abstractmethod
    async def find_hosted_zone(self, domain_name: str) -> str | None:
        """Return the hosted zone id serving the domain, if any."""

    @abstractmethod
    async def upsert_alias(
        self,
        hosted_zone_id: str,
        record_name: str,
        target_dns_name: str,
        target_hosted_zone_id: str,
    ) -> None:
        """Create or update an A alias record."""


class ApiDomainClient(ABC):
    """API Gateway custom domain operations."""

    @abstractmethod
    async def ensure_domain_name(
        self, domain_name: str, certificate_arn: str, region: str | None = None
    ) -> str:
        """Create the regional custom domain if missing; returns its target DNS name."""

    @abstractmethod
    async def ensure_base_path_mapping(
        self, domain_name: str, api_id: str, stage: str, region: str | None = None
    ) -> None:
        """Map the API stage onto the custom domain."""


class DatabaseBackend(ABC):
    """DynamoDB and Aurora Serverless primitives.

    ``create_*`` methods are idempotent: an existing resource with the same
    name is reused.
    """

    @abstractmethod
    async def create_table(self, table_spec: dict[str, Any]) -> None: ...

    @abstractmethod
    async def wait_table_active(self, table_name: str) -> None: ...

    @abstractmethod
    async def describe_table(self, table_name: str) -> dict[str, Any]: ...

    @abstractmethod
    async def ensure_security_group(self, group_name: str, description: str) -> str: ...

    @abstractmethod
    async def ensure_subnet_group(self, group_name: str, description: str) -> str: ...

    @abstractmethod
    async def create_cluster(self, cluster_spec: dict[str, Any]) -> None: ...

    @abstractmethod
    async def wait_cluster_available(self, cluster_identifier: str) -> None: ...

    @abstractmethod
    async def describe_cluster(self, cluster_identifier: str) -> dict[str, Any]: ...


class MonitoringClient(ABC):
    """CloudWatch Logs and metrics queries."""

    @abstractmethod
    async def fetch_logs(
        self,
        log_group: str,
        region: str,
        start_time: datetime,
        end_time: datetime,
        limit: int,
        filter_pattern: str | None = None,
    ) -> list[LogEvent]:
        """Return up to ``limit`` events of a log group, oldest first.

        A log group that does not exist yet yields no events.
        """

    @abstractmethod
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
        """Return one statistic of a metric, ordered by timestamp."""


@dataclass
class CloudProvider:
    """Bundle of cloud collaborators handed to the orchestrator."""

    name: str
    stacks: StackDeployer
    inspector: StackInspector
    storage: ObjectStorage
    cdn: CdnClient
    certificates: CertificateManager
    dns: DnsClient
    api_domains: ApiDomainClient
    databases: DatabaseBackend
    monitoring: MonitoringClient
