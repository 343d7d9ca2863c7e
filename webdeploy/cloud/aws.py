"""AWS-backed cloud collaborators.

Control-plane calls go through boto3 clients run on worker threads; the base
stack is built and deployed with the SAM CLI.
"""

import asyncio
import hashlib
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, WaiterError

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
    arn_region,
    certificate_covers,
)
from webdeploy.config import Settings, get_settings
from webdeploy.core.exceptions import (
    MonitoringQueryError,
    PreconditionFailedError,
    ReconcileQueryError,
    StackApplyError,
    StackNotFoundError,
)
from webdeploy.core.templates import (
    configure_backend,
    dump_template_document,
    load_template_document,
)
from webdeploy.models.cloud import (
    StackApplyResult,
    StackDescription,
    TemplateDescriptor,
)
from webdeploy.models.deployment import BackendConfiguration, DeploymentRequest, ResourceSummary
from webdeploy.models.monitoring import LogEvent, MetricDatapoint
from webdeploy.utils.logging import get_logger

logger = get_logger(__name__)

# CloudFront only accepts ACM certificates from us-east-1
CLOUDFRONT_CERTIFICATE_REGION = "us-east-1"


class AwsClients:
    """Cache of boto3 clients keyed by service and region."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._session = boto3.session.Session(profile_name=settings.aws_profile)
        self._clients: dict[tuple[str, str], Any] = {}
        self._config = Config(retries={"max_attempts": 5, "mode": "standard"})

    def get(self, service_name: str, region: str | None = None) -> Any:
        region = region or self.settings.aws_region
        key = (service_name, region)
        if key not in self._clients:
            kwargs: dict[str, Any] = {"region_name": region, "config": self._config}
            if self.settings.aws_endpoint_url:
                kwargs["endpoint_url"] = self.settings.aws_endpoint_url
            self._clients[key] = self._session.client(service_name, **kwargs)
            logger.debug("aws.client_created", service=service_name, region=region)
        return self._clients[key]

    @property
    def waiter_config(self) -> dict[str, int]:
        return {
            "Delay": self.settings.waiter_delay_seconds,
            "MaxAttempts": self.settings.waiter_max_attempts,
        }


async def _call(method: Any, **kwargs: Any) -> Any:
    """Run a blocking boto3 call on a worker thread."""
    return await asyncio.to_thread(method, **kwargs)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


def _handler_for(entry_point: str | None) -> str:
    """Lambda handler for an entry point file, e.g. ``src/app.js`` -> ``src/app.handler``."""
    if not entry_point:
        return "index.handler"
    return f"{Path(entry_point).with_suffix('').as_posix()}.handler"


def _lambda_handler(backend: BackendConfiguration) -> str:
    """A startup script runs behind the Web Adapter and is itself the handler."""
    if backend.startup_script:
        return backend.startup_script
    return _handler_for(backend.entry_point)


def _idempotency_token(domain_names: list[str]) -> str:
    """ACM accepts at most 32 word characters."""
    return hashlib.sha1(",".join(domain_names).encode()).hexdigest()[:32]


class _AwsClient:
    def __init__(self, clients: AwsClients):
        self.clients = clients


class CloudFormationInspector(_AwsClient, StackInspector):
    """Describes stacks with the CloudFormation API."""

    async def describe_stack(self, stack_name: str, region: str) -> StackDescription:
        cloudformation = self.clients.get("cloudformation", region)
        try:
            response = await _call(cloudformation.describe_stacks, StackName=stack_name)
            resources_response = await _call(
                cloudformation.describe_stack_resources, StackName=stack_name
            )
        except ClientError as e:
            message = _error_message(e)
            if _error_code(e) == "ValidationError" and "does not exist" in message:
                raise StackNotFoundError(stack_name, region) from e
            raise ReconcileQueryError(stack_name, message, _error_code(e)) from e
        except BotoCoreError as e:
            raise ReconcileQueryError(stack_name, str(e)) from e

        stacks = response.get("Stacks", [])
        if not stacks:
            raise StackNotFoundError(stack_name, region)
        stack = stacks[0]

        return StackDescription(
            stack_name=stack_name,
            native_status=stack.get("StackStatus", ""),
            status_reason=stack.get("StackStatusReason"),
            stack_id=stack.get("StackId"),
            outputs={
                output["OutputKey"]: output["OutputValue"]
                for output in stack.get("Outputs", [])
            },
            resources=[
                ResourceSummary(
                    logical_id=resource["LogicalResourceId"],
                    physical_id=resource.get("PhysicalResourceId"),
                    type=resource["ResourceType"],
                    status=resource["ResourceStatus"],
                    last_updated=resource.get("Timestamp"),
                )
                for resource in resources_response.get("StackResources", [])
            ],
        )


class SamStackDeployer(_AwsClient, StackDeployer):
    """Builds and deploys the base stack with the SAM CLI."""

    def __init__(self, clients: AwsClients, inspector: StackInspector):
        super().__init__(clients)
        self.inspector = inspector

    async def apply(
        self,
        template: TemplateDescriptor,
        request: DeploymentRequest,
        report: ProgressCallback,
    ) -> StackApplyResult:
        build_dir = self._prepare_build_dir(template, request)
        await report(f"Prepared build directory {build_dir}")

        await report("Building application with SAM")
        await self._run_sam(["build", "--template-file", "template.yaml"], build_dir)

        command = [
            "deploy",
            "--stack-name", request.stack_name,
            "--region", request.region,
            "--capabilities", "CAPABILITY_IAM",
            "--resolve-s3",
            "--no-confirm-changeset",
            "--no-fail-on-empty-changeset",
        ]
        overrides = self._parameter_overrides(template, request)
        if overrides:
            command.append("--parameter-overrides")
            command.extend(f"{key}={value}" for key, value in overrides.items())

        await report(f"Deploying stack {request.stack_name} to {request.region}")
        await self._run_sam(command, build_dir)

        try:
            description = await self.inspector.describe_stack(request.stack_name, request.region)
        except (StackNotFoundError, ReconcileQueryError) as e:
            raise StackApplyError(f"could not read stack after deploy: {e.message}") from e

        await report(f"Stack {request.stack_name} reached {description.native_status}")
        return StackApplyResult(
            stack_name=description.stack_name,
            stack_id=description.stack_id,
            outputs=description.outputs,
            resources=description.resources,
        )

    def _prepare_build_dir(self, template: TemplateDescriptor, request: DeploymentRequest) -> Path:
        build_dir = Path(self.clients.settings.deployments_workdir) / request.project_name
        build_dir.mkdir(parents=True, exist_ok=True)

        document = load_template_document(
            Path(template.path).read_text(encoding="utf-8"), source=template.path
        )
        if request.backend_configuration:
            configure_backend(
                document,
                request.backend_configuration,
                request.region,
                self.clients.settings.web_adapter_layer_version,
            )
        (build_dir / "template.yaml").write_text(
            dump_template_document(document), encoding="utf-8"
        )

        if request.backend_configuration:
            source = build_dir / "src"
            if source.exists():
                shutil.rmtree(source)
            shutil.copytree(request.backend_configuration.built_artifacts_path, source)
        return build_dir

    def _parameter_overrides(
        self, template: TemplateDescriptor, request: DeploymentRequest
    ) -> dict[str, str]:
        values: dict[str, str] = {"ProjectName": request.project_name}

        backend = request.backend_configuration
        if backend:
            values.update(
                {
                    "Runtime": backend.runtime,
                    "Handler": _lambda_handler(backend),
                    "MemorySize": str(backend.memory_size),
                    "Timeout": str(backend.timeout),
                    "Architecture": backend.architecture,
                    "Stage": backend.stage,
                }
            )
        frontend = request.frontend_configuration
        if frontend:
            values.update(
                {
                    "IndexDocument": frontend.index_document,
                    "ErrorDocument": frontend.effective_error_document,
                }
            )

        # CloudFormation rejects overrides for parameters the template lacks
        return {key: value for key, value in values.items() if key in template.parameters}

    async def _run_sam(self, args: list[str], cwd: Path) -> str:
        timeout = self.clients.settings.stack_apply_timeout_seconds
        logger.info("sam.running", args=args, cwd=str(cwd))
        try:
            process = await asyncio.create_subprocess_exec(
                "sam",
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise StackApplyError("SAM CLI is not installed or not on PATH") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise StackApplyError(f"sam {args[0]} timed out after {timeout} seconds") from e

        stdout_text = stdout.decode(errors="replace") if stdout else ""
        stderr_text = stderr.decode(errors="replace") if stderr else ""

        logger.info(
            "sam.finished",
            command=args[0],
            returncode=process.returncode,
            stdout_len=len(stdout_text),
            stderr_len=len(stderr_text),
        )

        if process.returncode != 0:
            preview = (stderr_text or stdout_text)[:500]
            raise StackApplyError(
                f"sam {args[0]} exited with code {process.returncode}: {preview}",
                stdout=stdout_text,
                stderr=stderr_text,
                exit_code=process.returncode,
            )
        return stdout_text


class S3ObjectStorage(_AwsClient, ObjectStorage):
    async def list_objects(self, bucket: str) -> dict[str, str]:
        s3 = self.clients.get("s3")
        paginator = s3.get_paginator("list_objects_v2")

        def _collect() -> dict[str, str]:
            objects: dict[str, str] = {}
            for page in paginator.paginate(Bucket=bucket):
                for item in page.get("Contents", []):
                    objects[item["Key"]] = item["ETag"].strip('"')
            return objects

        return await asyncio.to_thread(_collect)

    async def put_object(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        s3 = self.clients.get("s3")

        # Single-part PUT so the ETag stays the MD5 that ``sync`` compares against
        def _put() -> None:
            with open(path, "rb") as body:
                s3.put_object(Bucket=bucket, Key=key, Body=body, ContentType=content_type)

        await asyncio.to_thread(_put)

    async def delete_objects(self, bucket: str, keys: list[str]) -> None:
        s3 = self.clients.get("s3")
        for start in range(0, len(keys), 1000):
            batch = keys[start:start + 1000]
            await _call(
                s3.delete_objects,
                Bucket=bucket,
                Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
            )


class CloudFrontClient(_AwsClient, CdnClient):
    async def get_distribution_config(self, distribution_id: str) -> tuple[dict[str, Any], str]:
        cloudfront = self.clients.get("cloudfront")
        response = await _call(cloudfront.get_distribution_config, Id=distribution_id)
        return response["DistributionConfig"], response["ETag"]

    async def update_distribution_config(
        self, distribution_id: str, config: dict[str, Any], etag: str
    ) -> str:
        cloudfront = self.clients.get("cloudfront")
        try:
            response = await _call(
                cloudfront.update_distribution,
                Id=distribution_id,
                IfMatch=etag,
                DistributionConfig=config,
            )
        except ClientError as e:
            if _error_code(e) == "PreconditionFailed":
                raise PreconditionFailedError(_error_message(e), {"etag": etag}) from e
            raise
        return response["ETag"]

    async def get_domain_name(self, distribution_id: str) -> str:
        cloudfront = self.clients.get("cloudfront")
        response = await _call(cloudfront.get_distribution, Id=distribution_id)
        return response["Distribution"]["DomainName"]

    async def create_invalidation(self, distribution_id: str, paths: list[str]) -> str:
        cloudfront = self.clients.get("cloudfront")
        response = await _call(
            cloudfront.create_invalidation,
            DistributionId=distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(paths), "Items": paths},
                "CallerReference": f"webdeploy-{time.time_ns()}",
            },
        )
        return response["Invalidation"]["Id"]


class AcmCertificateManager(_AwsClient, CertificateManager):
    """ACM certificates; the region is taken from the caller or the ARN."""

    def _acm(self, region: str) -> Any:
        return self.clients.get("acm", region)

    def _acm_for(self, certificate_arn: str) -> Any:
        return self._acm(arn_region(certificate_arn) or CLOUDFRONT_CERTIFICATE_REGION)

    async def find_certificate(self, domain_names: list[str], region: str) -> str | None:
        acm = self._acm(region)
        paginator = acm.get_paginator("list_certificates")

        def _names(summary: dict[str, Any]) -> list[str]:
            names = [summary["DomainName"], *summary.get("SubjectAlternativeNameSummaries", [])]
            if summary.get("HasAdditionalSubjectAlternativeNames"):
                # The summary lists only the first names
                certificate = acm.describe_certificate(
                    CertificateArn=summary["CertificateArn"]
                )["Certificate"]
                names = [certificate["DomainName"], *certificate.get("SubjectAlternativeNames", [])]
            return names

        def _find() -> str | None:
            for page in paginator.paginate(CertificateStatuses=["ISSUED"]):
                for summary in page.get("CertificateSummaryList", []):
                    names = _names(summary)
                    if all(certificate_covers(names, name) for name in domain_names):
                        return summary["CertificateArn"]
            return None

        return await asyncio.to_thread(_find)

    async def request_certificate(self, domain_names: list[str], region: str) -> str:
        primary, *alternatives = domain_names
        kwargs: dict[str, Any] = {
            "DomainName": primary,
            "ValidationMethod": "DNS",
            "IdempotencyToken": _idempotency_token(domain_names),
        }
        if alternatives:
            kwargs["SubjectAlternativeNames"] = alternatives

        response = await _call(self._acm(region).request_certificate, **kwargs)
        arn = response["CertificateArn"]
        logger.info("acm.certificate_requested", arn=arn, domains=domain_names, region=region)
        await self._log_validation_records(arn)
        return arn

    async def _log_validation_records(self, certificate_arn: str) -> None:
        response = await _call(
            self._acm_for(certificate_arn).describe_certificate, CertificateArn=certificate_arn
        )
        for option in response["Certificate"].get("DomainValidationOptions", []):
            record = option.get("ResourceRecord")
            if record:
                logger.info(
                    "acm.validation_record",
                    domain=option.get("DomainName"),
                    name=record["Name"],
                    type=record["Type"],
                    value=record["Value"],
                )

    async def wait_until_validated(self, certificate_arn: str) -> None:
        waiter = self._acm_for(certificate_arn).get_waiter("certificate_validated")
        await _call(
            waiter.wait,
            CertificateArn=certificate_arn,
            WaiterConfig=self.clients.waiter_config,
        )


class Route53DnsClient(_AwsClient, DnsClient):
    async def find_hosted_zone(self, domain_name: str) -> str | None:
        route53 = self.clients.get("route53")
        labels = domain_name.rstrip(".").split(".")
        # Walk from the full name up to the apex
        for index in range(len(labels) - 1):
            candidate = ".".join(labels[index:]) + "."
            response = await _call(
                route53.list_hosted_zones_by_name, DNSName=candidate, MaxItems="1"
            )
            for zone in response.get("HostedZones", []):
                if zone["Name"] == candidate:
                    return zone["Id"].replace("/hostedzone/", "")
        return None

    async def upsert_alias(
        self,
        hosted_zone_id: str,
        record_name: str,
        target_dns_name: str,
        target_hosted_zone_id: str,
    ) -> None:
        route53 = self.clients.get("route53")
        await _call(
            route53.change_resource_record_sets,
            HostedZoneId=hosted_zone_id,
            ChangeBatch={
                "Changes": [
                    {
                        "Action": "UPSERT",
                        "ResourceRecordSet": {
                            "Name": record_name,
                            "Type": "A",
                            "AliasTarget": {
                                "HostedZoneId": target_hosted_zone_id,
                                "DNSName": target_dns_name,
                                "EvaluateTargetHealth": False,
                            },
                        },
                    }
                ]
            },
        )


class ApiGatewayDomainClient(_AwsClient, ApiDomainClient):
    async def ensure_domain_name(
        self, domain_name: str, certificate_arn: str, region: str | None = None
    ) -> str:
        apigateway = self.clients.get("apigateway", region)
        try:
            response = await _call(apigateway.get_domain_name, domainName=domain_name)
        except ClientError as e:
            if _error_code(e) != "NotFoundException":
                raise
            response = await _call(
                apigateway.create_domain_name,
                domainName=domain_name,
                regionalCertificateArn=certificate_arn,
                endpointConfiguration={"types": ["REGIONAL"]},
            )
        return response["regionalDomainName"]

    async def ensure_base_path_mapping(
        self, domain_name: str, api_id: str, stage: str, region: str | None = None
    ) -> None:
        apigateway = self.clients.get("apigateway", region)
        try:
            await _call(
                apigateway.create_base_path_mapping,
                domainName=domain_name,
                restApiId=api_id,
                stage=stage,
            )
        except ClientError as e:
            if _error_code(e) != "ConflictException":
                raise


class AwsDatabaseBackend(_AwsClient, DatabaseBackend):
    async def create_table(self, table_spec: dict[str, Any]) -> None:
        dynamodb = self.clients.get("dynamodb")
        try:
            await _call(dynamodb.create_table, **table_spec)
        except ClientError as e:
            if _error_code(e) != "ResourceInUseException":
                raise
            logger.info("dynamodb.table_exists", table=table_spec["TableName"])

    async def wait_table_active(self, table_name: str) -> None:
        waiter = self.clients.get("dynamodb").get_waiter("table_exists")
        await _call(waiter.wait, TableName=table_name, WaiterConfig=self.clients.waiter_config)

    async def describe_table(self, table_name: str) -> dict[str, Any]:
        response = await _call(self.clients.get("dynamodb").describe_table, TableName=table_name)
        return response["Table"]

    async def ensure_security_group(self, group_name: str, description: str) -> str:
        ec2 = self.clients.get("ec2")
        response = await _call(
            ec2.describe_security_groups,
            Filters=[{"Name": "group-name", "Values": [group_name]}],
        )
        groups = response.get("SecurityGroups", [])
        if groups:
            return groups[0]["GroupId"]
        created = await _call(
            ec2.create_security_group, GroupName=group_name, Description=description
        )
        return created["GroupId"]

    async def ensure_subnet_group(self, group_name: str, description: str) -> str:
        rds = self.clients.get("rds")
        try:
            await _call(rds.describe_db_subnet_groups, DBSubnetGroupName=group_name)
            return group_name
        except ClientError as e:
            if _error_code(e) != "DBSubnetGroupNotFoundFault":
                raise

        ec2 = self.clients.get("ec2")
        vpcs = await _call(ec2.describe_vpcs, Filters=[{"Name": "isDefault", "Values": ["true"]}])
        if not vpcs.get("Vpcs"):
            raise RuntimeError("No default VPC found for the database subnet group")
        vpc_id = vpcs["Vpcs"][0]["VpcId"]
        subnets = await _call(ec2.describe_subnets, Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        subnet_ids = [subnet["SubnetId"] for subnet in subnets.get("Subnets", [])][:2]
        if len(subnet_ids) < 2:
            raise RuntimeError(f"Default VPC {vpc_id} needs at least two subnets")

        await _call(
            rds.create_db_subnet_group,
            DBSubnetGroupName=group_name,
            DBSubnetGroupDescription=description,
            SubnetIds=subnet_ids,
        )
        return group_name

    async def create_cluster(self, cluster_spec: dict[str, Any]) -> None:
        rds = self.clients.get("rds")
        try:
            await _call(rds.create_db_cluster, **cluster_spec)
        except ClientError as e:
            if _error_code(e) != "DBClusterAlreadyExistsFault":
                raise
            logger.info("rds.cluster_exists", cluster=cluster_spec["DBClusterIdentifier"])

    async def wait_cluster_available(self, cluster_identifier: str) -> None:
        rds = self.clients.get("rds")
        delay = self.clients.settings.waiter_delay_seconds
        # boto3 ships no waiter for DB clusters
        for _ in range(self.clients.settings.waiter_max_attempts):
            cluster = await self.describe_cluster(cluster_identifier)
            if cluster.get("Status") == "available":
                return
            await asyncio.sleep(delay)
        raise WaiterError(
            name="DBClusterAvailable",
            reason="Max attempts exceeded",
            last_response={"DBClusterIdentifier": cluster_identifier},
        )

    async def describe_cluster(self, cluster_identifier: str) -> dict[str, Any]:
        rds = self.clients.get("rds")
        response = await _call(rds.describe_db_clusters, DBClusterIdentifier=cluster_identifier)
        return response["DBClusters"][0]


def _epoch_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp() * 1000)


class CloudWatchMonitoringClient(_AwsClient, MonitoringClient):
    async def fetch_logs(
        self,
        log_group: str,
        region: str,
        start_time: datetime,
        end_time: datetime,
        limit: int,
        filter_pattern: str | None = None,
    ) -> list[LogEvent]:
        logs = self.clients.get("logs", region)
        kwargs: dict[str, Any] = {
            "logGroupName": log_group,
            "startTime": _epoch_ms(start_time),
            "endTime": _epoch_ms(end_time),
            "PaginationConfig": {"MaxItems": limit},
        }
        if filter_pattern:
            kwargs["filterPattern"] = filter_pattern

        def _collect() -> list[LogEvent]:
            events: list[LogEvent] = []
            for page in logs.get_paginator("filter_log_events").paginate(**kwargs):
                for event in page.get("events", []):
                    events.append(
                        LogEvent(
                            timestamp=datetime.fromtimestamp(
                                event["timestamp"] / 1000, tz=timezone.utc
                            ),
                            message=event.get("message", "").rstrip("\n"),
                            log_stream=event.get("logStreamName"),
                        )
                    )
            return events[:limit]

        try:
            events = await asyncio.to_thread(_collect)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                logger.info("logs.group_missing", log_group=log_group, region=region)
                return []
            raise MonitoringQueryError(log_group, _error_message(e), code=_error_code(e)) from e
        except BotoCoreError as e:
            raise MonitoringQueryError(log_group, str(e)) from e

        logger.debug("logs.fetched", log_group=log_group, count=len(events))
        return events

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
        cloudwatch = self.clients.get("cloudwatch", region)
        target = f"{namespace}/{metric_name}"
        try:
            response = await _call(
                cloudwatch.get_metric_statistics,
                Namespace=namespace,
                MetricName=metric_name,
                Dimensions=[{"Name": name, "Value": value} for name, value in dimensions.items()],
                StartTime=start_time,
                EndTime=end_time,
                Period=period,
                Statistics=[statistic],
            )
        except ClientError as e:
            raise MonitoringQueryError(target, _error_message(e), code=_error_code(e)) from e
        except BotoCoreError as e:
            raise MonitoringQueryError(target, str(e)) from e

        datapoints = sorted(response.get("Datapoints", []), key=lambda point: point["Timestamp"])
        return [
            MetricDatapoint(
                timestamp=point["Timestamp"],
                value=point[statistic],
                unit=point.get("Unit"),
            )
            for point in datapoints
        ]


def create_aws_provider(settings: Settings | None = None) -> CloudProvider:
    """Build the AWS provider from settings."""
    clients = AwsClients(settings or get_settings())
    inspector = CloudFormationInspector(clients)
    return CloudProvider(
        name="aws",
        stacks=SamStackDeployer(clients, inspector),
        inspector=inspector,
        storage=S3ObjectStorage(clients),
        cdn=CloudFrontClient(clients),
        certificates=AcmCertificateManager(clients),
        dns=Route53DnsClient(clients),
        api_domains=ApiGatewayDomainClient(clients),
        databases=AwsDatabaseBackend(clients),
        monitoring=CloudWatchMonitoringClient(clients),
    )
