"""Database provisioning step (DynamoDB or Aurora Serverless)."""

import secrets
from typing import Any

from webdeploy.core.exceptions import StepError
from webdeploy.models.deployment import DatabaseConfiguration, StepResult
from webdeploy.steps.base import ProvisioningStep, StepContext

MASTER_USERNAME = "dbadmin"


def table_name_for(project_name: str, config: DatabaseConfiguration) -> str:
    return config.table_name or f"{project_name}-table"


def database_name_for(project_name: str, config: DatabaseConfiguration) -> str:
    return config.database_name or f"{project_name.replace('-', '_')}_db"


class DatabaseStep(ProvisioningStep[DatabaseConfiguration]):
    """Creates the application database next to the base stack.

    Every sub-step reuses an existing resource with the same name, so the
    step can be re-run after a partial failure.
    """

    @property
    def name(self) -> str:
        return "database"

    @property
    def description(self) -> str:
        return "Provisions a DynamoDB table or an Aurora Serverless cluster"

    async def _provision(self, config: DatabaseConfiguration, context: StepContext) -> StepResult:
        if config.database_type == "aurora-serverless":
            return await self._provision_aurora(config, context)
        return await self._provision_dynamodb(config, context)

    async def _provision_dynamodb(
        self, config: DatabaseConfiguration, context: StepContext
    ) -> StepResult:
        databases = self.cloud.databases
        table_name = table_name_for(context.project_name, config)

        table_spec: dict[str, Any] = {
            "TableName": table_name,
            "AttributeDefinitions": [
                {"AttributeName": attribute.name, "AttributeType": attribute.type}
                for attribute in config.attribute_definitions
            ],
            "KeySchema": [
                {"AttributeName": key.name, "KeyType": key.type}
                for key in config.key_schema
            ],
            "BillingMode": config.billing_mode,
        }
        if config.billing_mode == "PROVISIONED":
            table_spec["ProvisionedThroughput"] = {
                "ReadCapacityUnits": config.read_capacity,
                "WriteCapacityUnits": config.write_capacity,
            }

        stage = "create_table"
        try:
            await context.report(f"Creating DynamoDB table {table_name}")
            await databases.create_table(table_spec)

            stage = "wait_table_active"
            await context.report("Waiting for table to become active")
            await databases.wait_table_active(table_name)

            stage = "describe_table"
            table = await databases.describe_table(table_name)
        except Exception as e:
            raise StepError(
                self.name, f"Failed to provision DynamoDB table: {e}", stage=stage
            ) from e

        await context.report(f"DynamoDB table {table_name} is active")

        keys = {key.type: key.name for key in config.key_schema}
        return StepResult(
            step_name=self.name,
            success=True,
            resource_id=table.get("TableArn", table_name),
            connection_info={
                "database_type": "dynamodb",
                "table_name": table_name,
                "arn": table.get("TableArn"),
                "partition_key": keys.get("HASH"),
                "sort_key": keys.get("RANGE"),
            },
            outputs={
                "DatabaseTableName": table_name,
                "DatabaseTableArn": table.get("TableArn", ""),
            },
        )

    async def _provision_aurora(
        self, config: DatabaseConfiguration, context: StepContext
    ) -> StepResult:
        databases = self.cloud.databases
        project = context.project_name
        cluster_identifier = f"{project}-cluster"
        database_name = database_name_for(project, config)

        stage = "security_group"
        try:
            await context.report(f"Ensuring security group {project}-db-sg")
            security_group_id = await databases.ensure_security_group(
                f"{project}-db-sg",
                f"Security group for {project} Aurora Serverless cluster",
            )

            stage = "subnet_group"
            await context.report(f"Ensuring DB subnet group {project}-subnet-group")
            subnet_group = await databases.ensure_subnet_group(
                f"{project}-subnet-group",
                f"Subnet group for {project} Aurora Serverless cluster",
            )

            stage = "create_cluster"
            await context.report(
                f"Creating Aurora Serverless cluster {cluster_identifier} "
                f"with {config.engine} engine"
            )
            await databases.create_cluster(
                {
                    "DBClusterIdentifier": cluster_identifier,
                    "Engine": "aurora-postgresql" if config.engine == "postgresql" else "aurora",
                    "EngineMode": "serverless",
                    "ScalingConfiguration": {
                        "MinCapacity": 1,
                        "MaxCapacity": config.max_capacity,
                        "AutoPause": True,
                        "SecondsUntilAutoPause": 300,
                    },
                    "MasterUsername": MASTER_USERNAME,
                    "MasterUserPassword": secrets.token_urlsafe(24),
                    "DBSubnetGroupName": subnet_group,
                    "VpcSecurityGroupIds": [security_group_id],
                    "DatabaseName": database_name,
                }
            )

            stage = "wait_cluster_available"
            await context.report("Waiting for Aurora Serverless cluster to become available")
            await databases.wait_cluster_available(cluster_identifier)

            stage = "describe_cluster"
            cluster = await databases.describe_cluster(cluster_identifier)
        except Exception as e:
            raise StepError(
                self.name,
                f"Failed to provision Aurora Serverless cluster: {e}",
                stage=stage,
            ) from e

        await context.report(f"Aurora Serverless cluster {cluster_identifier} is available")

        return StepResult(
            step_name=self.name,
            success=True,
            resource_id=cluster_identifier,
            connection_info={
                "database_type": "aurora-serverless",
                "database_name": database_name,
                "engine": config.engine,
                "endpoint": cluster.get("Endpoint"),
                "port": cluster.get("Port"),
                "master_username": MASTER_USERNAME,
                "max_capacity": config.max_capacity,
            },
            outputs={
                "DatabaseEndpoint": str(cluster.get("Endpoint", "")),
                "DatabasePort": str(cluster.get("Port", "")),
                "DatabaseName": database_name,
            },
        )
