"""Pre-flight validation of deployment requests.

Every problem found is collected so the caller can fix them all at once.
Nothing here touches the cloud; checks are limited to request shape and the
local build output.
"""

import os
import re
from pathlib import Path

from pydantic import BaseModel, Field

from webdeploy.core.exceptions import ValidationError
from webdeploy.models.deployment import (
    BackendConfiguration,
    DatabaseConfiguration,
    DeploymentRequest,
    DeploymentType,
    DomainConfiguration,
    FrontendConfiguration,
)
from webdeploy.utils.logging import get_logger

logger = get_logger("validation")

SUPPORTED_FRAMEWORKS: dict[DeploymentType, tuple[str, ...]] = {
    DeploymentType.BACKEND: ("express", "koa", "fastify", "nest"),
    DeploymentType.FRONTEND: ("react", "vue", "angular", "static"),
    DeploymentType.FULLSTACK: ("express-react", "express-vue", "nest-react", "nest-vue"),
}

SUPPORTED_RUNTIMES = (
    "nodejs18.x", "nodejs16.x", "nodejs14.x",
    "python3.9", "python3.8", "python3.7",
    "java11", "java8.al2", "java8",
    "dotnet6", "dotnet5.0", "dotnet3.1",
    "go1.x",
    "ruby2.7",
)

REGION_PATTERN = re.compile(r"^[a-z]{2}-[a-z]+-\d+$")
DOMAIN_PATTERN = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$")
TABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,255}$")
DATABASE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_]{0,62}$")


class ValidationIssue(BaseModel):
    """A single validation error or warning."""

    code: str
    message: str
    path: str
    suggestion: str | None = None


class ValidationReport(BaseModel):
    """Errors and warnings found for a request."""

    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def error(self, code: str, message: str, path: str, suggestion: str | None = None) -> None:
        self.errors.append(ValidationIssue(code=code, message=message, path=path, suggestion=suggestion))

    def warn(self, code: str, message: str, path: str, suggestion: str | None = None) -> None:
        self.warnings.append(ValidationIssue(code=code, message=message, path=path, suggestion=suggestion))


def validate_request(request: DeploymentRequest) -> ValidationReport:
    """Collect every error and warning for a deployment request."""
    report = ValidationReport()

    if not REGION_PATTERN.match(request.region):
        report.error(
            "INVALID_REGION",
            f"Invalid AWS region format: {request.region}",
            "region",
            "Use a valid AWS region format (e.g., us-east-1)",
        )

    frameworks = SUPPORTED_FRAMEWORKS[request.deployment_type]
    if request.framework not in frameworks:
        report.error(
            "UNSUPPORTED_FRAMEWORK",
            f"Framework '{request.framework}' is not supported for "
            f"{request.deployment_type.value} deployments",
            "framework",
            f"Use one of: {', '.join(frameworks)}",
        )

    needs_backend = request.deployment_type in (DeploymentType.BACKEND, DeploymentType.FULLSTACK)
    needs_frontend = request.deployment_type in (DeploymentType.FRONTEND, DeploymentType.FULLSTACK)

    if needs_backend:
        if request.backend_configuration is None:
            report.error(
                "MISSING_BACKEND_CONFIG",
                f"Backend configuration is required for {request.deployment_type.value} deployment",
                "backend_configuration",
                "Provide backend_configuration with required parameters",
            )
        else:
            _validate_backend(request.backend_configuration, report)
    elif request.backend_configuration is not None:
        report.warn(
            "UNUSED_BACKEND_CONFIG",
            "Backend configuration is ignored for frontend deployments",
            "backend_configuration",
        )

    if needs_frontend:
        if request.frontend_configuration is None:
            report.error(
                "MISSING_FRONTEND_CONFIG",
                f"Frontend configuration is required for {request.deployment_type.value} deployment",
                "frontend_configuration",
                "Provide frontend_configuration with required parameters",
            )
        else:
            _validate_frontend(request.frontend_configuration, report)
    elif request.frontend_configuration is not None:
        report.warn(
            "UNUSED_FRONTEND_CONFIG",
            "Frontend configuration is ignored for backend deployments",
            "frontend_configuration",
        )

    if request.database_configuration is not None:
        if not needs_backend:
            report.error(
                "DATABASE_REQUIRES_BACKEND",
                "A database can only be attached to backend or fullstack deployments",
                "database_configuration",
                "Remove database_configuration or deploy a backend",
            )
        _validate_database(request.database_configuration, report)

    if request.domain_configuration is not None:
        _validate_domain(request.domain_configuration, report)

    return report


def ensure_valid(request: DeploymentRequest) -> ValidationReport:
    """Validate a request and raise when it has errors.

    Raises:
        ValidationError: Carrying every error and warning found
    """
    return _raise_on_errors(request.project_name, validate_request(request), "Deployment request")


def validate_frontend_update(config: FrontendConfiguration) -> ValidationReport:
    """Collect errors for a standalone frontend asset update."""
    report = ValidationReport()
    _validate_frontend(config, report)
    return report


def ensure_valid_frontend(project_name: str, config: FrontendConfiguration) -> ValidationReport:
    """Validate a frontend update and raise when it has errors.

    Raises:
        ValidationError: Carrying every error found
    """
    return _raise_on_errors(project_name, validate_frontend_update(config), "Frontend update")


def _raise_on_errors(project_name: str, report: ValidationReport, subject: str) -> ValidationReport:
    for warning in report.warnings:
        logger.warning(
            "validation.warning",
            project=project_name,
            code=warning.code,
            message=warning.message,
        )

    if not report.valid:
        logger.info(
            "validation.failed",
            project=project_name,
            codes=[issue.code for issue in report.errors],
        )
        raise ValidationError(
            f"{subject} for '{project_name}' has "
            f"{len(report.errors)} validation error(s)",
            issues=[issue.model_dump() for issue in report.errors],
            warnings=[issue.model_dump() for issue in report.warnings],
        )
    return report


def _validate_backend(config: BackendConfiguration, report: ValidationReport) -> None:
    artifacts = Path(config.built_artifacts_path)
    path = "backend_configuration.built_artifacts_path"

    if not artifacts.is_dir():
        report.error(
            "INVALID_ARTIFACTS_PATH",
            f"Built artifacts path does not exist: {artifacts}",
            path,
            "Build your application first or check the path to your built artifacts",
        )
    elif not any(artifacts.iterdir()):
        report.error(
            "EMPTY_ARTIFACTS_PATH",
            f"Built artifacts directory is empty: {artifacts}",
            path,
            "Build your application first or check that files are being output to the correct directory",
        )

    if not config.runtime:
        report.error(
            "MISSING_RUNTIME",
            "Runtime is required",
            "backend_configuration.runtime",
            "Provide a valid Lambda runtime (e.g., nodejs18.x, python3.9)",
        )
    elif config.runtime not in SUPPORTED_RUNTIMES:
        report.warn(
            "UNSUPPORTED_RUNTIME",
            f"Runtime '{config.runtime}' may not be supported by AWS Lambda",
            "backend_configuration.runtime",
            f"Supported runtimes include: {', '.join(SUPPORTED_RUNTIMES)}",
        )

    if not artifacts.is_dir():
        return

    if not config.entry_point and not config.startup_script:
        report.error(
            "MISSING_STARTUP_SCRIPT",
            "Either startup_script or entry_point is required",
            "backend_configuration.startup_script",
            "Provide a startup script name or the entry point file of your application",
        )
        return

    if config.entry_point:
        entry_point = artifacts / config.entry_point
        if not entry_point.is_file():
            report.error(
                "ENTRY_POINT_NOT_FOUND",
                f"Entry point file not found: {entry_point}",
                "backend_configuration.entry_point",
                "Check that your entry point file is included in your built artifacts",
            )

    if config.startup_script:
        script = artifacts / config.startup_script
        if not script.is_file():
            report.error(
                "STARTUP_SCRIPT_NOT_FOUND",
                f"Startup script not found: {script}",
                "backend_configuration.startup_script",
                "Check that your startup script is included in your built artifacts",
            )
        elif not os.access(script, os.X_OK):
            report.error(
                "STARTUP_SCRIPT_NOT_EXECUTABLE",
                f"Startup script is not executable: {script}",
                "backend_configuration.startup_script",
                f"Run 'chmod +x {script}' to make the script executable",
            )


def _validate_frontend(config: FrontendConfiguration, report: ValidationReport) -> None:
    assets = Path(config.built_assets_path)
    path = "frontend_configuration.built_assets_path"

    if not assets.is_dir():
        report.error(
            "INVALID_ASSETS_PATH",
            f"Built assets path does not exist: {assets}",
            path,
            "Build your frontend application first or check the path to your built assets",
        )
        return

    if not any(assets.iterdir()):
        report.error(
            "EMPTY_ASSETS_PATH",
            f"Built assets directory is empty: {assets}",
            path,
            "Build your frontend application first or check that files are being output to the correct directory",
        )
        return

    index_path = assets / config.index_document
    if not index_path.is_file():
        report.error(
            "INDEX_DOCUMENT_NOT_FOUND",
            f"Index document not found: {index_path}",
            "frontend_configuration.index_document",
            "Check that your index document is included in your built assets "
            "or specify the correct index document name",
        )


def _validate_database(config: DatabaseConfiguration, report: ValidationReport) -> None:
    base = "database_configuration"

    if config.database_type == "aurora-serverless":
        if config.database_name and not DATABASE_NAME_PATTERN.match(config.database_name):
            report.error(
                "INVALID_DATABASE_NAME",
                f"Invalid database name: {config.database_name}",
                f"{base}.database_name",
                "Start with a letter and use only letters, numbers and underscores",
            )
        return

    if config.table_name and not TABLE_NAME_PATTERN.match(config.table_name):
        report.error(
            "INVALID_TABLE_NAME",
            "Table name contains invalid characters",
            f"{base}.table_name",
            "Use only letters, numbers, underscores, hyphens, and periods in your table name",
        )

    if not config.attribute_definitions:
        report.error(
            "MISSING_ATTRIBUTE_DEFINITIONS",
            "Attribute definitions are required for database configuration",
            f"{base}.attribute_definitions",
            "Provide at least one attribute definition for your DynamoDB table",
        )

    if not config.key_schema:
        report.error(
            "MISSING_KEY_SCHEMA",
            "Key schema is required for database configuration",
            f"{base}.key_schema",
            "Provide at least one key schema entry for your DynamoDB table",
        )
    else:
        hash_keys = [key for key in config.key_schema if key.type == "HASH"]
        range_keys = [key for key in config.key_schema if key.type == "RANGE"]
        if not hash_keys:
            report.error(
                "MISSING_HASH_KEY",
                "Key schema must include exactly one HASH (partition) key",
                f"{base}.key_schema",
                "Add a key with type HASH to your key schema",
            )
        elif len(hash_keys) > 1:
            report.error(
                "MULTIPLE_HASH_KEYS",
                "Key schema must include exactly one HASH (partition) key",
                f"{base}.key_schema",
                "Remove extra HASH keys from your key schema",
            )
        if len(range_keys) > 1:
            report.error(
                "MULTIPLE_RANGE_KEYS",
                "Key schema must include at most one RANGE (sort) key",
                f"{base}.key_schema",
                "Remove extra RANGE keys from your key schema",
            )

        defined = {attribute.name for attribute in config.attribute_definitions}
        for index, key in enumerate(config.key_schema):
            if config.attribute_definitions and key.name not in defined:
                report.error(
                    "KEY_ATTRIBUTE_NOT_DEFINED",
                    f"Key '{key.name}' has no attribute definition",
                    f"{base}.key_schema[{index}].name",
                    "Add an attribute definition for every key attribute",
                )

    if config.billing_mode == "PROVISIONED":
        if config.read_capacity is None or config.read_capacity < 1:
            report.error(
                "INVALID_READ_CAPACITY",
                "Read capacity must be a number greater than or equal to 1 "
                "when using PROVISIONED billing mode",
                f"{base}.read_capacity",
                "Provide a valid read capacity value (minimum 1)",
            )
        if config.write_capacity is None or config.write_capacity < 1:
            report.error(
                "INVALID_WRITE_CAPACITY",
                "Write capacity must be a number greater than or equal to 1 "
                "when using PROVISIONED billing mode",
                f"{base}.write_capacity",
                "Provide a valid write capacity value (minimum 1)",
            )


def _validate_domain(config: DomainConfiguration, report: ValidationReport) -> None:
    if not DOMAIN_PATTERN.match(config.domain_name):
        report.error(
            "INVALID_CUSTOM_DOMAIN",
            f"Invalid custom domain format: {config.domain_name}",
            "domain_configuration.domain_name",
            "Provide a valid domain name (e.g., example.com)",
        )

    if config.certificate_arn:
        return

    if config.create_certificate:
        report.warn(
            "MISSING_CERTIFICATE_ARN",
            "Custom domain specified without certificate ARN",
            "domain_configuration.certificate_arn",
            "Provide a certificate ARN for your custom domain or a certificate will be created automatically",
        )
    else:
        report.error(
            "MISSING_CERTIFICATE",
            "No certificate ARN given and certificate creation is disabled",
            "domain_configuration.certificate_arn",
            "Provide certificate_arn or set create_certificate to true",
        )
