"""File-based lookup and rendering of infrastructure templates.

Templates are SAM/CloudFormation YAML. Short-form intrinsic tags (``!Ref``,
``!Sub``, ``!GetAtt``) load as ``IntrinsicFunction`` values, so a template
can be adjusted for a request and written back with its tags intact.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from webdeploy.config import settings
from webdeploy.core.exceptions import InvalidTemplateError, TemplateNotFoundError
from webdeploy.models.cloud import DeclaredResource, TemplateDescriptor
from webdeploy.models.deployment import BackendConfiguration, DeploymentType
from webdeploy.utils.logging import get_logger

logger = get_logger("templates")

TEMPLATE_EXTENSIONS = (".yaml", ".yml")

# Key under the template's top-level Metadata section
METADATA_KEY = "webdeploy"

FUNCTION_TYPES = ("AWS::Serverless::Function", "AWS::Lambda::Function")
API_TYPES = ("AWS::Serverless::Api",)

# Lambda Web Adapter layers, published per region by AWS
WEB_ADAPTER_ACCOUNT = "753240598075"
WEB_ADAPTER_LAYERS = {"x86_64": "LambdaAdapterLayerX86", "arm64": "LambdaAdapterLayerArm64"}
WEB_ADAPTER_WRAPPER = "/opt/bootstrap"
WEB_ADAPTER_PORT = "8080"


@dataclass
class IntrinsicFunction:
    """A short-form CloudFormation tag, e.g. ``!Ref Stage``."""

    tag: str
    value: Any


class TemplateLoader(yaml.SafeLoader):
    """SafeLoader that keeps CloudFormation short-form tags."""


class TemplateDumper(yaml.SafeDumper):
    """SafeDumper that writes ``IntrinsicFunction`` values back as tags."""

    def ignore_aliases(self, data: Any) -> bool:
        return True


def _construct_intrinsic(loader: TemplateLoader, tag_suffix: str, node: yaml.Node) -> IntrinsicFunction:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return IntrinsicFunction(tag=f"!{tag_suffix}", value=value)


def _represent_intrinsic(dumper: TemplateDumper, data: IntrinsicFunction) -> yaml.Node:
    if isinstance(data.value, list):
        return dumper.represent_sequence(data.tag, data.value)
    if isinstance(data.value, dict):
        return dumper.represent_mapping(data.tag, data.value)
    return dumper.represent_scalar(data.tag, str(data.value))


TemplateLoader.add_multi_constructor("!", _construct_intrinsic)
TemplateDumper.add_representer(IntrinsicFunction, _represent_intrinsic)


def load_template_document(text: str, source: str = "<template>") -> dict[str, Any]:
    """Load template YAML into a dict; an empty file is an empty template.

    Raises:
        InvalidTemplateError: If the text is not YAML or not a mapping
    """
    try:
        document = yaml.load(text, Loader=TemplateLoader)
    except yaml.YAMLError as e:
        raise InvalidTemplateError(source, str(e)) from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise InvalidTemplateError(
            source, f"expected a mapping at the top level, got {type(document).__name__}"
        )
    return document


def dump_template_document(document: dict[str, Any]) -> str:
    return yaml.dump(
        document,
        Dumper=TemplateDumper,
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


def parse_template(
    text: str, source: str = "<template>"
) -> tuple[dict[str, str], list[str], list[DeclaredResource]]:
    """Extract metadata, parameter names and declared resources.

    Metadata comes from ``Metadata.webdeploy``; list values are joined with
    commas.
    """
    document = load_template_document(text, source)

    section = (document.get("Metadata") or {}).get(METADATA_KEY) or {}
    metadata = {
        str(key): ", ".join(map(str, value)) if isinstance(value, list) else str(value)
        for key, value in section.items()
    }

    parameters = [str(name) for name in (document.get("Parameters") or {})]

    resources = [
        DeclaredResource(logical_id=str(logical_id), type=str(body["Type"]))
        for logical_id, body in (document.get("Resources") or {}).items()
        if isinstance(body, dict) and "Type" in body
    ]
    return metadata, parameters, resources


def web_adapter_layer_arn(region: str, architecture: str, version: int) -> str:
    """ARN of the Lambda Web Adapter layer for a region and architecture."""
    layer = WEB_ADAPTER_LAYERS[architecture]
    return f"arn:aws:lambda:{region}:{WEB_ADAPTER_ACCOUNT}:layer:{layer}:{version}"


def configure_backend(
    document: dict[str, Any],
    backend: BackendConfiguration,
    region: str,
    adapter_layer_version: int | None = None,
) -> dict[str, Any]:
    """Apply a backend configuration to a loaded template, in place.

    ``environment`` is added to every function's variables and
    ``cors=False`` drops the CORS block from every API. A ``startup_script``
    runs the application as a web server behind the Lambda Web Adapter: the
    adapter layer is attached, ``AWS_LAMBDA_EXEC_WRAPPER`` points at it and
    the script becomes the handler.
    """
    version = adapter_layer_version or settings.web_adapter_layer_version

    for resource in (document.get("Resources") or {}).values():
        if not isinstance(resource, dict):
            continue
        resource_type = resource.get("Type")

        if resource_type in FUNCTION_TYPES:
            properties = resource.setdefault("Properties", {})
            variables = dict(backend.environment)

            if backend.startup_script:
                variables.setdefault("PORT", WEB_ADAPTER_PORT)
                variables["AWS_LAMBDA_EXEC_WRAPPER"] = WEB_ADAPTER_WRAPPER
                properties["Handler"] = backend.startup_script
                layers = list(properties.get("Layers") or [])
                layers.append(web_adapter_layer_arn(region, backend.architecture, version))
                properties["Layers"] = layers

            if variables:
                environment = properties.setdefault("Environment", {})
                environment["Variables"] = {**(environment.get("Variables") or {}), **variables}

        elif resource_type in API_TYPES and not backend.cors:
            resource.get("Properties", {}).pop("Cors", None)

    return document


class TemplateResolver:
    """Resolves templates from a directory of SAM templates."""

    def __init__(self, templates_path: str | Path | None = None):
        self.templates_path = Path(templates_path or settings.templates_path)

    def candidates(self, deployment_type: DeploymentType, framework: str) -> list[str]:
        """Template names in search order."""
        kind = deployment_type.value
        return [f"{kind}-{framework}", f"{kind}-default", kind]

    def resolve(self, deployment_type: DeploymentType, framework: str) -> TemplateDescriptor:
        """Find the template for a deployment type and framework.

        Raises:
            TemplateNotFoundError: If no candidate exists
            InvalidTemplateError: If the matching file is not a valid template
        """
        searched: list[str] = []
        for name in self.candidates(deployment_type, framework):
            for extension in TEMPLATE_EXTENSIONS:
                path = self.templates_path / f"{name}{extension}"
                searched.append(str(path))
                if path.is_file():
                    logger.debug("templates.resolved", name=name, path=str(path))
                    return self._load(path, deployment_type, framework)

        logger.warning(
            "templates.not_found",
            deployment_type=deployment_type.value,
            framework=framework,
        )
        raise TemplateNotFoundError(deployment_type.value, framework, searched)

    def list_templates(self) -> list[TemplateDescriptor]:
        """List every valid template in the directory, sorted by name."""
        if not self.templates_path.is_dir():
            return []

        templates: list[TemplateDescriptor] = []
        for path in sorted(self.templates_path.iterdir()):
            if path.suffix not in TEMPLATE_EXTENSIONS or not path.is_file():
                continue
            kind, _, framework = path.stem.partition("-")
            try:
                deployment_type = DeploymentType(kind)
            except ValueError:
                logger.warning("templates.skipped", path=str(path), reason="unknown type")
                continue
            try:
                templates.append(self._load(path, deployment_type, framework or None))
            except InvalidTemplateError as e:
                logger.warning("templates.skipped", path=str(path), reason=e.message)
        return templates

    def _load(
        self, path: Path, deployment_type: DeploymentType, framework: str | None
    ) -> TemplateDescriptor:
        metadata, parameters, resources = parse_template(
            path.read_text(encoding="utf-8"), source=str(path)
        )
        return TemplateDescriptor(
            name=path.stem,
            path=str(path),
            deployment_type=deployment_type,
            framework=framework,
            metadata=metadata,
            parameters=parameters,
            declared_resources=resources,
        )


# Singleton instance
_template_resolver: TemplateResolver | None = None


def get_template_resolver() -> TemplateResolver:
    """Get the template resolver singleton."""
    global _template_resolver
    if _template_resolver is None:
        _template_resolver = TemplateResolver()
    return _template_resolver
