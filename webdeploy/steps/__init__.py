"""Provisioning steps run after the base stack."""

from webdeploy.steps.base import ProvisioningStep, StepContext
from webdeploy.steps.database import DatabaseStep
from webdeploy.steps.domain import DomainStep
from webdeploy.steps.frontend import FrontendUploadStep

__all__ = [
    "ProvisioningStep",
    "StepContext",
    "DatabaseStep",
    "DomainStep",
    "FrontendUploadStep",
]
