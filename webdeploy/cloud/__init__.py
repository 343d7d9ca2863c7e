"""Cloud collaborators for webdeploy."""

from webdeploy.cloud.base import CloudProvider
from webdeploy.config import settings

# Singleton instance
_cloud_provider: CloudProvider | None = None


def get_cloud_provider() -> CloudProvider:
    """Get the cloud provider selected by ``CLOUD_BACKEND``."""
    global _cloud_provider
    if _cloud_provider is None:
        if settings.cloud_backend == "aws":
            from webdeploy.cloud.aws import create_aws_provider

            _cloud_provider = create_aws_provider(settings)
        else:
            from webdeploy.cloud.fake import create_fake_provider

            _cloud_provider = create_fake_provider()
    return _cloud_provider


__all__ = [
    "CloudProvider",
    "get_cloud_provider",
]
