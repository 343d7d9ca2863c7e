"""Frontend asset upload step."""

from webdeploy.core.exceptions import StepError
from webdeploy.models.deployment import FrontendConfiguration, StepResult
from webdeploy.steps.base import ProvisioningStep, StepContext


class FrontendUploadStep(ProvisioningStep[FrontendConfiguration]):
    """Mirrors the built assets into the website bucket.

    Only new or changed files are uploaded and remote files missing locally
    are deleted, so re-running with the same build does nothing. The CDN
    cache is invalidated only when the bucket changed.
    """

    @property
    def name(self) -> str:
        return "frontend"

    @property
    def description(self) -> str:
        return "Uploads built frontend assets to S3 and invalidates CloudFront"

    async def _provision(self, config: FrontendConfiguration, context: StepContext) -> StepResult:
        bucket = context.outputs.get("WebsiteBucket")
        if not bucket:
            raise StepError(
                self.name,
                "Stack outputs do not include WebsiteBucket",
                stage="resolve_bucket",
            )

        await context.report(f"Uploading frontend assets to s3://{bucket}")
        try:
            sync = await self.cloud.storage.sync(config.built_assets_path, bucket)
        except Exception as e:
            raise StepError(self.name, f"Asset upload failed: {e}", stage="sync") from e

        await context.report(
            f"Uploaded {len(sync.uploaded)} file(s), deleted {len(sync.deleted)}, "
            f"{sync.unchanged} unchanged"
        )

        connection_info: dict[str, object] = {
            "bucket": bucket,
            "uploaded": len(sync.uploaded),
            "deleted": len(sync.deleted),
            "unchanged": sync.unchanged,
        }

        distribution_id = context.outputs.get("CloudFrontDistributionId")
        if distribution_id and sync.changed:
            await context.report(f"Invalidating CloudFront distribution {distribution_id}")
            try:
                invalidation_id = await self.cloud.cdn.create_invalidation(distribution_id, ["/*"])
            except Exception as e:
                raise StepError(
                    self.name, f"CloudFront invalidation failed: {e}", stage="invalidate"
                ) from e
            connection_info["invalidation_id"] = invalidation_id

        outputs = {}
        if context.outputs.get("WebsiteURL"):
            outputs["WebsiteURL"] = context.outputs["WebsiteURL"]

        return StepResult(
            step_name=self.name,
            success=True,
            resource_id=bucket,
            connection_info=connection_info,
            outputs=outputs,
        )
