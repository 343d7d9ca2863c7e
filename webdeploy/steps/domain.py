"""Custom domain step: certificate, CDN aliases and DNS records."""

from typing import Any
from urllib.parse import urlparse

from webdeploy.cloud.base import arn_region
from webdeploy.core.exceptions import PreconditionFailedError, StepError
from webdeploy.models.deployment import DeploymentType, DomainConfiguration, StepResult
from webdeploy.steps.base import ProvisioningStep, StepContext

# CloudFront only accepts certificates from us-east-1
CLOUDFRONT_CERTIFICATE_REGION = "us-east-1"

# Hosted zone of every CloudFront distribution, used for alias records
CLOUDFRONT_HOSTED_ZONE_ID = "Z2FDTNDATAQYW2"

# Hosted zones of regional API Gateway endpoints
API_GATEWAY_HOSTED_ZONE_IDS = {
    "us-east-1": "Z1UJRXOUMOOFQ8",
    "us-east-2": "ZOJJZC49E0EPZ",
    "us-west-1": "Z2MUQ32089INYE",
    "us-west-2": "Z2OJLYMUO9EFXC",
    "eu-west-1": "ZLY8HYME6SFDD",
}

ETAG_RETRIES = 3


def apply_custom_domain(config: dict[str, Any], domain_name: str, certificate_arn: str) -> dict[str, Any]:
    """Return a distribution config serving ``domain_name`` with the certificate."""
    updated = dict(config)
    updated["Aliases"] = {"Quantity": 1, "Items": [domain_name]}
    updated["ViewerCertificate"] = {
        "ACMCertificateArn": certificate_arn,
        "SSLSupportMethod": "sni-only",
        "MinimumProtocolVersion": "TLSv1.2_2021",
    }
    return updated


class DomainStep(ProvisioningStep[DomainConfiguration]):
    """Puts the deployment behind a custom domain.

    Stages run in order and each records what it produced, so a failure in
    a later stage still leaves e.g. the certificate ARN on the record.
    """

    @property
    def name(self) -> str:
        return "domain"

    @property
    def description(self) -> str:
        return "Configures the certificate, CloudFront aliases and Route53 records"

    async def _provision(self, config: DomainConfiguration, context: StepContext) -> StepResult:
        domain = config.domain_name
        distribution_id = context.outputs.get("CloudFrontDistributionId")
        api_id = context.outputs.get("ApiId")
        if not distribution_id and not api_id:
            raise StepError(
                self.name,
                "Stack outputs include neither a CloudFront distribution nor an API",
                stage="resolve_targets",
            )

        outputs: dict[str, str] = {}
        # (record name, alias target, alias hosted zone)
        aliases: list[tuple[str, str, str]] = []

        api_domain = None
        if api_id:
            api_domain = (
                domain if context.deployment_type == DeploymentType.BACKEND else f"api.{domain}"
            )

        # Names each certificate must cover, keyed by the region it lives in
        certificate_names: dict[str, list[str]] = {}
        if distribution_id:
            certificate_names.setdefault(CLOUDFRONT_CERTIFICATE_REGION, []).append(domain)
        if api_domain:
            certificate_names.setdefault(context.region, []).append(api_domain)

        stage = "certificate"
        try:
            certificates: dict[str, str] = {}
            for region, names in certificate_names.items():
                certificates[region] = await self._certificate(config, names, region, context)
            outputs["CertificateArn"] = next(iter(certificates.values()))
            if api_domain and certificates[context.region] != outputs["CertificateArn"]:
                outputs["ApiCertificateArn"] = certificates[context.region]

            if distribution_id:
                stage = "cloudfront"
                await context.report(f"Adding {domain} to CloudFront distribution {distribution_id}")
                target = await self._attach_to_distribution(
                    distribution_id, domain, certificates[CLOUDFRONT_CERTIFICATE_REGION]
                )
                outputs["CustomDomain"] = domain
                outputs["CustomDomainURL"] = f"https://{domain}"
                aliases.append((domain, target, CLOUDFRONT_HOSTED_ZONE_ID))

            if api_domain:
                stage = "api_gateway"
                await context.report(f"Mapping API {api_id} to {api_domain}")
                target = await self.cloud.api_domains.ensure_domain_name(
                    api_domain, certificates[context.region], context.region
                )
                await self.cloud.api_domains.ensure_base_path_mapping(
                    api_domain, api_id, self._api_stage(context), context.region
                )
                outputs["ApiCustomDomain"] = api_domain
                if context.deployment_type == DeploymentType.BACKEND:
                    outputs["CustomDomain"] = domain
                zone = API_GATEWAY_HOSTED_ZONE_IDS.get(context.region)
                if zone is None:
                    raise StepError(
                        self.name,
                        f"No API Gateway hosted zone known for region {context.region}",
                        outputs=outputs,
                        stage=stage,
                    )
                aliases.append((api_domain, target, zone))

            if config.create_dns_records:
                stage = "dns"
                hosted_zone_id = config.hosted_zone_id or await self.cloud.dns.find_hosted_zone(domain)
                if not hosted_zone_id:
                    raise StepError(
                        self.name,
                        f"No Route53 hosted zone found for {domain}",
                        outputs=outputs,
                        stage=stage,
                    )
                for record_name, target, target_zone in aliases:
                    await context.report(f"Upserting alias record {record_name} -> {target}")
                    await self.cloud.dns.upsert_alias(hosted_zone_id, record_name, target, target_zone)
                outputs["HostedZoneId"] = hosted_zone_id
            else:
                await context.report("Skipping DNS records; point your domain at the targets manually")
        except StepError as e:
            if not e.outputs:
                e.outputs = dict(outputs)
            raise
        except Exception as e:
            raise StepError(
                self.name,
                f"Domain configuration failed during {stage}: {e}",
                outputs=outputs,
                stage=stage,
            ) from e

        await context.report(f"Custom domain {domain} configured")
        return StepResult(
            step_name=self.name,
            success=True,
            resource_id=domain,
            connection_info={
                "domain_name": domain,
                "certificate_arn": outputs["CertificateArn"],
                "targets": [{"record": name, "target": target} for name, target, _ in aliases],
            },
            outputs=outputs,
        )

    async def _certificate(
        self,
        config: DomainConfiguration,
        domain_names: list[str],
        region: str,
        context: StepContext,
    ) -> str:
        """Certificate in ``region`` covering every name in ``domain_names``."""
        listed = ", ".join(domain_names)
        if config.certificate_arn and arn_region(config.certificate_arn) in (None, region):
            await context.report(f"Using provided certificate for {listed}")
            return config.certificate_arn

        existing = await self.cloud.certificates.find_certificate(domain_names, region)
        if existing:
            await context.report(f"Found issued certificate for {listed} in {region}")
            return existing

        if not config.create_certificate:
            raise StepError(
                self.name,
                f"No issued certificate for {listed} in {region} and creation is disabled",
                stage="certificate",
            )

        await context.report(f"Requesting certificate for {listed} in {region}")
        arn = await self.cloud.certificates.request_certificate(domain_names, region)
        await context.report("Waiting for certificate validation")
        await self.cloud.certificates.wait_until_validated(arn)
        await context.report("Certificate validated")
        return arn

    async def _attach_to_distribution(
        self, distribution_id: str, domain: str, certificate_arn: str
    ) -> str:
        cdn = self.cloud.cdn
        for attempt in range(1, ETAG_RETRIES + 1):
            config, etag = await cdn.get_distribution_config(distribution_id)
            try:
                await cdn.update_distribution_config(
                    distribution_id,
                    apply_custom_domain(config, domain, certificate_arn),
                    etag,
                )
                break
            except PreconditionFailedError:
                self.logger.warning(
                    "domain.etag_conflict",
                    distribution_id=distribution_id,
                    attempt=attempt,
                )
                if attempt == ETAG_RETRIES:
                    raise
        return await cdn.get_domain_name(distribution_id)

    @staticmethod
    def _api_stage(context: StepContext) -> str:
        api_url = context.outputs.get("ApiUrl", "")
        stage = urlparse(api_url).path.strip("/")
        return stage or "prod"
