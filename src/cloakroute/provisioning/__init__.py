"""Certificate provisioning backends.

The backend is picked by configuration (provisioner.backend):

- fly: Fly.io app certificates (GraphQL API)
- cloudflare: Cloudflare for SaaS custom hostnames
- none: the edge already holds a certificate for every hostname
"""

from __future__ import annotations

from cloakroute.core.config import PlatformConfig
from cloakroute.provisioning.base import (
    CertificateNotConfigured,
    CertificateProvisioner,
    EdgeCertificateProvisioner,
    IssuanceResult,
    ProvisionerError,
    ProvisionerUnavailable,
)
from cloakroute.provisioning.cache import TTLCache
from cloakroute.provisioning.challenges import ChallengeToken, ChallengeTokenStore
from cloakroute.provisioning.cloudflare import (
    CloudflareAliasRecords,
    CloudflareAPIError,
    CloudflareClient,
    CloudflareCustomHostnameProvisioner,
    ZoneCache,
)
from cloakroute.provisioning.fly import FlyCertificateProvisioner

__all__ = [
    "CertificateNotConfigured",
    "CertificateProvisioner",
    "ChallengeToken",
    "ChallengeTokenStore",
    "CloudflareAPIError",
    "CloudflareAliasRecords",
    "CloudflareClient",
    "CloudflareCustomHostnameProvisioner",
    "EdgeCertificateProvisioner",
    "FlyCertificateProvisioner",
    "IssuanceResult",
    "ProvisionerError",
    "ProvisionerUnavailable",
    "TTLCache",
    "ZoneCache",
    "create_alias_records",
    "create_provisioner",
]


def _cloudflare_client(config: PlatformConfig) -> CloudflareClient:
    settings = config.provisioner
    return CloudflareClient(
        api_token=settings.cloudflare_api_token,
        api_url=settings.cloudflare_api_url,
        timeout=config.timeouts.provisioner_timeout,
        zone_cache_ttl=settings.zone_cache_ttl,
    )


def create_provisioner(
    config: PlatformConfig, challenges: ChallengeTokenStore
) -> CertificateProvisioner:
    """Build the configured certificate backend."""
    settings = config.provisioner
    if settings.backend == "fly":
        return FlyCertificateProvisioner(
            api_token=settings.fly_api_token,
            app=settings.fly_app,
            api_url=settings.fly_api_url,
            timeout=config.timeouts.provisioner_timeout,
        )
    if settings.backend == "cloudflare":
        return CloudflareCustomHostnameProvisioner(
            client=_cloudflare_client(config),
            zone_id=settings.cloudflare_zone_id,
            challenges=challenges,
            validation=settings.cloudflare_validation,
        )
    return EdgeCertificateProvisioner()


def create_alias_records(config: PlatformConfig) -> CloudflareAliasRecords | None:
    """Build the alias record manager, or None when aliases are disabled."""
    if not config.edge.alias_zone:
        return None
    return CloudflareAliasRecords(_cloudflare_client(config), config.edge.edge_origin)
