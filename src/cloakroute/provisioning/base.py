"""Certificate provisioner interface.

A provisioner wraps exactly one external issuance workflow (Fly.io
certificates, Cloudflare custom hostnames, ...) and reports its state as an
IssuanceResult. Both request_certificate() and check_certificate() are
idempotent: calling them twice never creates a second provider-side object.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

READY_STATES = frozenset({"ready", "active", "issued"})


class ProvisionerError(Exception):
    """The provider rejected a call (hard API error)."""


class ProvisionerUnavailable(ProvisionerError):
    """The provider could not be reached or answered with a server error."""


class CertificateNotConfigured(ProvisionerError):
    """No certificate object exists yet for the hostname."""

    def __init__(self, hostname: str) -> None:
        super().__init__(f"No certificate configured for {hostname}")
        self.hostname = hostname


@dataclass(frozen=True)
class IssuanceResult:
    """Provider-neutral view of a certificate object."""

    configured: bool
    client_status: str | None
    http_or_alpn_configured: bool
    dns_configured: bool
    dns_challenge_name: str | None = None
    dns_challenge_target: str | None = None
    provider_ref: str | None = None

    @property
    def ready(self) -> bool:
        """Certificate is issued and serving."""
        return self.configured and (self.client_status or "").lower() in READY_STATES

    @property
    def needs_dns_challenge(self) -> bool:
        """The provider demands a DNS-01 record and no other validation path is configured."""
        return (
            bool(self.dns_challenge_name and self.dns_challenge_target)
            and not self.http_or_alpn_configured
        )


class CertificateProvisioner(ABC):
    """Base class for certificate/hostname provisioning backends."""

    name: str = "base"
    target: str = ""
    """Provider-side scope (Fly app, Cloudflare zone id) passed by the reconciler."""

    @abstractmethod
    async def request_certificate(self, target: str, hostname: str) -> IssuanceResult:
        """Create the certificate object for a hostname, or return the existing one."""
        ...

    @abstractmethod
    async def check_certificate(self, target: str, hostname: str) -> IssuanceResult:
        """Report the certificate object for a hostname.

        Raises:
            CertificateNotConfigured: If no object exists yet.
            ProvisionerError: On any other provider failure.
        """
        ...

    @abstractmethod
    async def release(self, target: str, hostname: str, provider_ref: str | None) -> None:
        """Delete the provider-side object for a hostname, if any."""
        ...

    async def aclose(self) -> None:
        """Release HTTP resources held by the backend."""
        return None


class EdgeCertificateProvisioner(CertificateProvisioner):
    """Backend for edges that already hold a certificate covering every hostname.

    Nothing is created per hostname; the certificate is always reported ready.
    """

    name = "none"

    def _result(self) -> IssuanceResult:
        return IssuanceResult(
            configured=True,
            client_status="Ready",
            http_or_alpn_configured=True,
            dns_configured=False,
        )

    async def request_certificate(self, target: str, hostname: str) -> IssuanceResult:
        return self._result()

    async def check_certificate(self, target: str, hostname: str) -> IssuanceResult:
        return self._result()

    async def release(self, target: str, hostname: str, provider_ref: str | None) -> None:
        return None
