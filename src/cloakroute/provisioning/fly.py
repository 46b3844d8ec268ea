"""Fly.io certificate backend.

Certificates are attached to the Fly app that terminates TLS at the edge.
Fly picks HTTP-01 or TLS-ALPN-01 when the customer CNAME already points at
the app, and asks for a DNS-01 CNAME (_acme-challenge.<host> -> <id>.flydns.net)
otherwise.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from cloakroute.provisioning.base import (
    CertificateNotConfigured,
    CertificateProvisioner,
    IssuanceResult,
    ProvisionerError,
    ProvisionerUnavailable,
)

logger = structlog.get_logger()

_CERT_FIELDS = """
    id
    hostname
    configured
    clientStatus
    isAcmeHttpConfigured
    acmeAlpnConfigured
    acmeDnsConfigured
    dnsValidationHostname
    dnsValidationTarget
"""

CHECK_QUERY = f"""
query CheckCert($appName: String!, $hostname: String!) {{
  app(name: $appName) {{
    certificate(hostname: $hostname) {{{_CERT_FIELDS}}}
  }}
}}
"""

ADD_MUTATION = f"""
mutation CreateCert($appId: ID!, $hostname: String!) {{
  addCertificate(appId: $appId, hostname: $hostname) {{
    certificate {{{_CERT_FIELDS}}}
  }}
}}
"""

DELETE_MUTATION = """
mutation DeleteCert($appId: ID!, $hostname: String!) {
  deleteCertificate(appId: $appId, hostname: $hostname) {
    app { name }
  }
}
"""

_NOT_FOUND_MARKERS = ("not found", "could not find", "couldn't find")


def _is_not_found(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _NOT_FOUND_MARKERS)


def _to_result(cert: dict[str, Any]) -> IssuanceResult:
    return IssuanceResult(
        configured=bool(cert.get("configured")),
        client_status=cert.get("clientStatus"),
        http_or_alpn_configured=bool(
            cert.get("isAcmeHttpConfigured") or cert.get("acmeAlpnConfigured")
        ),
        dns_configured=bool(cert.get("acmeDnsConfigured")),
        dns_challenge_name=cert.get("dnsValidationHostname") or None,
        dns_challenge_target=cert.get("dnsValidationTarget") or None,
        provider_ref=cert.get("id"),
    )


class FlyCertificateProvisioner(CertificateProvisioner):
    """Certificates managed through the Fly GraphQL API."""

    name = "fly"

    def __init__(
        self,
        api_token: str | None,
        app: str,
        api_url: str = "https://api.fly.io/graphql",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_token:
            logger.warning("Fly API token not configured")
        self.target = app
        self.api_url = api_url
        self._client = httpx.AsyncClient(
            headers={"Authorization": f"Bearer {api_token or ''}"},
            timeout=timeout,
            transport=transport,
        )

    async def _gql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(
                self.api_url, json={"query": query, "variables": variables}
            )
        except httpx.TimeoutException as e:
            raise ProvisionerUnavailable(f"Fly API timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProvisionerUnavailable(f"Fly API unreachable: {e}") from e

        if response.status_code >= 500:
            raise ProvisionerUnavailable(f"Fly API returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ProvisionerError(
                f"Fly API returned invalid JSON (HTTP {response.status_code})"
            ) from e

        if payload.get("errors"):
            message = " | ".join(
                str(err.get("message", "unknown error")) for err in payload["errors"]
            )
            raise ProvisionerError(message or "Fly GraphQL error")
        if response.status_code >= 400:
            raise ProvisionerError(f"Fly API returned {response.status_code}")
        return payload.get("data") or {}

    async def check_certificate(self, target: str, hostname: str) -> IssuanceResult:
        try:
            data = await self._gql(CHECK_QUERY, {"appName": target, "hostname": hostname})
        except ProvisionerUnavailable:
            raise
        except ProvisionerError as e:
            if _is_not_found(str(e)):
                raise CertificateNotConfigured(hostname) from e
            raise

        cert = (data.get("app") or {}).get("certificate")
        if not cert:
            raise CertificateNotConfigured(hostname)
        return _to_result(cert)

    async def request_certificate(self, target: str, hostname: str) -> IssuanceResult:
        try:
            return await self.check_certificate(target, hostname)
        except CertificateNotConfigured:
            pass

        data = await self._gql(ADD_MUTATION, {"appId": target, "hostname": hostname})
        cert = (data.get("addCertificate") or {}).get("certificate")
        if not cert:
            raise ProvisionerError(f"Fly did not return a certificate for {hostname}")
        logger.info("Fly certificate requested", hostname=hostname, app=target)
        return _to_result(cert)

    async def release(self, target: str, hostname: str, provider_ref: str | None) -> None:
        try:
            await self._gql(DELETE_MUTATION, {"appId": target, "hostname": hostname})
        except ProvisionerUnavailable:
            raise
        except ProvisionerError as e:
            if _is_not_found(str(e)):
                return
            raise
        logger.info("Fly certificate deleted", hostname=hostname, app=target)

    async def aclose(self) -> None:
        await self._client.aclose()
