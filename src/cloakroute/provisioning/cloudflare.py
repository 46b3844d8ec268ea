"""Cloudflare backends.

Two collaborators live here:

- CloudflareCustomHostnameProvisioner issues certificates through Cloudflare
  for SaaS custom hostnames in a single SaaS zone.
- CloudflareAliasRecords publishes the per-domain alias CNAME
  (<id>.<alias_zone> -> edge origin) in whichever zone owns the alias.

Both share a CloudflareClient, which owns the apex -> zone id cache.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from cloakroute.provisioning.base import (
    CertificateNotConfigured,
    CertificateProvisioner,
    IssuanceResult,
    ProvisionerError,
    ProvisionerUnavailable,
)
from cloakroute.provisioning.cache import TTLCache
from cloakroute.provisioning.challenges import ChallengeTokenStore

logger = structlog.get_logger()


class CloudflareAPIError(ProvisionerError):
    """Cloudflare answered with success=false or a 4xx status."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ZoneCache(TTLCache[str]):
    """Apex name -> Cloudflare zone id."""


class CloudflareClient:
    """Thin async wrapper over the Cloudflare v4 REST API."""

    def __init__(
        self,
        api_token: str | None,
        api_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 15.0,
        zone_cache_ttl: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_token:
            logger.warning("Cloudflare API token not configured")
        self.zones = ZoneCache(ttl=zone_cache_ttl)
        self._client = httpx.AsyncClient(
            base_url=api_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_token or ''}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        """Call the API and return the "result" member.

        Raises:
            ProvisionerUnavailable: Transport failure, timeout or 5xx.
            CloudflareAPIError: The API rejected the call.
        """
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            raise ProvisionerUnavailable(f"Cloudflare API timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProvisionerUnavailable(f"Cloudflare API unreachable: {e}") from e

        if response.status_code >= 500:
            raise ProvisionerUnavailable(f"Cloudflare API returned {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise CloudflareAPIError(
                f"Cloudflare API returned invalid JSON (HTTP {response.status_code})",
                response.status_code,
            ) from e

        if response.status_code >= 400 or not payload.get("success", False):
            errors = payload.get("errors") or []
            message = " | ".join(str(err.get("message", err)) for err in errors)
            raise CloudflareAPIError(
                message or f"Cloudflare API returned {response.status_code}",
                response.status_code,
            )
        return payload.get("result")

    async def zone_id_for(self, hostname: str) -> str | None:
        """Find the zone owning a hostname by walking its parent names.

        Hits are cached per apex name; misses are not.
        """
        labels = hostname.strip(".").lower().split(".")
        candidates = [".".join(labels[i:]) for i in range(len(labels) - 1)]

        for name in candidates:
            cached = self.zones.get(name)
            if cached is not None:
                return cached

        for name in candidates:
            result = await self.request("GET", "/zones", params={"name": name})
            if result:
                zone_id = result[0]["id"]
                self.zones.set(name, zone_id)
                return zone_id
        return None

    async def aclose(self) -> None:
        await self._client.aclose()


def _http_token(http_url: str) -> str:
    """Last path segment of .../.well-known/acme-challenge/<token>."""
    return urlsplit(http_url).path.rstrip("/").rsplit("/", 1)[-1]


class CloudflareCustomHostnameProvisioner(CertificateProvisioner):
    """Certificates through Cloudflare for SaaS custom hostnames.

    HTTP validation bodies are written to the challenge token store so the
    edge can answer /.well-known/acme-challenge/<token> itself. TXT
    validation records are surfaced as DNS challenges.
    """

    name = "cloudflare"

    def __init__(
        self,
        client: CloudflareClient,
        zone_id: str | None,
        challenges: ChallengeTokenStore,
        validation: str = "txt",
    ) -> None:
        if not zone_id:
            logger.warning("Cloudflare SaaS zone id not configured")
        self.client = client
        self.target = zone_id or ""
        self.challenges = challenges
        self.validation = validation

    async def _lookup(self, zone_id: str, hostname: str) -> dict[str, Any] | None:
        result = await self.client.request(
            "GET", f"/zones/{zone_id}/custom_hostnames", params={"hostname": hostname}
        )
        for item in result or []:
            if item.get("hostname", "").lower() == hostname:
                return item
        return None

    async def _to_result(self, hostname: str, item: dict[str, Any]) -> IssuanceResult:
        ssl = item.get("ssl") or {}
        status = ssl.get("status")
        records = ssl.get("validation_records") or []
        if not records and ssl.get("txt_name"):
            records = [{"txt_name": ssl["txt_name"], "txt_value": ssl.get("txt_value")}]

        http_configured = False
        dns_name: str | None = None
        dns_value: str | None = None
        for record in records:
            if record.get("http_url") and record.get("http_body"):
                await self.challenges.put(
                    hostname,
                    _http_token(record["http_url"]),
                    record["http_body"],
                    provider_ref=item.get("id"),
                )
                http_configured = True
            elif record.get("txt_name") and record.get("txt_value") and dns_name is None:
                dns_name = record["txt_name"]
                dns_value = record["txt_value"]

        return IssuanceResult(
            configured=True,
            client_status=status,
            http_or_alpn_configured=http_configured,
            dns_configured=dns_name is not None,
            dns_challenge_name=dns_name,
            dns_challenge_target=dns_value,
            provider_ref=item.get("id"),
        )

    async def check_certificate(self, target: str, hostname: str) -> IssuanceResult:
        item = await self._lookup(target, hostname)
        if item is None:
            raise CertificateNotConfigured(hostname)
        return await self._to_result(hostname, item)

    async def request_certificate(self, target: str, hostname: str) -> IssuanceResult:
        try:
            return await self.check_certificate(target, hostname)
        except CertificateNotConfigured:
            pass

        item = await self.client.request(
            "POST",
            f"/zones/{target}/custom_hostnames",
            json={"hostname": hostname, "ssl": {"method": self.validation, "type": "dv"}},
        )
        logger.info(
            "Cloudflare custom hostname created",
            hostname=hostname,
            custom_hostname_id=item.get("id"),
            validation=self.validation,
        )
        return await self._to_result(hostname, item)

    async def release(self, target: str, hostname: str, provider_ref: str | None) -> None:
        ref = provider_ref
        if ref is None:
            item = await self._lookup(target, hostname)
            if item is None:
                return
            ref = item["id"]

        try:
            await self.client.request("DELETE", f"/zones/{target}/custom_hostnames/{ref}")
        except CloudflareAPIError as e:
            if e.status_code != 404:
                raise
        await self.challenges.remove_by_provider_ref(ref)
        logger.info("Cloudflare custom hostname deleted", hostname=hostname, custom_hostname_id=ref)

    async def aclose(self) -> None:
        await self.client.aclose()


class CloudflareAliasRecords:
    """Publishes alias CNAME records pointing at the edge origin."""

    def __init__(self, client: CloudflareClient, edge_origin: str) -> None:
        self.client = client
        self.edge_origin = edge_origin.rstrip(".").lower()

    async def _zone(self, alias: str) -> str:
        zone_id = await self.client.zone_id_for(alias)
        if zone_id is None:
            raise ProvisionerError(f"No Cloudflare zone found for {alias}")
        return zone_id

    async def _records(self, zone_id: str, alias: str) -> list[dict[str, Any]]:
        try:
            result = await self.client.request(
                "GET", f"/zones/{zone_id}/dns_records", params={"type": "CNAME", "name": alias}
            )
        except CloudflareAPIError as e:
            if e.status_code == 404:
                # zone was moved or recreated
                self.client.zones.invalidate()
            raise
        return list(result or [])

    async def ensure(self, alias: str) -> None:
        """Create or repoint the CNAME for an alias."""
        zone_id = await self._zone(alias)
        body = {
            "type": "CNAME",
            "name": alias,
            "content": self.edge_origin,
            "proxied": False,
            "ttl": 1,
        }
        existing = await self._records(zone_id, alias)
        if not existing:
            await self.client.request("POST", f"/zones/{zone_id}/dns_records", json=body)
            logger.info("Alias record created", alias=alias, target=self.edge_origin)
            return

        record = existing[0]
        if record.get("content", "").rstrip(".").lower() != self.edge_origin:
            await self.client.request(
                "PUT", f"/zones/{zone_id}/dns_records/{record['id']}", json=body
            )
            logger.info("Alias record updated", alias=alias, target=self.edge_origin)

    async def remove(self, alias: str) -> None:
        """Delete every CNAME record for an alias."""
        zone_id = await self._zone(alias)
        for record in await self._records(zone_id, alias):
            await self.client.request("DELETE", f"/zones/{zone_id}/dns_records/{record['id']}")
        logger.info("Alias record deleted", alias=alias)
