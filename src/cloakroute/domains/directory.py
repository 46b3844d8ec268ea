"""Domain directory: the authoritative set of customer domains.

The directory owns record identity, hostname uniqueness and the side effects
of lifecycle edits (alias records, releasing provider objects). Status fields
are never edited here directly; they only change through
record_observation(), which the reconciler calls once per pass.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog

from cloakroute.domains.errors import DomainNotFoundError, InvalidHostnameError
from cloakroute.domains.hosts import normalize_host
from cloakroute.domains.storage import (
    CertStatus,
    Domain,
    DomainRules,
    DomainStatus,
    DomainStore,
    Observation,
)
from cloakroute.provisioning import CertificateProvisioner, CloudflareAliasRecords

logger = structlog.get_logger()

EDITABLE_FIELDS = frozenset({"hostname", "white_destination", "black_destination", "rules"})


def _clean_destination(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def _coerce_rules(rules: DomainRules | dict[str, Any] | None) -> DomainRules:
    if isinstance(rules, DomainRules):
        return rules
    return DomainRules.from_dict(rules)


class DomainDirectory:
    """Create, edit, look up and delete domain records."""

    def __init__(
        self,
        store: DomainStore,
        provisioner: CertificateProvisioner,
        edge_origin: str,
        alias_zone: str | None = None,
        alias_records: CloudflareAliasRecords | None = None,
    ) -> None:
        """Initialize the directory.

        Args:
            store: Persistence for domain records.
            provisioner: Backend whose objects are released on delete and
                hostname change.
            edge_origin: Hostname customers CNAME to when aliases are disabled.
            alias_zone: Zone for per-domain aliases, or None to disable them.
            alias_records: Publishes alias CNAME records. Optional even when
                alias_zone is set (records may be managed out of band).
        """
        self.store = store
        self.provisioner = provisioner
        self.edge_origin = edge_origin.rstrip(".").lower()
        self.alias_zone = alias_zone.strip(".").lower() if alias_zone else None
        self.alias_records = alias_records

    def _normalize(self, hostname: str) -> str:
        host = normalize_host(hostname)
        if not host or host.startswith("["):
            raise InvalidHostnameError(f"Invalid hostname: {hostname!r}")
        if "." not in host:
            raise InvalidHostnameError(f"Hostname must be fully qualified: {hostname!r}")
        if host == self.edge_origin or (
            self.alias_zone and (host == self.alias_zone or host.endswith(f".{self.alias_zone}"))
        ):
            raise InvalidHostnameError(f"Hostname {host} is reserved by the platform")
        return host

    async def create(
        self,
        hostname: str,
        owner_id: str,
        white_destination: str | None = None,
        black_destination: str | None = None,
        rules: DomainRules | dict[str, Any] | None = None,
    ) -> Domain:
        """Register a customer hostname for a tenant.

        Raises:
            InvalidHostnameError: If the hostname does not normalize.
            DomainConflictError: If the hostname is already claimed.
        """
        host = self._normalize(hostname)
        domain_id = uuid.uuid4().hex

        aliases: list[str] = []
        internal_target = self.edge_origin
        if self.alias_zone:
            alias = f"{domain_id[:12]}.{self.alias_zone}"
            aliases.append(alias)
            internal_target = alias

        domain = Domain(
            id=domain_id,
            hostname=host,
            owner_id=owner_id,
            internal_target=internal_target,
            white_destination=_clean_destination(white_destination),
            black_destination=_clean_destination(black_destination),
            rules=_coerce_rules(rules),
            aliases=aliases,
            domain_status=DomainStatus.PENDING,
            cert_status=CertStatus.PENDING,
        )
        await self.store.insert(domain)
        logger.info("Domain created", domain_id=domain_id, hostname=host, owner_id=owner_id)

        for alias in aliases:
            await self._publish_alias(alias)
        return domain

    async def get(self, domain_id: str) -> Domain | None:
        return await self.store.get(domain_id)

    async def require(self, domain_id: str) -> Domain:
        """Like get(), but raises DomainNotFoundError when absent."""
        domain = await self.store.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(domain_id)
        return domain

    async def find_by_hostname(self, hostname: str) -> Domain | None:
        """Find the record answering to a hostname or one of its aliases.

        Served from the in-memory index; never touches the network.
        """
        host = normalize_host(hostname)
        if not host:
            return None
        return await self.store.find_by_host(host)

    async def update(self, domain_id: str, **fields: Any) -> Domain:
        """Edit tenant-controlled fields of a record.

        A hostname change resets certificate state to PENDING, drops challenge
        records issued for the old name and releases the old provider object.

        Raises:
            ValueError: If a non-editable field is passed.
            DomainNotFoundError: If the record does not exist.
            InvalidHostnameError: If the new hostname does not normalize.
            DomainConflictError: If the new hostname is already claimed.
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        changes: dict[str, Any] = {}
        if "white_destination" in fields:
            changes["white_destination"] = _clean_destination(fields["white_destination"])
        if "black_destination" in fields:
            changes["black_destination"] = _clean_destination(fields["black_destination"])
        if "rules" in fields:
            changes["rules"] = _coerce_rules(fields["rules"])

        if fields.get("hostname") is not None:
            changes["hostname"] = self._normalize(fields["hostname"])
        hostname_reset = dict(
            domain_status=DomainStatus.PENDING,
            cert_status=CertStatus.PENDING,
            last_reason="hostname changed, re-provisioning",
            # passes started for the old hostname become stale
            last_checked_at=datetime.now(UTC),
            challenge_records=[],
            provider_ref=None,
            provider_status=None,
            provider_configured=False,
            cert_error=None,
        )

        edited = await self.store.edit(domain_id, changes, hostname_reset)
        if edited is None:
            raise DomainNotFoundError(domain_id)
        current, updated = edited

        if updated.hostname != current.hostname:
            logger.info(
                "Domain hostname changed",
                domain_id=domain_id,
                old_hostname=current.hostname,
                hostname=updated.hostname,
            )
            await self._release(current)
        return updated

    async def delete(self, domain_id: str) -> Domain:
        """Delete a record, cleaning up external objects best-effort.

        External failures are logged; the local record is always removed.

        Raises:
            DomainNotFoundError: If the record does not exist.
        """
        domain = await self.require(domain_id)
        await self._release(domain)
        for alias in domain.aliases:
            await self._remove_alias(alias)

        deleted = await self.store.delete(domain_id)
        if deleted is None:
            raise DomainNotFoundError(domain_id)
        logger.info("Domain deleted", domain_id=domain_id, hostname=domain.hostname)
        return deleted

    async def list_by_owner(self, owner_id: str) -> list[Domain]:
        domains = await self.store.list_by_owner(owner_id)
        return sorted(domains, key=lambda d: d.created_at)

    async def count_active_by_owner(self, owner_id: str) -> int:
        return await self.store.count_by_owner(owner_id, DomainStatus.ACTIVE)

    async def list_all(self) -> list[Domain]:
        return await self.store.list_all()

    async def list_pending(self) -> list[Domain]:
        """Domains that have not converged to ACTIVE yet."""
        return [d for d in await self.store.list_all() if d.domain_status != DomainStatus.ACTIVE]

    async def record_observation(
        self, domain_id: str, observation: Observation, observed_at: datetime
    ) -> Domain | None:
        """Persist the outcome of one reconciliation pass.

        Returns None if the record was deleted in the meantime.
        """
        return await self.store.apply_observation(domain_id, observation, observed_at)

    async def _release(self, domain: Domain) -> None:
        try:
            await self.provisioner.release(
                self.provisioner.target, domain.hostname, domain.provider_ref
            )
        except Exception as e:
            logger.warning(
                "Failed to release certificate object",
                domain_id=domain.id,
                hostname=domain.hostname,
                provisioner=self.provisioner.name,
                error=str(e),
            )

    async def _publish_alias(self, alias: str) -> None:
        if self.alias_records is None:
            return
        try:
            await self.alias_records.ensure(alias)
        except Exception as e:
            logger.warning("Failed to publish alias record", alias=alias, error=str(e))

    async def _remove_alias(self, alias: str) -> None:
        if self.alias_records is None:
            return
        try:
            await self.alias_records.remove(alias)
        except Exception as e:
            logger.warning("Failed to remove alias record", alias=alias, error=str(e))
