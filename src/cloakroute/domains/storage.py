"""Storage for customer domain records.

This module provides JSON file-based storage for domain records, with an
in-memory index by id and by hostname so that request-path lookups never
touch the disk or the network.

Storage file format (domains.json):
    {
        "domains": {
            "5f0c...": {
                "id": "5f0c...",
                "hostname": "promo.example.com",
                "owner_id": "tenant-1",
                "internal_target": "edge.cloakroute.net",
                "domain_status": "ACTIVE",
                "cert_status": "READY",
                "challenge_records": [],
                ...
            }
        }
    }
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from cloakroute.domains.errors import DomainConflictError

logger = structlog.get_logger()


def _utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class DomainStatus(Enum):
    """Overall status of a customer domain."""

    PENDING = "PENDING"
    PROPAGATING = "PROPAGATING"
    ACTIVE = "ACTIVE"
    ERROR = "ERROR"


class CertStatus(Enum):
    """Local view of the certificate for a customer domain."""

    NONE = "NONE"
    PENDING = "PENDING"
    DNS_CHALLENGE_NEEDED = "DNS_CHALLENGE_NEEDED"
    READY = "READY"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChallengeRecord:
    """A DNS record the customer must publish for DNS-01 validation."""

    name: str
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChallengeRecord:
        return cls(name=data["name"], value=data["value"])


def merge_challenge_records(
    existing: list[ChallengeRecord], incoming: list[ChallengeRecord]
) -> list[ChallengeRecord]:
    """Replace entries keyed by name, appending names not seen before.

    Order of existing entries is preserved.
    """
    merged = list(existing)
    for record in incoming:
        for i, current in enumerate(merged):
            if current.name == record.name:
                merged[i] = record
                break
        else:
            merged.append(record)
    return merged


@dataclass(frozen=True)
class DomainRules:
    """Per-domain classification overrides."""

    ua_block: str | None = None
    """Case-insensitive regex; matching user agents are classified as bots."""

    swap_destinations: bool = False
    """Send bots to the black destination and humans to the white one."""

    def to_dict(self) -> dict[str, Any]:
        return {"ua_block": self.ua_block, "swap_destinations": self.swap_destinations}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> DomainRules:
        data = data or {}
        return cls(
            ua_block=data.get("ua_block") or None,
            swap_destinations=bool(data.get("swap_destinations", False)),
        )


@dataclass
class Domain:
    """A customer hostname attached to a tenant."""

    id: str
    hostname: str
    owner_id: str
    internal_target: str
    white_destination: str | None = None
    black_destination: str | None = None
    rules: DomainRules = field(default_factory=DomainRules)
    aliases: list[str] = field(default_factory=list)
    domain_status: DomainStatus = DomainStatus.PENDING
    cert_status: CertStatus = CertStatus.PENDING
    last_reason: str | None = None
    last_checked_at: datetime | None = None
    challenge_records: list[ChallengeRecord] = field(default_factory=list)
    provider_ref: str | None = None
    provider_status: str | None = None
    provider_configured: bool = False
    cert_error: str | None = None
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)

    @property
    def hostnames(self) -> list[str]:
        """Every hostname this record answers to."""
        return [self.hostname, *self.aliases]

    @property
    def pending_challenge(self) -> ChallengeRecord | None:
        """The most recent challenge record, if any."""
        return self.challenge_records[-1] if self.challenge_records else None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "hostname": self.hostname,
            "owner_id": self.owner_id,
            "internal_target": self.internal_target,
            "white_destination": self.white_destination,
            "black_destination": self.black_destination,
            "rules": self.rules.to_dict(),
            "aliases": list(self.aliases),
            "domain_status": self.domain_status.value,
            "cert_status": self.cert_status.value,
            "last_reason": self.last_reason,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "challenge_records": [r.to_dict() for r in self.challenge_records],
            "provider_ref": self.provider_ref,
            "provider_status": self.provider_status,
            "provider_configured": self.provider_configured,
            "cert_error": self.cert_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Domain:
        """Create from dictionary (JSON deserialization)."""
        return cls(
            id=data["id"],
            hostname=data["hostname"],
            owner_id=data["owner_id"],
            internal_target=data["internal_target"],
            white_destination=data.get("white_destination"),
            black_destination=data.get("black_destination"),
            rules=DomainRules.from_dict(data.get("rules")),
            aliases=list(data.get("aliases", [])),
            domain_status=DomainStatus(data.get("domain_status", "PENDING")),
            cert_status=CertStatus(data.get("cert_status", "PENDING")),
            last_reason=data.get("last_reason"),
            last_checked_at=_parse_dt(data.get("last_checked_at")),
            challenge_records=[
                ChallengeRecord.from_dict(r) for r in data.get("challenge_records", [])
            ],
            provider_ref=data.get("provider_ref"),
            provider_status=data.get("provider_status"),
            provider_configured=data.get("provider_configured", False),
            cert_error=data.get("cert_error"),
            created_at=_parse_dt(data.get("created_at")) or _utc_now(),
            updated_at=_parse_dt(data.get("updated_at")) or _utc_now(),
        )


@dataclass(frozen=True)
class Observation:
    """Status fields written by one reconciliation pass."""

    domain_status: DomainStatus
    cert_status: CertStatus
    reason: str
    challenge_records: list[ChallengeRecord]
    provider_ref: str | None
    provider_status: str | None
    provider_configured: bool
    cert_error: str | None


class DomainStore:
    """JSON file-based storage for domain records.

    Safe for concurrent tasks via an asyncio lock. A store created without a
    path keeps records in memory only.
    """

    def __init__(self, storage_path: str | Path | None = "domains.json") -> None:
        """Initialize domain store.

        Args:
            storage_path: Path to the JSON storage file, or None for memory only.
        """
        self.storage_path = Path(storage_path) if storage_path is not None else None
        self._lock = asyncio.Lock()
        self._domains: dict[str, Domain] | None = None
        self._by_host: dict[str, str] = {}

    async def _load(self) -> dict[str, Domain]:
        """Load domains from storage file."""
        if self._domains is not None:
            return self._domains

        domains: dict[str, Domain] = {}
        if self.storage_path is not None and self.storage_path.exists():
            try:
                content = await asyncio.to_thread(self.storage_path.read_text)
                data = json.loads(content) if content.strip() else {}
                domains = {
                    domain_id: Domain.from_dict(record)
                    for domain_id, record in data.get("domains", {}).items()
                }
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error(
                    "Failed to load domain store", path=str(self.storage_path), error=str(e)
                )
                domains = {}

        self._domains = domains
        self._reindex()
        return self._domains

    def _reindex(self) -> None:
        self._by_host = {}
        for domain in (self._domains or {}).values():
            for host in domain.hostnames:
                self._by_host[host] = domain.id

    def _write_file(self, content: str) -> None:
        assert self.storage_path is not None
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.storage_path.name}.", suffix=".tmp", dir=self.storage_path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            os.replace(tmp_name, self.storage_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def _save(self) -> None:
        """Save domains to storage file.

        The index is rebuilt before the first await, so lock-free readers see
        the new state at once. The file is replaced atomically.
        """
        self._reindex()
        if self.storage_path is None:
            return
        data = {"domains": {d_id: d.to_dict() for d_id, d in (self._domains or {}).items()}}
        content = json.dumps(data, indent=2)
        await asyncio.to_thread(self._write_file, content)

    async def _loaded(self) -> dict[str, Domain]:
        """Return the in-memory records, loading them once under the lock.

        Reads never wait for a pending file write.
        """
        if self._domains is not None:
            return self._domains
        async with self._lock:
            return await self._load()

    def _claimed_by(self, host: str) -> str | None:
        return self._by_host.get(host)

    async def insert(self, domain: Domain) -> Domain:
        """Insert a new record.

        Raises:
            DomainConflictError: If any of its hostnames is already claimed.
        """
        async with self._lock:
            domains = await self._load()
            for host in domain.hostnames:
                if self._claimed_by(host) is not None:
                    raise DomainConflictError(host)
            domains[domain.id] = domain
            await self._save()
            return domain

    async def replace(self, domain: Domain) -> Domain | None:
        """Overwrite an existing record.

        Returns:
            The stored record, or None if it no longer exists.

        Raises:
            DomainConflictError: If a changed hostname is claimed by another record.
        """
        async with self._lock:
            domains = await self._load()
            if domain.id not in domains:
                return None
            for host in domain.hostnames:
                owner = self._claimed_by(host)
                if owner is not None and owner != domain.id:
                    raise DomainConflictError(host)
            domain.updated_at = _utc_now()
            domains[domain.id] = domain
            await self._save()
            return domain

    async def edit(
        self, domain_id: str, changes: dict[str, Any], hostname_reset: dict[str, Any] | None = None
    ) -> tuple[Domain, Domain] | None:
        """Apply tenant edits to the record as currently stored.

        The read and the write happen under one lock acquisition, so status
        fields written by a concurrent reconciliation pass are never rolled
        back. hostname_reset is applied only when changes carries a hostname
        different from the stored one.

        Returns:
            (previous, updated) records, or None if the record does not exist.

        Raises:
            DomainConflictError: If a changed hostname is claimed by another record.
        """
        async with self._lock:
            domains = await self._load()
            current = domains.get(domain_id)
            if current is None:
                return None
            fields = dict(changes)
            host = fields.get("hostname")
            if host is None or host == current.hostname:
                fields.pop("hostname", None)
            else:
                owner = self._claimed_by(host)
                if owner is not None and owner != domain_id:
                    raise DomainConflictError(host)
                fields.update(hostname_reset or {})
            updated = replace(current, **fields, updated_at=_utc_now())
            domains[domain_id] = updated
            await self._save()
            return current, updated

    async def apply_observation(
        self, domain_id: str, observation: Observation, observed_at: datetime
    ) -> Domain | None:
        """Conditionally write the status fields of one reconciliation pass.

        The write is skipped when the record was deleted (it is never
        recreated) or when an observation newer than observed_at is already
        stored.

        Returns:
            The record after the write, or None if it no longer exists.
        """
        async with self._lock:
            domains = await self._load()
            current = domains.get(domain_id)
            if current is None:
                return None
            if current.last_checked_at is not None and observed_at < current.last_checked_at:
                logger.info(
                    "Discarding stale observation",
                    domain_id=domain_id,
                    observed_at=observed_at.isoformat(),
                    stored_at=current.last_checked_at.isoformat(),
                )
                return current

            updated = replace(
                current,
                domain_status=observation.domain_status,
                cert_status=observation.cert_status,
                last_reason=observation.reason,
                last_checked_at=observed_at,
                challenge_records=list(observation.challenge_records),
                provider_ref=observation.provider_ref,
                provider_status=observation.provider_status,
                provider_configured=observation.provider_configured,
                cert_error=observation.cert_error,
                updated_at=_utc_now(),
            )
            domains[domain_id] = updated
            await self._save()
            return updated

    async def get(self, domain_id: str) -> Domain | None:
        """Get a domain record by id."""
        domains = await self._loaded()
        return domains.get(domain_id)

    async def find_by_host(self, host: str) -> Domain | None:
        """Get the record answering to a normalized hostname or alias."""
        domains = await self._loaded()
        domain_id = self._by_host.get(host)
        return domains.get(domain_id) if domain_id else None

    async def list_all(self) -> list[Domain]:
        """Get all domain records."""
        domains = await self._loaded()
        return list(domains.values())

    async def list_by_owner(self, owner_id: str) -> list[Domain]:
        """Get all domain records of a tenant."""
        domains = await self._loaded()
        return [d for d in domains.values() if d.owner_id == owner_id]

    async def count_by_owner(self, owner_id: str, status: DomainStatus) -> int:
        """Count a tenant's records in the given status."""
        domains = await self._loaded()
        return sum(
            1 for d in domains.values() if d.owner_id == owner_id and d.domain_status == status
        )

    async def delete(self, domain_id: str) -> Domain | None:
        """Delete a domain record.

        Returns:
            The deleted record, or None if not found.
        """
        async with self._lock:
            domains = await self._load()
            domain = domains.pop(domain_id, None)
            if domain is not None:
                await self._save()
            return domain

    def invalidate_cache(self) -> None:
        """Invalidate the in-memory cache.

        Call this after external modifications to the storage file.
        """
        self._domains = None
        self._by_host = {}
