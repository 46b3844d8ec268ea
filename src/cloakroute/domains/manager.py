"""Domain manager for custom domain lifecycle management.

This module provides the main interface used by the control API and the CLI:
- Creation with an immediate, best-effort reconciliation pass
- Tenant edits (hostname change re-triggers provisioning)
- Status checks and explicit retries
- Resolution of a hostname to its routing configuration

Usage:
    manager = DomainManager(directory, engine, usage=analytics)

    # Attach a customer domain to a tenant
    domain, report = await manager.create_domain("promo.example.com", "tenant-1",
                                                 black_destination="offer.example.net")

    # Re-check DNS, certificate and reachability
    report = await manager.check_status(domain.id)
"""

from __future__ import annotations

from typing import Any

import structlog

from cloakroute.domains.directory import DomainDirectory
from cloakroute.domains.reconciler import ReconciliationEngine, StatusReport
from cloakroute.domains.storage import Domain, DomainRules
from cloakroute.routing.events import AnalyticsRecorder, PlanUsage

logger = structlog.get_logger()


def resolved_config(domain: Domain, usage: PlanUsage | None) -> dict[str, Any]:
    """Routing configuration of a domain as returned by the resolve endpoint."""
    return {
        "id": domain.id,
        "owner_id": domain.owner_id,
        "host": domain.hostname,
        "aliases": list(domain.aliases),
        "white_destination": domain.white_destination,
        "black_destination": domain.black_destination,
        "rules": domain.rules.to_dict(),
        "domain_status": domain.domain_status.value,
        "plan_usage": usage.to_dict() if usage else None,
    }


class DomainManager:
    """Coordinates the directory and the reconciliation engine."""

    def __init__(
        self,
        directory: DomainDirectory,
        engine: ReconciliationEngine,
        usage: AnalyticsRecorder | None = None,
    ) -> None:
        self.directory = directory
        self.engine = engine
        self.usage = usage

    async def create_domain(
        self,
        hostname: str,
        owner_id: str,
        white_destination: str | None = None,
        black_destination: str | None = None,
        rules: DomainRules | dict[str, Any] | None = None,
    ) -> tuple[Domain, StatusReport]:
        """Register a domain and run its first reconciliation pass.

        Raises:
            InvalidHostnameError: If the hostname does not normalize.
            DomainConflictError: If the hostname is already claimed.
        """
        domain = await self.directory.create(
            hostname,
            owner_id,
            white_destination=white_destination,
            black_destination=black_destination,
            rules=rules,
        )
        report = await self.engine.reconcile(domain.id)
        return await self.directory.get(domain.id) or domain, report

    async def update_domain(
        self, domain_id: str, **fields: Any
    ) -> tuple[Domain, StatusReport | None]:
        """Apply tenant edits; a hostname change triggers a fresh pass.

        Returns:
            The updated record and, when the hostname changed, the status of
            the new pass.
        """
        before = await self.directory.require(domain_id)
        updated = await self.directory.update(domain_id, **fields)
        if updated.hostname == before.hostname:
            return updated, None

        # waits out any pass still running for the old hostname
        report = await self.engine.reconcile(domain_id, retry=True)
        return await self.directory.get(domain_id) or updated, report

    async def delete_domain(self, domain_id: str) -> Domain:
        return await self.directory.delete(domain_id)

    async def get_domain(self, domain_id: str) -> Domain:
        return await self.directory.require(domain_id)

    async def list_domains(self, owner_id: str) -> list[Domain]:
        return await self.directory.list_by_owner(owner_id)

    async def check_status(self, domain_id: str, retry: bool = False) -> StatusReport:
        """Run one reconciliation pass on demand.

        Args:
            domain_id: The domain to check.
            retry: Allow the provider to be called again after a failed
                certificate.
        """
        if retry:
            logger.info("Certificate retry requested", domain_id=domain_id)
        return await self.engine.reconcile(domain_id, retry=retry)

    async def resolve(self, host: str) -> dict[str, Any] | None:
        """Routing configuration for a hostname, or None if it is not managed."""
        domain = await self.directory.find_by_hostname(host)
        if domain is None:
            return None
        usage = None
        if self.usage is not None:
            active = await self.directory.count_active_by_owner(domain.owner_id)
            usage = self.usage.plan_usage(domain.owner_id, active)
        return resolved_config(domain, usage)
