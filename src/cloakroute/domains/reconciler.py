"""Reconciliation of domain status against DNS, certificate and edge state.

One pass over a domain:

    1. DNS delegation missing          -> PENDING
    2. delegated to the wrong target   -> ERROR
    3. address records only            -> continue (flattened apex)
    4. certificate: check, request once when it does not exist yet
    5. provisioner error               -> cert FAILED, ERROR
       provider unavailable            -> cert unchanged, PROPAGATING
    6. cert READY                      -> probe edge: ACTIVE / PROPAGATING
    7. DNS-01 challenge required       -> PENDING, challenge record listed
    8. issuance in progress            -> PROPAGATING

FAILED certificates are sticky: later passes do not call the provider again
until a retry is requested explicitly. An unavailable provider (outage,
timeout, 5xx) is not a failure; the next pass simply asks again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from time import perf_counter
from typing import Any

import structlog

from cloakroute.domains.directory import DomainDirectory
from cloakroute.domains.errors import DomainNotFoundError
from cloakroute.domains.health import HealthProber
from cloakroute.domains.storage import (
    CertStatus,
    ChallengeRecord,
    Domain,
    DomainStatus,
    Observation,
    merge_challenge_records,
)
from cloakroute.domains.verification import DNSVerifier
from cloakroute.observability.metrics import (
    MANAGED_DOMAINS,
    RECONCILE_DURATION,
    RECONCILIATIONS,
)
from cloakroute.provisioning import (
    CertificateNotConfigured,
    CertificateProvisioner,
    IssuanceResult,
    ProvisionerError,
    ProvisionerUnavailable,
)

logger = structlog.get_logger()

REASON_CERT_AWAITING_REACHABILITY = "certificate ready, awaiting reachability"
REASON_CERT_IN_PROGRESS = "certificate issuance in progress"


@dataclass
class StatusReport:
    """Tenant-facing result of a reconciliation pass."""

    domain_id: str
    hostname: str
    internal_target: str
    domain_status: DomainStatus
    cert_status: CertStatus
    reason: str | None
    checked_at: datetime | None
    challenge: ChallengeRecord | None = None
    provider_status: str | None = None
    provider_configured: bool = False

    @classmethod
    def from_domain(cls, domain: Domain) -> StatusReport:
        return cls(
            domain_id=domain.id,
            hostname=domain.hostname,
            internal_target=domain.internal_target,
            domain_status=domain.domain_status,
            cert_status=domain.cert_status,
            reason=domain.last_reason,
            checked_at=domain.last_checked_at,
            challenge=(
                domain.pending_challenge
                if domain.cert_status == CertStatus.DNS_CHALLENGE_NEEDED
                else None
            ),
            provider_status=domain.provider_status,
            provider_configured=domain.provider_configured,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "domain_id": self.domain_id,
            "hostname": self.hostname,
            "internal_target": self.internal_target,
            "domain_status": self.domain_status.value,
            "cert_status": self.cert_status.value,
            "reason": self.reason,
            "checked_at": self.checked_at.isoformat() if self.checked_at else None,
            "challenge": self.challenge.to_dict() if self.challenge else None,
            "provider_status": self.provider_status,
            "provider_configured": self.provider_configured,
        }


def _observation(
    domain: Domain, domain_status: DomainStatus, reason: str, **changes: Any
) -> Observation:
    """Observation that keeps every field of the record not named in changes."""
    fields: dict[str, Any] = {
        "cert_status": domain.cert_status,
        "challenge_records": domain.challenge_records,
        "provider_ref": domain.provider_ref,
        "provider_status": domain.provider_status,
        "provider_configured": domain.provider_configured,
        "cert_error": domain.cert_error,
    }
    fields.update(changes)
    return Observation(domain_status=domain_status, reason=reason, **fields)


def _failed(domain: Domain, error: str) -> Observation:
    """ERROR / FAILED observation; the reason depends on the error text only."""
    return _observation(
        domain,
        DomainStatus.ERROR,
        f"certificate provisioning failed: {error}; retry required",
        cert_status=CertStatus.FAILED,
        cert_error=error,
    )


class ReconciliationEngine:
    """Runs reconciliation passes, at most one at a time per domain."""

    def __init__(
        self,
        directory: DomainDirectory,
        verifier: DNSVerifier,
        provisioner: CertificateProvisioner,
        prober: HealthProber,
        timeout: float = 60.0,
        provisioner_timeout: float = 15.0,
    ) -> None:
        self.directory = directory
        self.verifier = verifier
        self.provisioner = provisioner
        self.prober = prober
        self.timeout = timeout
        self.provisioner_timeout = provisioner_timeout
        self._inflight: dict[str, asyncio.Task[StatusReport]] = {}

    async def reconcile(self, domain_id: str, retry: bool = False) -> StatusReport:
        """Run one pass and return the resulting status.

        A caller arriving while a pass for the same domain is running shares
        that pass. A retry instead waits for it to finish and then runs its
        own pass, which is allowed to call the provider again after a failure.

        Raises:
            DomainNotFoundError: If the domain does not exist.
        """
        while (existing := self._inflight.get(domain_id)) is not None:
            if not retry:
                return await asyncio.shield(existing)
            await asyncio.wait({existing})

        task = asyncio.create_task(self._run(domain_id, retry))
        self._inflight[domain_id] = task

        def _done(finished: asyncio.Task[StatusReport]) -> None:
            if self._inflight.get(domain_id) is finished:
                del self._inflight[domain_id]

        task.add_done_callback(_done)
        return await asyncio.shield(task)

    async def _run(self, domain_id: str, retry: bool) -> StatusReport:
        domain = await self.directory.get(domain_id)
        if domain is None:
            raise DomainNotFoundError(domain_id)

        observed_at = datetime.now(UTC)
        started = perf_counter()
        try:
            observation = await asyncio.wait_for(self._observe(domain, retry), self.timeout)
        except TimeoutError:
            logger.warning("Reconciliation timed out", domain_id=domain_id, timeout=self.timeout)
            observation = _failed(domain, f"reconciliation timed out after {self.timeout:g}s")
        except Exception as e:
            logger.exception("Reconciliation failed", domain_id=domain_id, error=str(e))
            observation = _failed(domain, f"reconciliation failed: {e}")
        RECONCILE_DURATION.observe(perf_counter() - started)
        RECONCILIATIONS.labels(
            domain_status=observation.domain_status.value,
            cert_status=observation.cert_status.value,
        ).inc()

        stored = await self.directory.record_observation(domain_id, observation, observed_at)
        if stored is None:
            logger.info("Domain deleted during reconciliation", domain_id=domain_id)
            return StatusReport.from_domain(
                replace(
                    domain,
                    domain_status=observation.domain_status,
                    cert_status=observation.cert_status,
                    last_reason=observation.reason,
                    last_checked_at=observed_at,
                    challenge_records=list(observation.challenge_records),
                )
            )

        logger.info(
            "Domain reconciled",
            domain_id=domain_id,
            hostname=stored.hostname,
            domain_status=stored.domain_status.value,
            cert_status=stored.cert_status.value,
            reason=stored.last_reason,
        )
        return StatusReport.from_domain(stored)

    async def _observe(self, domain: Domain, retry: bool) -> Observation:
        host = domain.hostname
        expected = domain.internal_target

        delegation = await self.verifier.resolve_delegation(host)
        if delegation.is_empty:
            reason = f"not delegated yet: CNAME record {host} -> {expected} not found"
            if delegation.error:
                reason = f"{reason} ({delegation.error})"
            return _observation(domain, DomainStatus.PENDING, reason)

        if delegation.targets and not delegation.points_to(expected):
            actual = ", ".join(delegation.targets)
            return _observation(
                domain,
                DomainStatus.ERROR,
                f"CNAME for {host} points to {actual}, expected {expected}",
            )

        if domain.cert_status == CertStatus.FAILED and not retry:
            return _failed(domain, domain.cert_error or "unknown error")

        try:
            result = await self._issue(host)
        except ProvisionerUnavailable as e:
            logger.warning(
                "Certificate provider unavailable",
                domain_id=domain.id,
                hostname=host,
                provisioner=self.provisioner.name,
                error=str(e),
            )
            cert_status = domain.cert_status
            if cert_status == CertStatus.FAILED:
                # only reachable on retry; the old failure is no longer current
                cert_status = CertStatus.PENDING
            domain_status = domain.domain_status
            if domain_status != DomainStatus.ACTIVE:
                domain_status = DomainStatus.PROPAGATING
            return _observation(
                domain,
                domain_status,
                f"certificate provider unavailable: {e}; will check again",
                cert_status=cert_status,
                cert_error=None,
            )
        except ProvisionerError as e:
            logger.warning(
                "Certificate provisioning failed",
                domain_id=domain.id,
                hostname=host,
                provisioner=self.provisioner.name,
                error=str(e),
            )
            return _failed(domain, str(e))

        mirror = {
            "provider_ref": result.provider_ref or domain.provider_ref,
            "provider_status": result.client_status,
            "provider_configured": result.configured,
            "cert_error": None,
        }

        if result.ready:
            probe = await self.prober.check_reachable(host)
            if probe.ok:
                return _observation(
                    domain, DomainStatus.ACTIVE, "active", cert_status=CertStatus.READY, **mirror
                )
            return _observation(
                domain,
                DomainStatus.PROPAGATING,
                REASON_CERT_AWAITING_REACHABILITY,
                cert_status=CertStatus.READY,
                **mirror,
            )

        if result.needs_dns_challenge:
            record = ChallengeRecord(
                name=result.dns_challenge_name or "", value=result.dns_challenge_target or ""
            )
            return _observation(
                domain,
                DomainStatus.PENDING,
                f"publish the DNS record {record.name} -> {record.value} "
                "to complete certificate validation",
                cert_status=CertStatus.DNS_CHALLENGE_NEEDED,
                challenge_records=merge_challenge_records(domain.challenge_records, [record]),
                **mirror,
            )

        return _observation(
            domain,
            DomainStatus.PROPAGATING,
            REASON_CERT_IN_PROGRESS,
            cert_status=CertStatus.PENDING,
            **mirror,
        )

    async def _issue(self, hostname: str) -> IssuanceResult:
        """Check the certificate, requesting it once if it does not exist."""
        target = self.provisioner.target
        try:
            try:
                return await asyncio.wait_for(
                    self.provisioner.check_certificate(target, hostname),
                    self.provisioner_timeout,
                )
            except CertificateNotConfigured:
                logger.info(
                    "Requesting certificate", hostname=hostname, provisioner=self.provisioner.name
                )
                return await asyncio.wait_for(
                    self.provisioner.request_certificate(target, hostname),
                    self.provisioner_timeout,
                )
        except TimeoutError as e:
            raise ProvisionerUnavailable(
                f"{self.provisioner.name} API did not answer within {self.provisioner_timeout:g}s"
            ) from e


class ReconciliationSweeper:
    """Periodically reconciles every domain that is not ACTIVE yet."""

    def __init__(
        self,
        engine: ReconciliationEngine,
        interval: float = 300.0,
        concurrency: int = 4,
    ) -> None:
        self.engine = engine
        self.interval = interval
        self.concurrency = concurrency
        self._task: asyncio.Task[None] | None = None
        self._running = False

    async def sweep_once(self) -> list[StatusReport]:
        """Reconcile all pending domains once, with bounded concurrency."""
        directory = self.engine.directory
        domains = await directory.list_pending()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(domain: Domain) -> StatusReport | None:
            async with semaphore:
                try:
                    return await self.engine.reconcile(domain.id)
                except DomainNotFoundError:
                    return None

        results = await asyncio.gather(*(run(d) for d in domains))
        reports = [r for r in results if r is not None]

        counts = {status: 0 for status in DomainStatus}
        for domain in await directory.list_all():
            counts[domain.domain_status] += 1
        for status, count in counts.items():
            MANAGED_DOMAINS.labels(domain_status=status.value).set(count)

        logger.info("Reconciliation sweep finished", domains=len(domains), reconciled=len(reports))
        return reports

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Reconciliation sweep failed", error=str(e))
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Start the background sweep task."""
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self._loop())
            logger.info("Reconciliation sweeper started", interval=self.interval)

    async def stop(self) -> None:
        """Stop the background sweep task."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
