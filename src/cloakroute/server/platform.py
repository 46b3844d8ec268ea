"""Wiring of the platform components from configuration."""

from __future__ import annotations

from dataclasses import dataclass

from cloakroute.core.config import PlatformConfig
from cloakroute.domains import (
    DNSVerifier,
    DomainDirectory,
    DomainManager,
    DomainStore,
    HealthProber,
    ReconciliationEngine,
    ReconciliationSweeper,
)
from cloakroute.provisioning import (
    CertificateProvisioner,
    ChallengeTokenStore,
    CloudflareAliasRecords,
    create_alias_records,
    create_provisioner,
)
from cloakroute.routing import (
    AnalyticsRecorder,
    CloakingEngine,
    EventDispatcher,
    JsonLinesSink,
)


@dataclass
class Platform:
    """Every long-lived component, built once per process."""

    config: PlatformConfig
    store: DomainStore
    challenges: ChallengeTokenStore
    provisioner: CertificateProvisioner
    alias_records: CloudflareAliasRecords | None
    directory: DomainDirectory
    reconciler: ReconciliationEngine
    sweeper: ReconciliationSweeper
    analytics: AnalyticsRecorder
    dispatcher: EventDispatcher
    cloaking: CloakingEngine
    manager: DomainManager

    async def aclose(self) -> None:
        """Flush pending events and release HTTP clients."""
        await self.sweeper.stop()
        await self.dispatcher.close()
        await self.provisioner.aclose()
        if self.alias_records is not None:
            await self.alias_records.client.aclose()


def build_platform(config: PlatformConfig, access_log: bool = True) -> Platform:
    """Build the platform components.

    Args:
        config: Platform configuration.
        access_log: Write routing events to the JSON lines access log.
    """
    store = DomainStore(config.storage.domains_path)
    challenges = ChallengeTokenStore(config.storage.challenges_path)
    provisioner = create_provisioner(config, challenges)
    alias_records = create_alias_records(config)

    directory = DomainDirectory(
        store,
        provisioner,
        edge_origin=config.edge.edge_origin,
        alias_zone=config.edge.alias_zone,
        alias_records=alias_records,
    )
    reconciler = ReconciliationEngine(
        directory,
        DNSVerifier(timeout=config.timeouts.dns_timeout),
        provisioner,
        HealthProber(
            scheme=config.edge.health_scheme,
            path=config.edge.health_path,
            timeout=config.timeouts.health_timeout,
        ),
        timeout=config.timeouts.reconcile_timeout,
        provisioner_timeout=config.timeouts.provisioner_timeout,
    )
    sweeper = ReconciliationSweeper(
        reconciler,
        interval=config.reconcile.sweep_interval,
        concurrency=config.reconcile.sweep_concurrency,
    )

    analytics = AnalyticsRecorder(
        monthly_clicks_limit=config.plan.monthly_clicks_limit,
        active_domains_limit=config.plan.active_domains_limit,
    )
    sinks = [JsonLinesSink(config.storage.access_log_path)] if access_log else []
    dispatcher = EventDispatcher([*sinks, analytics])
    cloaking = CloakingEngine(
        directory,
        dispatcher,
        internal_hosts=[config.edge.edge_origin, *config.edge.internal_hosts],
    )

    return Platform(
        config=config,
        store=store,
        challenges=challenges,
        provisioner=provisioner,
        alias_records=alias_records,
        directory=directory,
        reconciler=reconciler,
        sweeper=sweeper,
        analytics=analytics,
        dispatcher=dispatcher,
        cloaking=cloaking,
        manager=DomainManager(directory, reconciler, usage=analytics),
    )
