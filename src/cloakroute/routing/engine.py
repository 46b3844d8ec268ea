"""Per-request cloaking decision.

For a request on a managed domain the engine classifies the visitor and
redirects bots to the white destination and humans to the black one (or the
other way round when the domain swaps them). Anything unexpected fails open:
the request passes through to the edge's own handler untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

import structlog

from cloakroute.domains.directory import DomainDirectory
from cloakroute.domains.hosts import ensure_scheme, host_of_url, normalize_host
from cloakroute.domains.storage import Domain
from cloakroute.observability.metrics import ROUTING_DECISIONS, VISITOR_CLASSIFICATIONS
from cloakroute.routing.classifier import Classification, classify
from cloakroute.routing.events import EventDispatcher, HitEvent

logger = structlog.get_logger()

_UNSAFE_URL_RE = re.compile(r"[\s\x00-\x1f\x7f]")


class RouteOutcome(Enum):
    REDIRECT = "redirect"
    PASS_THROUGH = "pass_through"


class DecisionReason(Enum):
    NO_HOST = "no_host"
    INTERNAL_HOST = "internal_host"
    UNMANAGED = "unmanaged"
    NO_DESTINATION = "no_destination"
    INVALID_DESTINATION = "invalid_destination"
    LOOP_DETECTED = "loop_detected"
    REDIRECTED = "redirected"
    ENGINE_ERROR = "engine_error"


@dataclass(frozen=True)
class RequestInfo:
    """The parts of an inbound request the decision depends on."""

    host: str | None = None
    forwarded_host: str | None = None
    forwarded_for: str | None = None
    peer_ip: str | None = None
    user_agent: str | None = None
    referer: str | None = None

    @property
    def raw_host(self) -> str | None:
        return self.forwarded_host or self.host

    @property
    def client_ip(self) -> str | None:
        if self.forwarded_for:
            first = self.forwarded_for.split(",")[0].strip()
            if first:
                return first
        return self.peer_ip


@dataclass(frozen=True)
class RoutingDecision:
    outcome: RouteOutcome
    reason: DecisionReason
    hostname: str = ""
    location: str | None = None
    classification: Classification | None = None
    domain_id: str | None = None

    @property
    def is_redirect(self) -> bool:
        return self.outcome == RouteOutcome.REDIRECT


def _pass(reason: DecisionReason, hostname: str = "", **kwargs) -> RoutingDecision:
    return RoutingDecision(RouteOutcome.PASS_THROUGH, reason, hostname=hostname, **kwargs)


class CloakingEngine:
    """Decides, per request, between a redirect and pass-through."""

    def __init__(
        self,
        directory: DomainDirectory,
        dispatcher: EventDispatcher | None = None,
        internal_hosts: list[str] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            directory: Source of domain records (in-memory lookups only).
            dispatcher: Receives one event per request on a managed domain.
            internal_hosts: Platform hostnames never cloaked, subdomains included.
        """
        self.directory = directory
        self.dispatcher = dispatcher
        self.internal_hosts = {
            h for h in (normalize_host(raw) for raw in internal_hosts or []) if h
        }

    def is_internal(self, host: str) -> bool:
        return any(host == h or host.endswith(f".{h}") for h in self.internal_hosts)

    async def decide(self, request: RequestInfo) -> RoutingDecision:
        """Decide how to answer a request. Never raises."""
        try:
            decision = await self._decide(request)
        except Exception as e:
            logger.exception("Routing decision failed", host=request.raw_host, error=str(e))
            decision = _pass(DecisionReason.ENGINE_ERROR)
        ROUTING_DECISIONS.labels(
            outcome=decision.outcome.value, reason=decision.reason.value
        ).inc()
        return decision

    async def _decide(self, request: RequestInfo) -> RoutingDecision:
        host = normalize_host(request.raw_host)
        if not host:
            return _pass(DecisionReason.NO_HOST)
        if self.is_internal(host):
            return _pass(DecisionReason.INTERNAL_HOST, host)

        domain = await self.directory.find_by_hostname(host)
        if domain is None:
            return _pass(DecisionReason.UNMANAGED, host)

        classification = classify(request.user_agent, domain.rules.ua_block)
        VISITOR_CLASSIFICATIONS.labels(classification=classification.value).inc()
        decision = self._route(host, domain, classification)
        self._emit(request, domain, decision)
        return decision

    def _route(
        self, host: str, domain: Domain, classification: Classification
    ) -> RoutingDecision:
        is_bot = classification == Classification.BOT
        if domain.rules.swap_destinations:
            is_bot = not is_bot
        raw = domain.white_destination if is_bot else domain.black_destination

        common = {"classification": classification, "domain_id": domain.id}
        location = ensure_scheme(raw)
        if location is None:
            return _pass(DecisionReason.NO_DESTINATION, host, **common)

        target_host = host_of_url(location)
        if not target_host or _UNSAFE_URL_RE.search(location):
            logger.warning(
                "Invalid destination configured",
                domain_id=domain.id,
                hostname=host,
                destination=raw,
            )
            return _pass(DecisionReason.INVALID_DESTINATION, host, **common)

        if target_host == host or target_host in domain.hostnames:
            logger.warning(
                "Redirect loop detected",
                domain_id=domain.id,
                owner_id=domain.owner_id,
                hostname=host,
                destination=location,
            )
            return _pass(DecisionReason.LOOP_DETECTED, host, location=location, **common)

        return RoutingDecision(
            RouteOutcome.REDIRECT,
            DecisionReason.REDIRECTED,
            hostname=host,
            location=location,
            **common,
        )

    def _emit(self, request: RequestInfo, domain: Domain, decision: RoutingDecision) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.emit(
            HitEvent(
                timestamp=datetime.now(UTC),
                hostname=decision.hostname,
                classification=decision.classification.value
                if decision.classification
                else Classification.HUMAN.value,
                reason=decision.reason.value,
                outcome=decision.outcome.value,
                destination=decision.location,
                client_ip=request.client_ip,
                user_agent=request.user_agent,
                referer=request.referer,
                owner_id=domain.owner_id,
                domain_id=domain.id,
            )
        )
