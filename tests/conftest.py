"""Shared fakes for the provisioning and routing tests."""

from __future__ import annotations

import pytest

from cloakroute.domains import (
    Delegation,
    DomainDirectory,
    DomainStore,
    ProbeResult,
    ReconciliationEngine,
)
from cloakroute.provisioning import (
    CertificateNotConfigured,
    CertificateProvisioner,
    IssuanceResult,
)

EDGE = "edge.platform.test"


class FakeVerifier:
    """DNS verifier returning a scripted delegation per hostname."""

    def __init__(self, delegation: Delegation | None = None) -> None:
        self.delegation = delegation or Delegation()
        self.calls: list[str] = []

    async def resolve_delegation(self, hostname: str) -> Delegation:
        self.calls.append(hostname)
        return self.delegation


class FakeProber:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.calls: list[str] = []

    async def check_reachable(self, hostname: str) -> ProbeResult:
        self.calls.append(hostname)
        return ProbeResult(ok=self.ok, status_code=200 if self.ok else None)


class FakeProvisioner(CertificateProvisioner):
    """In-memory provisioner; set `result` or `error` to script its answers."""

    name = "fake"
    target = "fake-target"

    def __init__(self, result: IssuanceResult | None = None) -> None:
        self.result = result
        self.error: Exception | None = None
        self.created: set[str] = set()
        self.check_calls = 0
        self.request_calls = 0
        self.released: list[tuple[str, str | None]] = []

    async def check_certificate(self, target: str, hostname: str) -> IssuanceResult:
        self.check_calls += 1
        if self.error is not None:
            raise self.error
        if hostname not in self.created:
            raise CertificateNotConfigured(hostname)
        return self.result

    async def request_certificate(self, target: str, hostname: str) -> IssuanceResult:
        self.request_calls += 1
        if self.error is not None:
            raise self.error
        self.created.add(hostname)
        return self.result

    async def release(self, target: str, hostname: str, provider_ref: str | None) -> None:
        self.released.append((hostname, provider_ref))
        self.created.discard(hostname)


def ready_result(**overrides) -> IssuanceResult:
    values = {
        "configured": True,
        "client_status": "Ready",
        "http_or_alpn_configured": True,
        "dns_configured": False,
        "provider_ref": "cert-1",
    }
    values.update(overrides)
    return IssuanceResult(**values)


@pytest.fixture
def store():
    return DomainStore(None)


@pytest.fixture
def provisioner():
    return FakeProvisioner(ready_result())


@pytest.fixture
def directory(store, provisioner):
    return DomainDirectory(store, provisioner, edge_origin=EDGE)


@pytest.fixture
def verifier():
    return FakeVerifier(Delegation(targets=[EDGE]))


@pytest.fixture
def prober():
    return FakeProber(ok=True)


@pytest.fixture
def engine(directory, verifier, provisioner, prober):
    return ReconciliationEngine(directory, verifier, provisioner, prober, timeout=5.0)
