"""Customer domain lifecycle: normalization, storage, verification and reconciliation."""

from cloakroute.domains.directory import DomainDirectory
from cloakroute.domains.errors import (
    DomainConflictError,
    DomainNotFoundError,
    InvalidHostnameError,
)
from cloakroute.domains.health import HealthProber, ProbeResult
from cloakroute.domains.hosts import ensure_scheme, host_of_url, normalize_host
from cloakroute.domains.manager import DomainManager
from cloakroute.domains.reconciler import (
    ReconciliationEngine,
    ReconciliationSweeper,
    StatusReport,
)
from cloakroute.domains.storage import (
    CertStatus,
    ChallengeRecord,
    Domain,
    DomainRules,
    DomainStatus,
    DomainStore,
    Observation,
)
from cloakroute.domains.verification import Delegation, DNSVerifier

__all__ = [
    "CertStatus",
    "ChallengeRecord",
    "DNSVerifier",
    "Delegation",
    "Domain",
    "DomainConflictError",
    "DomainDirectory",
    "DomainManager",
    "DomainNotFoundError",
    "DomainRules",
    "DomainStatus",
    "DomainStore",
    "HealthProber",
    "InvalidHostnameError",
    "Observation",
    "ProbeResult",
    "ReconciliationEngine",
    "ReconciliationSweeper",
    "StatusReport",
    "ensure_scheme",
    "host_of_url",
    "normalize_host",
]
