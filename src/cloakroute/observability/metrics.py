from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

ROUTING_DECISIONS = Counter(
    "cloakroute_routing_decisions_total",
    "Routing decisions taken by the edge",
    ["outcome", "reason"],  # outcome: redirect/pass_through
)

VISITOR_CLASSIFICATIONS = Counter(
    "cloakroute_visitor_classifications_total",
    "Visitors classified on managed domains",
    ["classification"],  # bot/human
)

RECONCILIATIONS = Counter(
    "cloakroute_reconciliations_total",
    "Reconciliation passes by resulting status",
    ["domain_status", "cert_status"],
)

RECONCILE_DURATION = Histogram(
    "cloakroute_reconcile_duration_seconds",
    "Duration of one reconciliation pass",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
)

EVENT_SINK_FAILURES = Counter(
    "cloakroute_event_sink_failures_total",
    "Routing events a sink failed to record",
    ["sink"],
)

PENDING_EVENTS = Gauge(
    "cloakroute_pending_events",
    "Routing events not yet written by their sinks",
)

MANAGED_DOMAINS = Gauge(
    "cloakroute_managed_domains",
    "Domains known to the directory at the last sweep",
    ["domain_status"],
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
