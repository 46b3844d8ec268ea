"""Per-request cloaking: classification, destination choice and events."""

from cloakroute.routing.classifier import BOT_SIGNATURES, Classification, classify
from cloakroute.routing.engine import (
    CloakingEngine,
    DecisionReason,
    RequestInfo,
    RouteOutcome,
    RoutingDecision,
)
from cloakroute.routing.events import (
    AnalyticsRecorder,
    EventDispatcher,
    EventSink,
    HitEvent,
    JsonLinesSink,
    PlanUsage,
)

__all__ = [
    "AnalyticsRecorder",
    "BOT_SIGNATURES",
    "Classification",
    "CloakingEngine",
    "DecisionReason",
    "EventDispatcher",
    "EventSink",
    "HitEvent",
    "JsonLinesSink",
    "PlanUsage",
    "RequestInfo",
    "RouteOutcome",
    "RoutingDecision",
    "classify",
]
