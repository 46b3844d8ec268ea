"""Tests for visitor classification, cloaking decisions and routing events."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime

import pytest

from cloakroute.routing import (
    AnalyticsRecorder,
    CloakingEngine,
    Classification,
    DecisionReason,
    EventDispatcher,
    EventSink,
    HitEvent,
    JsonLinesSink,
    RequestInfo,
    RouteOutcome,
    classify,
)
from cloakroute.routing.classifier import compile_rule

EDGE = "edge.platform.test"
GOOGLEBOT = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"
FIREFOX = "Mozilla/5.0 (X11; Linux x86_64; rv:128.0) Gecko/20100101 Firefox/128.0"


class CollectingSink(EventSink):
    name = "collect"

    def __init__(self) -> None:
        self.events: list[HitEvent] = []

    async def record(self, event: HitEvent) -> None:
        self.events.append(event)


class BrokenSink(EventSink):
    name = "broken"

    async def record(self, event: HitEvent) -> None:
        raise OSError("disk full")


def make_event(**overrides) -> HitEvent:
    values = {
        "timestamp": datetime(2026, 3, 14, 12, 0, tzinfo=UTC),
        "hostname": "promo.example.com",
        "classification": "human",
        "reason": "redirected",
        "outcome": "redirect",
        "destination": "https://offer.example.net",
        "client_ip": "198.51.100.7",
        "user_agent": FIREFOX,
        "referer": None,
        "owner_id": "tenant-a",
        "domain_id": "d1",
    }
    values.update(overrides)
    return HitEvent(**values)


class TestClassify:
    """Tests for classify()."""

    @pytest.mark.parametrize(
        "user_agent",
        [
            GOOGLEBOT,
            "curl/8.5.0",
            "facebookexternalhit/1.1",
            "Mozilla/5.0 HeadlessChrome/120.0",
            "Yahoo! Slurp",
            "Mediapartners-Google",
        ],
    )
    def test_builtin_signatures(self, user_agent):
        assert classify(user_agent) == Classification.BOT

    def test_browser_is_human(self):
        assert classify(FIREFOX) == Classification.HUMAN

    def test_missing_user_agent_is_human(self):
        assert classify(None) == Classification.HUMAN
        assert classify("") == Classification.HUMAN

    def test_domain_rule_is_case_insensitive(self):
        assert classify("Python-Requests/2.32", "python-requests") == Classification.BOT

    def test_deterministic(self):
        assert {classify(GOOGLEBOT, "x") for _ in range(5)} == {Classification.BOT}

    def test_invalid_rule_is_ignored(self):
        assert compile_rule("([unclosed") is None
        assert classify(FIREFOX, "([unclosed") == Classification.HUMAN


@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def dispatcher(sink):
    return EventDispatcher([sink])


@pytest.fixture
def cloaking(directory, dispatcher):
    return CloakingEngine(directory, dispatcher, internal_hosts=[EDGE, "platform.test"])


async def managed(directory, **kwargs):
    kwargs.setdefault("white_destination", "https://example.com/about")
    kwargs.setdefault("black_destination", "offer.example.net/lp?id=7")
    return await directory.create("promo.example.com", "tenant-a", **kwargs)


class TestCloakingEngine:
    """Tests for CloakingEngine.decide()."""

    @pytest.mark.asyncio
    async def test_bot_goes_to_white_destination(self, directory, cloaking, dispatcher, sink):
        """Scenario E, crawler side."""
        domain = await managed(directory)

        decision = await cloaking.decide(
            RequestInfo(host="promo.example.com", user_agent=GOOGLEBOT, peer_ip="203.0.113.9")
        )

        assert decision.is_redirect
        assert decision.location == "https://example.com/about"
        assert decision.classification == Classification.BOT
        await dispatcher.drain()
        assert len(sink.events) == 1
        event = sink.events[0]
        assert event.classification == "bot"
        assert event.domain_id == domain.id
        assert event.client_ip == "203.0.113.9"

    @pytest.mark.asyncio
    async def test_human_goes_to_black_destination(self, directory, cloaking):
        """Scenario E, visitor side: scheme is added when missing."""
        await managed(directory)

        decision = await cloaking.decide(
            RequestInfo(host="Promo.Example.com:443", user_agent=FIREFOX)
        )

        assert decision.outcome == RouteOutcome.REDIRECT
        assert decision.location == "https://offer.example.net/lp?id=7"

    @pytest.mark.asyncio
    async def test_forwarded_host_wins(self, directory, cloaking):
        await managed(directory)

        decision = await cloaking.decide(
            RequestInfo(host=EDGE, forwarded_host="promo.example.com", user_agent=FIREFOX)
        )

        assert decision.is_redirect

    @pytest.mark.asyncio
    async def test_swap_destinations(self, directory, cloaking):
        await managed(directory, rules={"swap_destinations": True})

        bot = await cloaking.decide(RequestInfo(host="promo.example.com", user_agent=GOOGLEBOT))
        human = await cloaking.decide(RequestInfo(host="promo.example.com", user_agent=FIREFOX))

        assert bot.location == "https://offer.example.net/lp?id=7"
        assert human.location == "https://example.com/about"

    @pytest.mark.asyncio
    async def test_domain_ua_rule(self, directory, cloaking):
        await managed(directory, rules={"ua_block": "python-requests"})

        decision = await cloaking.decide(
            RequestInfo(host="promo.example.com", user_agent="python-requests/2.32")
        )

        assert decision.classification == Classification.BOT
        assert decision.location == "https://example.com/about"

    @pytest.mark.asyncio
    async def test_unmanaged_host_passes_through(self, cloaking, sink, dispatcher):
        """Scenario F: no record, no redirect, no event."""
        decision = await cloaking.decide(
            RequestInfo(host="unknown.example.org", user_agent=GOOGLEBOT)
        )

        assert decision.outcome == RouteOutcome.PASS_THROUGH
        assert decision.reason == DecisionReason.UNMANAGED
        await dispatcher.drain()
        assert sink.events == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("host", [EDGE, "api.platform.test", "platform.test"])
    async def test_internal_hosts_pass_through(self, cloaking, host):
        decision = await cloaking.decide(RequestInfo(host=host, user_agent=FIREFOX))
        assert decision.reason == DecisionReason.INTERNAL_HOST

    @pytest.mark.asyncio
    @pytest.mark.parametrize("host", [None, "", "bad host"])
    async def test_missing_host_passes_through(self, cloaking, host):
        decision = await cloaking.decide(RequestInfo(host=host))
        assert decision.reason == DecisionReason.NO_HOST

    @pytest.mark.asyncio
    async def test_redirect_loop_is_refused(self, directory, cloaking, dispatcher, sink):
        await managed(directory, black_destination="HTTPS://PROMO.EXAMPLE.COM:443/x")

        decision = await cloaking.decide(RequestInfo(host="promo.example.com", user_agent=FIREFOX))

        assert decision.outcome == RouteOutcome.PASS_THROUGH
        assert decision.reason == DecisionReason.LOOP_DETECTED
        await dispatcher.drain()
        assert sink.events[0].reason == "loop_detected"

    @pytest.mark.asyncio
    async def test_missing_destination_passes_through(self, directory, cloaking):
        await managed(directory, white_destination=None)

        decision = await cloaking.decide(
            RequestInfo(host="promo.example.com", user_agent=GOOGLEBOT)
        )

        assert decision.reason == DecisionReason.NO_DESTINATION

    @pytest.mark.asyncio
    async def test_invalid_destination_passes_through(self, directory, cloaking):
        await managed(directory, black_destination="https://offer.example.net/a b")

        decision = await cloaking.decide(RequestInfo(host="promo.example.com", user_agent=FIREFOX))

        assert decision.reason == DecisionReason.INVALID_DESTINATION

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_change_routing(self, directory):
        dispatcher = EventDispatcher([BrokenSink()])
        cloaking = CloakingEngine(directory, dispatcher)
        await managed(directory)

        decision = await cloaking.decide(RequestInfo(host="promo.example.com", user_agent=FIREFOX))
        await dispatcher.drain()

        assert decision.is_redirect
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_lookup_failure_fails_open(self, directory, cloaking):
        async def explode(raw):
            raise RuntimeError("store unavailable")

        directory.find_by_hostname = explode

        decision = await cloaking.decide(RequestInfo(host="promo.example.com"))

        assert decision.reason == DecisionReason.ENGINE_ERROR
        assert not decision.is_redirect


class TestRequestInfo:
    def test_client_ip_prefers_forwarded_for(self):
        info = RequestInfo(forwarded_for="198.51.100.7, 10.0.0.1", peer_ip="10.0.0.2")
        assert info.client_ip == "198.51.100.7"

    def test_client_ip_falls_back_to_peer(self):
        assert RequestInfo(forwarded_for=" ", peer_ip="10.0.0.2").client_ip == "10.0.0.2"


class TestEventSinks:
    """Tests for dispatching and the built-in sinks."""

    @pytest.mark.asyncio
    async def test_emit_does_not_wait_for_sinks(self):
        release = asyncio.Event()

        class SlowSink(CollectingSink):
            async def record(self, event):
                await release.wait()
                await super().record(event)

        slow = SlowSink()
        dispatcher = EventDispatcher([slow])

        dispatcher.emit(make_event())
        assert dispatcher.pending == 1
        assert slow.events == []

        release.set()
        await dispatcher.close()
        assert len(slow.events) == 1
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_json_lines_sink(self, tmp_path):
        path = tmp_path / "access.jsonl"
        sink = JsonLinesSink(path)

        await sink.record(make_event())
        await sink.record(make_event(classification="bot"))

        lines = path.read_text().splitlines()
        assert len(lines) == 2
        first = json.loads(lines[0])
        assert first["hostname"] == "promo.example.com"
        assert first["timestamp"] == "2026-03-14T12:00:00+00:00"
        assert json.loads(lines[1])["classification"] == "bot"

    @pytest.mark.asyncio
    async def test_analytics_counts_per_month(self):
        analytics = AnalyticsRecorder(monthly_clicks_limit=100, active_domains_limit=3)
        now = datetime(2026, 3, 20, tzinfo=UTC)

        await analytics.record(make_event())
        await analytics.record(make_event(classification="bot"))
        await analytics.record(make_event(timestamp=datetime(2026, 2, 1, tzinfo=UTC)))

        assert analytics.monthly_clicks("tenant-a", now) == 2
        assert analytics.domain_hits("d1", now) == {"human": 1, "bot": 1}
        assert analytics.monthly_clicks("tenant-b", now) == 0

    def test_plan_usage(self):
        analytics = AnalyticsRecorder(monthly_clicks_limit=100, active_domains_limit=3)

        usage = analytics.plan_usage("tenant-a", active_domains=2)

        assert usage.to_dict() == {
            "monthly_clicks_used": 0,
            "monthly_clicks_limit": 100,
            "active_domains_used": 2,
            "active_domains_limit": 3,
        }
