"""Bot / human classification of visitors by user agent."""

from __future__ import annotations

import re
from enum import Enum
from functools import lru_cache

import structlog

logger = structlog.get_logger()

BOT_SIGNATURES = re.compile(
    r"bot|crawl|slurp|spider|mediapartners|facebookexternalhit|headlesschrome|curl",
    re.IGNORECASE,
)


class Classification(Enum):
    BOT = "bot"
    HUMAN = "human"


@lru_cache(maxsize=512)
def compile_rule(pattern: str) -> re.Pattern[str] | None:
    """Compile a per-domain user-agent pattern, case-insensitive.

    Invalid patterns are logged once and ignored.
    """
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("Ignoring invalid user-agent rule", pattern=pattern, error=str(e))
        return None


def classify(user_agent: str | None, ua_block: str | None = None) -> Classification:
    """Classify a visitor.

    A visitor is a bot when the user agent matches the built-in signatures
    or the domain's own ua_block pattern. Missing user agents count as human.
    """
    ua = user_agent or ""
    if BOT_SIGNATURES.search(ua):
        return Classification.BOT
    if ua_block:
        rule = compile_rule(ua_block)
        if rule is not None and rule.search(ua):
            return Classification.BOT
    return Classification.HUMAN
