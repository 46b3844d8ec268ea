"""DNS delegation checks for customer domains.

A customer domain is delegated when its CNAME points at the internal target
the platform assigned to it:

    promo.example.com  CNAME  edge.cloakroute.net

Apex domains cannot carry a CNAME, so customers often use ALIAS/ANAME
flattening instead. The resolver then only sees addresses, which is reported
as address_only rather than as a failure.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field

import aiodns
import structlog

logger = structlog.get_logger()

# NODATA / NXDOMAIN: the name has no record of the requested type
_MISSING_CODES = frozenset({aiodns.error.ARES_ENODATA, aiodns.error.ARES_ENOTFOUND})
_CNAME_TYPES = frozenset({"CNAME", "5"})


@dataclass
class Delegation:
    """What the resolver observed for a hostname."""

    targets: list[str] = field(default_factory=list)
    address_only: bool = False
    error: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.targets and not self.address_only

    def points_to(self, expected: str) -> bool:
        expected = expected.rstrip(".").lower()
        return any(target == expected for target in self.targets)


def _canonical(name: str) -> str:
    return name.rstrip(".").lower()


def _error_code(error: aiodns.error.DNSError) -> int | None:
    return error.args[0] if error.args else None


class DNSVerifier:
    """Resolves how a customer hostname is delegated."""

    def __init__(self, timeout: float = 3.0) -> None:
        """Initialize DNS verifier.

        Args:
            timeout: Budget of each individual DNS query, in seconds.
        """
        self.timeout = timeout
        self._resolver: aiodns.DNSResolver | None = None

    def _get_resolver(self) -> aiodns.DNSResolver:
        """Get or create DNS resolver with proper event loop handling."""
        if self._resolver is None:
            if sys.platform == "win32":
                self._resolver = aiodns.DNSResolver(loop=asyncio.get_running_loop())
            else:
                self._resolver = aiodns.DNSResolver()
        return self._resolver

    async def _query(self, hostname: str, qtype: str):
        return await asyncio.wait_for(
            self._get_resolver().query_dns(hostname, qtype), timeout=self.timeout
        )

    async def _cname(self, hostname: str) -> list[str]:
        result = await self._query(hostname, "CNAME")
        return [_canonical(result.cname)] if result and result.cname else []

    async def _any_cnames(self, hostname: str) -> list[str]:
        """Pull CNAME answers out of an ANY response."""
        try:
            result = await self._query(hostname, "ANY")
        except aiodns.error.DNSError:
            return []
        # list of typed results, or a DNSResult carrying .answer records
        answers = result if isinstance(result, list) else getattr(result, "answer", None) or []
        targets = []
        for record in answers:
            if str(getattr(record, "type", "")).upper() not in _CNAME_TYPES:
                continue
            cname = getattr(record, "cname", None) or getattr(
                getattr(record, "data", None), "cname", None
            )
            if cname:
                targets.append(_canonical(cname))
        return targets

    async def _has_addresses(self, hostname: str) -> bool:
        for qtype in ("A", "AAAA"):
            try:
                if await self._query(hostname, qtype):
                    return True
            except aiodns.error.DNSError:
                continue
        return False

    async def resolve_delegation(self, hostname: str) -> Delegation:
        """Observe the delegation of a hostname.

        Never raises: transient resolver failures (timeout, SERVFAIL,
        refused) produce an empty Delegation with error set.

        Args:
            hostname: The normalized customer hostname.

        Returns:
            Delegation with the observed CNAME targets, or address_only=True
            when the name resolves without a visible alias.
        """
        try:
            try:
                targets = await self._cname(hostname)
                if targets:
                    return Delegation(targets=targets)
            except aiodns.error.DNSError as e:
                if _error_code(e) not in _MISSING_CODES:
                    raise

            targets = await self._any_cnames(hostname)
            if targets:
                return Delegation(targets=targets)

            return Delegation(address_only=await self._has_addresses(hostname))
        except TimeoutError:
            logger.warning("DNS lookup timed out", hostname=hostname, timeout=self.timeout)
            return Delegation(error="DNS lookup timed out")
        except aiodns.error.DNSError as e:
            logger.warning("DNS lookup failed", hostname=hostname, error=str(e))
            return Delegation(error=f"DNS lookup failed: {e}")
        except Exception as e:
            logger.error("Unexpected DNS resolver error", hostname=hostname, error=str(e))
            return Delegation(error=f"DNS resolver error: {e}")
