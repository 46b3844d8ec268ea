"""Reachability probe for customer hostnames.

A domain only becomes ACTIVE once the edge answers for it over HTTPS with the
issued certificate. The probe requests {scheme}://{hostname}{path}, tries
HEAD first (cheap) and falls back to a single GET for servers that reject
HEAD. Redirects are not followed: a 3xx from the edge already proves that
TLS terminated and the request was routed.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    status_code: int | None = None
    error: str | None = None


def _is_ok(status_code: int) -> bool:
    return 200 <= status_code < 400


class HealthProber:
    """Bounded-time HTTP reachability check."""

    def __init__(
        self,
        scheme: str = "https",
        path: str = "/__edge-check",
        timeout: float = 4.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.scheme = scheme
        self.path = path if path.startswith("/") else f"/{path}"
        self.timeout = timeout
        self._transport = transport

    def url_for(self, hostname: str) -> str:
        return f"{self.scheme}://{hostname}{self.path}"

    async def _probe(self, url: str) -> ProbeResult:
        # each attempt gets half the budget so a hanging HEAD leaves room for GET
        attempt_timeout = self.timeout / 2
        async with httpx.AsyncClient(
            timeout=attempt_timeout,
            follow_redirects=False,
            transport=self._transport,
        ) as client:
            last: ProbeResult | None = None
            for method in ("HEAD", "GET"):
                try:
                    response = await asyncio.wait_for(
                        client.request(method, url), timeout=attempt_timeout
                    )
                except TimeoutError:
                    last = ProbeResult(ok=False, error=f"{method} timed out")
                    continue
                except httpx.HTTPError as e:
                    last = ProbeResult(ok=False, error=f"{type(e).__name__}: {e}")
                    continue
                if _is_ok(response.status_code):
                    return ProbeResult(ok=True, status_code=response.status_code)
                last = ProbeResult(ok=False, status_code=response.status_code)
            assert last is not None
            return last

    async def check_reachable(self, hostname: str) -> ProbeResult:
        """Probe a hostname. Never raises.

        The whole probe, both attempts included, is bounded by the timeout.
        """
        url = self.url_for(hostname)
        try:
            result = await asyncio.wait_for(self._probe(url), timeout=self.timeout)
        except TimeoutError:
            result = ProbeResult(ok=False, error="probe timed out")
        except Exception as e:
            result = ProbeResult(ok=False, error=f"{type(e).__name__}: {e}")

        logger.debug(
            "Health probe finished",
            url=url,
            ok=result.ok,
            status_code=result.status_code,
            error=result.error,
        )
        return result
