"""Short-lived store for HTTP-01 ownership verification tokens.

When a provider validates a hostname over HTTP it hands us the exact body it
expects at /.well-known/acme-challenge/<token>. The body is kept here, keyed
by (host, token), until it expires (7 days by default).
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import structlog

logger = structlog.get_logger()

DEFAULT_TOKEN_TTL = timedelta(days=7)


@dataclass
class ChallengeToken:
    host: str
    token: str
    body: str
    expires_at: datetime
    provider_ref: str | None = None


class ChallengeTokenStore:
    """(host, token) -> body mapping with expiry, optionally persisted as JSON."""

    def __init__(
        self,
        storage_path: str | Path | None = None,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
    ) -> None:
        self.storage_path = Path(storage_path) if storage_path is not None else None
        self.ttl = ttl
        self._lock = asyncio.Lock()
        self._tokens: dict[tuple[str, str], ChallengeToken] | None = None

    async def _load(self) -> dict[tuple[str, str], ChallengeToken]:
        if self._tokens is not None:
            return self._tokens
        self._tokens = {}
        if self.storage_path is not None and self.storage_path.exists():
            try:
                content = await asyncio.to_thread(self.storage_path.read_text)
                for item in json.loads(content).get("tokens", []):
                    entry = ChallengeToken(
                        host=item["host"],
                        token=item["token"],
                        body=item["body"],
                        expires_at=datetime.fromisoformat(item["expires_at"]),
                        provider_ref=item.get("provider_ref"),
                    )
                    self._tokens[(entry.host, entry.token)] = entry
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.error("Failed to load challenge tokens", error=str(e))
        return self._tokens

    async def _save(self) -> None:
        if self.storage_path is None or self._tokens is None:
            return
        data = {
            "tokens": [
                {
                    "host": t.host,
                    "token": t.token,
                    "body": t.body,
                    "expires_at": t.expires_at.isoformat(),
                    "provider_ref": t.provider_ref,
                }
                for t in self._tokens.values()
            ]
        }
        await asyncio.to_thread(self.storage_path.write_text, json.dumps(data, indent=2))

    async def put(self, host: str, token: str, body: str, provider_ref: str | None = None) -> None:
        """Insert or refresh a token; the expiry restarts on every upsert."""
        async with self._lock:
            tokens = await self._load()
            tokens[(host.lower(), token)] = ChallengeToken(
                host=host.lower(),
                token=token,
                body=body,
                expires_at=datetime.now(UTC) + self.ttl,
                provider_ref=provider_ref,
            )
            await self._save()

    async def get(self, host: str, token: str) -> str | None:
        """Return the stored body for this exact (host, token) pair, or None."""
        async with self._lock:
            tokens = await self._load()
            entry = tokens.get((host.lower(), token))
            if entry is None:
                return None
            if entry.expires_at <= datetime.now(UTC):
                del tokens[(entry.host, entry.token)]
                await self._save()
                return None
            return entry.body

    async def remove_by_provider_ref(self, provider_ref: str) -> int:
        """Drop every token created for a provider object."""
        async with self._lock:
            tokens = await self._load()
            stale = [key for key, t in tokens.items() if t.provider_ref == provider_ref]
            for key in stale:
                del tokens[key]
            if stale:
                await self._save()
            return len(stale)

    async def purge_expired(self) -> int:
        """Drop expired tokens and return how many were removed."""
        async with self._lock:
            tokens = await self._load()
            now = datetime.now(UTC)
            expired = [key for key, t in tokens.items() if t.expires_at <= now]
            for key in expired:
                del tokens[key]
            if expired:
                await self._save()
            return len(expired)
