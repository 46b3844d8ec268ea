"""Tests for the HTTP-01 token store and the TTL cache."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from cloakroute.provisioning import ChallengeTokenStore, TTLCache


class TestChallengeTokenStore:
    """Tests for ChallengeTokenStore."""

    @pytest.mark.asyncio
    async def test_put_and_get_exact_pair(self):
        store = ChallengeTokenStore()
        await store.put("Promo.Example.com", "tok1", "tok1.body")

        assert await store.get("promo.example.com", "tok1") == "tok1.body"
        assert await store.get("promo.example.com", "tok2") is None
        assert await store.get("other.example.com", "tok1") is None

    @pytest.mark.asyncio
    async def test_upsert_replaces_body(self):
        store = ChallengeTokenStore()
        await store.put("promo.example.com", "tok1", "old")
        await store.put("promo.example.com", "tok1", "new")

        assert await store.get("promo.example.com", "tok1") == "new"

    @pytest.mark.asyncio
    async def test_expired_token_is_absent(self):
        store = ChallengeTokenStore(ttl=timedelta(seconds=-1))
        await store.put("promo.example.com", "tok1", "body")

        assert await store.get("promo.example.com", "tok1") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self):
        store = ChallengeTokenStore(ttl=timedelta(seconds=-1))
        await store.put("a.example.com", "t1", "b")
        await store.put("b.example.com", "t2", "b")

        assert await store.purge_expired() == 2
        assert await store.purge_expired() == 0

    @pytest.mark.asyncio
    async def test_remove_by_provider_ref(self):
        store = ChallengeTokenStore()
        await store.put("promo.example.com", "t1", "b", provider_ref="ch-1")
        await store.put("promo.example.com", "t2", "b", provider_ref="ch-1")
        await store.put("other.example.com", "t3", "b", provider_ref="ch-2")

        assert await store.remove_by_provider_ref("ch-1") == 2
        assert await store.get("promo.example.com", "t1") is None
        assert await store.get("other.example.com", "t3") == "b"

    @pytest.mark.asyncio
    async def test_persistence(self, tmp_path):
        path = tmp_path / "challenges.json"
        await ChallengeTokenStore(path).put("promo.example.com", "tok1", "body", provider_ref="x")

        data = json.loads(path.read_text())
        assert data["tokens"][0]["token"] == "tok1"
        assert await ChallengeTokenStore(path).get("promo.example.com", "tok1") == "body"


class TestTTLCache:
    """Tests for TTLCache."""

    def test_set_and_get(self):
        cache: TTLCache[str] = TTLCache(ttl=60)
        cache.set("example.com", "zone-1")
        assert cache.get("example.com") == "zone-1"
        assert cache.get("missing.com") is None

    def test_expiry(self):
        cache: TTLCache[str] = TTLCache(ttl=10)
        with patch("cloakroute.provisioning.cache.monotonic", return_value=100.0):
            cache.set("example.com", "zone-1")
        with patch("cloakroute.provisioning.cache.monotonic", return_value=111.0):
            assert cache.get("example.com") is None
        assert len(cache) == 0

    def test_bounded_size_evicts_oldest(self):
        cache: TTLCache[int] = TTLCache(ttl=60, max_entries=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert cache.get("b") is None
        assert cache.get("a") == 1
        assert cache.get("c") == 3

    def test_invalidate(self):
        cache: TTLCache[int] = TTLCache(ttl=60)
        cache.set("a", 1)
        cache.set("b", 2)

        cache.invalidate("a")
        assert cache.get("a") is None
        assert len(cache) == 1

        cache.invalidate()
        assert len(cache) == 0
