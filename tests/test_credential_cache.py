from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from tm_mobile_proxy.credential_cache import CredentialCache
from tm_mobile_proxy.credential_store import CredentialRecord
from tm_mobile_proxy.errors import CredentialStoreError
from tests.client_test_utils import FakeCredentialStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_second_call_within_ttl_skips_store() -> None:
    store = FakeCredentialStore({"6212": "token-a"})
    clock = FakeClock()
    cache = CredentialCache(store, ttl_seconds=300, clock=clock)

    first = asyncio.run(cache.get_credential("6212"))
    clock.advance(299)
    second = asyncio.run(cache.get_credential("6212"))

    assert first == second == "token-a"
    assert store.calls == ["6212"]


def test_refresh_after_ttl_returns_new_token() -> None:
    store = FakeCredentialStore({"6212": "token-a"})
    clock = FakeClock()
    cache = CredentialCache(store, ttl_seconds=300, clock=clock)

    assert asyncio.run(cache.get_credential("6212")) == "token-a"
    store.tokens["6212"] = "token-b"
    clock.advance(120)
    assert asyncio.run(cache.get_credential("6212")) == "token-a"
    clock.advance(180)
    assert asyncio.run(cache.get_credential("6212")) == "token-b"
    assert len(store.calls) == 2
    entry = cache.peek("6212")
    assert entry is not None
    assert entry.fetched_at == 1300.0


def test_unknown_shops_leave_no_refresh_state() -> None:
    store = FakeCredentialStore({"6212": "token-a"})
    cache = CredentialCache(store)

    async def _run() -> None:
        for index in range(200):
            assert await cache.get_credential(f"unknown-{index}") is None
        await asyncio.gather(*(cache.get_credential("unknown-x") for _ in range(5)))
        assert await cache.get_credential("6212") == "token-a"

    asyncio.run(_run())

    assert cache.cached_tenant_count == 1
    assert list(cache._refresh_locks) == ["6212"]


def test_store_outage_serves_stale_token(caplog: Any) -> None:
    store = FakeCredentialStore({"6212": "token-a"})
    clock = FakeClock()
    cache = CredentialCache(store, ttl_seconds=300, clock=clock)
    assert asyncio.run(cache.get_credential("6212")) == "token-a"

    store.error = CredentialStoreError("ConnectError")
    clock.advance(301)
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        assert asyncio.run(cache.get_credential("6212")) == "token-a"

    assert "token_refresh_failed shop_id=6212 reason=ConnectError" in caplog.text
    assert "token-a" not in caplog.text
    entry = cache.peek("6212")
    assert entry is not None
    assert entry.fetched_at == 1000.0


def test_deleted_record_keeps_previous_entry() -> None:
    store = FakeCredentialStore({"6212": "token-a"})
    clock = FakeClock()
    cache = CredentialCache(store, ttl_seconds=300, clock=clock)
    asyncio.run(cache.get_credential("6212"))

    del store.tokens["6212"]
    clock.advance(400)
    assert asyncio.run(cache.get_credential("6212")) == "token-a"
    assert cache.cached_tenant_count == 1


def test_unknown_shop_is_not_available() -> None:
    store = FakeCredentialStore({})
    cache = CredentialCache(store)

    assert asyncio.run(cache.get_credential("9999")) is None
    assert cache.cached_tenant_count == 0
    assert cache.peek("9999") is None


def test_store_error_without_entry_is_not_available() -> None:
    store = FakeCredentialStore(error=CredentialStoreError("http_error", 500))
    cache = CredentialCache(store)

    assert asyncio.run(cache.get_credential("6212")) is None


def test_expired_record_is_still_served(caplog: Any) -> None:
    expired = datetime(2024, 1, 1, tzinfo=UTC)

    class ExpiredStore:
        async def fetch(self, shop_id: str) -> CredentialRecord:
            return CredentialRecord(
                shop_id=shop_id, token="old-token", expires_at=expired
            )

    cache = CredentialCache(
        ExpiredStore(), wall_clock=lambda: expired + timedelta(hours=1)
    )
    with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
        assert asyncio.run(cache.get_credential("6212")) == "old-token"

    assert "token_expired shop_id=6212" in caplog.text
    entry = cache.peek("6212")
    assert entry is not None
    assert entry.expires_at == expired


def test_concurrent_callers_share_one_refresh() -> None:
    class SlowStore:
        def __init__(self) -> None:
            self.calls = 0

        async def fetch(self, shop_id: str) -> CredentialRecord:
            self.calls += 1
            await asyncio.sleep(0.01)
            return CredentialRecord(shop_id=shop_id, token=f"token-{self.calls}")

    store = SlowStore()
    cache = CredentialCache(store)

    async def _run() -> list[str | None]:
        return await asyncio.gather(
            *(cache.get_credential("6212") for _ in range(5))
        )

    results = asyncio.run(_run())
    assert results == ["token-1"] * 5
    assert store.calls == 1


def test_shops_are_cached_independently() -> None:
    store = FakeCredentialStore({"6212": "token-a", "7000": "token-b"})
    cache = CredentialCache(store)

    async def _run() -> list[str | None]:
        return await asyncio.gather(
            cache.get_credential("6212"), cache.get_credential(7000)
        )

    assert asyncio.run(_run()) == ["token-a", "token-b"]
    assert sorted(store.calls) == ["6212", "7000"]
    assert cache.cached_tenant_count == 2
    assert "token-a" not in repr(cache.peek("6212"))
