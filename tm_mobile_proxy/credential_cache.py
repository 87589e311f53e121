from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Callable

from tm_mobile_proxy.credential_store import CredentialRecord, CredentialStoreClient
from tm_mobile_proxy.errors import CredentialStoreError

logger = logging.getLogger("uvicorn.error")

DEFAULT_TTL_SECONDS = 5 * 60


@dataclass(frozen=True, slots=True)
class CacheEntry:
    token: str
    fetched_at: float
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"CacheEntry(token=<redacted>, fetched_at={self.fetched_at!r}, "
            f"expires_at={self.expires_at!r})"
        )


class CredentialCache:
    """Per-shop token cache in front of the credential store.

    Freshness is governed by ``fetched_at`` only: an entry younger than the TTL
    is served without touching the store. Once stale, the next caller refreshes
    it; callers for the same shop queue behind one refresh and reuse its result.
    A failed refresh keeps the previous entry and serves it (stale fallback), so
    ``get_credential`` only returns ``None`` for a shop that was never fetched.
    """

    def __init__(
        self,
        store: CredentialStoreClient,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._ttl_seconds = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._wall_clock = wall_clock or (lambda: datetime.now(UTC))
        self._entries: dict[str, CacheEntry] = {}
        self._refresh_locks: dict[str, asyncio.Lock] = {}

    @property
    def cached_tenant_count(self) -> int:
        return len(self._entries)

    def peek(self, shop_id: str) -> CacheEntry | None:
        return self._entries.get(_key(shop_id))

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return self._clock() - entry.fetched_at < self._ttl_seconds

    async def get_credential(self, shop_id: str | int) -> str | None:
        key = _key(shop_id)
        entry = self._entries.get(key)
        if entry is not None and self._is_fresh(entry):
            logger.debug("token_cache_hit shop_id=%s", key)
            return entry.token

        lock = self._refresh_locks.setdefault(key, asyncio.Lock())
        try:
            async with lock:
                entry = self._entries.get(key)
                if entry is not None and self._is_fresh(entry):
                    logger.debug("token_cache_hit shop_id=%s after_wait=true", key)
                    return entry.token
                return await self._refresh(key, entry)
        finally:
            # Locks are only kept for shops that own an entry.
            if (
                key not in self._entries
                and not lock.locked()
                and self._refresh_locks.get(key) is lock
            ):
                del self._refresh_locks[key]

    async def _refresh(self, key: str, current: CacheEntry | None) -> str | None:
        logger.info("token_refresh_start shop_id=%s", key)
        try:
            record = await self._store.fetch(key)
        except CredentialStoreError as exc:
            return self._fallback(key, current, reason=exc.reason)

        if record is None:
            return self._fallback(key, current, reason="no_record")

        self._store_record(key, record)
        return record.token

    def _store_record(self, key: str, record: CredentialRecord) -> None:
        expires_at = record.expires_at
        if expires_at is not None and expires_at < self._wall_clock():
            logger.warning(
                "token_expired shop_id=%s expires_at=%s "
                "detail=serving anyway, the extension should refresh it",
                key,
                expires_at.isoformat(),
            )
        self._entries[key] = CacheEntry(
            token=record.token,
            fetched_at=self._clock(),
            expires_at=expires_at,
        )
        logger.info(
            "token_refresh_success shop_id=%s expires_at=%s",
            key,
            expires_at.isoformat() if expires_at else "unknown",
        )

    @staticmethod
    def _fallback(key: str, current: CacheEntry | None, reason: str) -> str | None:
        if current is None:
            logger.error(
                "token_refresh_failed shop_id=%s reason=%s cached=false", key, reason
            )
            return None
        logger.warning(
            "token_refresh_failed shop_id=%s reason=%s cached=true "
            "detail=serving stale token",
            key,
            reason,
        )
        return current.token


def _key(shop_id: str | int) -> str:
    return str(shop_id).strip()
