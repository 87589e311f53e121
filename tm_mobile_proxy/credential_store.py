from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import httpx
import jwt

from tm_mobile_proxy.errors import CredentialStoreError

logger = logging.getLogger("uvicorn.error")


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    shop_id: str
    token: str
    issued_at: datetime | None = None
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"CredentialRecord(shop_id={self.shop_id!r}, token=<redacted>, "
            f"issued_at={self.issued_at!r}, expires_at={self.expires_at!r})"
        )


class CredentialStoreClient(Protocol):
    async def fetch(self, shop_id: str) -> CredentialRecord | None: ...


class SupabaseCredentialStore:
    """Read-only view of the ``shop_tokens`` table kept up to date by the extension.

    Returns ``None`` when the shop has no row and raises ``CredentialStoreError``
    for anything that prevents a definitive answer.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        table: str = "shop_tokens",
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.table = table
        self._api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self.client.aclose()

    async def fetch(self, shop_id: str) -> CredentialRecord | None:
        try:
            response = await self.client.get(
                f"{self.base_url}/rest/v1/{self.table}",
                params={
                    "shop_id": f"eq.{shop_id}",
                    "select": "jwt_token,expires_at",
                },
                headers={
                    "apikey": self._api_key,
                    "Authorization": f"Bearer {self._api_key}",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as exc:
            raise CredentialStoreError(exc.__class__.__name__) from exc

        if response.status_code >= 400:
            raise CredentialStoreError("http_error", status_code=response.status_code)

        try:
            rows = response.json()
        except ValueError as exc:
            raise CredentialStoreError("invalid_json") from exc

        if not isinstance(rows, list):
            raise CredentialStoreError("unexpected_payload")
        if not rows:
            return None

        row = rows[0]
        if not isinstance(row, dict):
            raise CredentialStoreError("unexpected_payload")
        token = str(row.get("jwt_token") or "").strip()
        if not token:
            return None

        claims = _unverified_claims(token)
        expires_at = _parse_timestamp(row.get("expires_at"))
        if expires_at is None:
            expires_at = _parse_timestamp(claims.get("exp"))
        return CredentialRecord(
            shop_id=shop_id,
            token=token,
            issued_at=_parse_timestamp(claims.get("iat")),
            expires_at=expires_at,
        )


def _unverified_claims(token: str) -> dict[str, Any]:
    # The shop API is the authority on validity; claims are read for diagnostics only.
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return {}
    return claims if isinstance(claims, dict) else {}


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("credential_store_bad_timestamp value=%s", value)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed
    return None
