from __future__ import annotations

from typing import Any


class ProxyError(Exception):
    """Base class for errors that map directly to a client-visible response."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message}


class ValidationError(ProxyError):
    status_code = 400


class NotFoundError(ProxyError):
    status_code = 404


class CredentialUnavailableError(ProxyError):
    status_code = 503

    def __init__(self, shop_id: str) -> None:
        super().__init__(
            "No JWT token available for this shop. "
            "Make sure the token extension has run for this shop recently."
        )
        self.shop_id = shop_id


class StoreMisconfiguredError(ProxyError):
    status_code = 503

    def __init__(self) -> None:
        super().__init__(
            "Supabase not configured. "
            "Set SUPABASE_URL and SUPABASE_ANON_KEY environment variables."
        )


class UpstreamError(ProxyError):
    """Non-2xx answer from the shop API, surfaced with the same status."""

    def __init__(self, status_code: int, message: str, upstream: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.upstream = upstream

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message}
        if self.upstream is not None:
            payload["upstream"] = self.upstream
        return payload


class UpstreamTransportError(ProxyError):
    status_code = 500

    def __init__(self, error_type: str, method: str, path: str) -> None:
        super().__init__("Upstream request failed")
        self.error_type = error_type
        self.method = method
        self.path = path


class CredentialStoreError(Exception):
    """Raised by the store client when a read cannot be completed."""

    def __init__(self, reason: str, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
