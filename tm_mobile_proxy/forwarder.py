from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from tm_mobile_proxy.errors import UpstreamTransportError

HOP_BY_HOP_RESPONSE_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "content-length",
    "content-encoding",
}

AUTH_HEADER = "x-auth-token"

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class UpstreamCallSpec:
    path: str
    method: str = "GET"
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class UpstreamResult:
    status: int
    headers: dict[str, str]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str | None:
        return _response_content_type(self.headers)

    def json(self) -> Any:
        return json.loads(self.body)


def _filter_response_headers(headers: httpx.Headers) -> dict[str, str]:
    filtered: dict[str, str] = {}
    for name, value in headers.items():
        if name.lower() not in HOP_BY_HOP_RESPONSE_HEADERS:
            filtered[name] = value
    return filtered


def _response_content_type(response_headers: dict[str, str]) -> str | None:
    for name, value in response_headers.items():
        if name.lower() == "content-type":
            return value
    return None


def _build_upstream_headers(
    extra_headers: dict[str, str], token: str, has_body: bool
) -> dict[str, str]:
    fixed = {AUTH_HEADER: token, "Accept": "application/json"}
    if has_body:
        fixed["Content-Type"] = "application/json"
    protected = {name.lower() for name in fixed}
    headers = {
        name: value
        for name, value in extra_headers.items()
        if name.lower() not in protected
    }
    headers.update(fixed)
    return headers


def _build_timeout(
    timeout_seconds: float | None, connect_timeout_seconds: float | None
) -> httpx.Timeout | None:
    if timeout_seconds is None and connect_timeout_seconds is None:
        return None
    overall = max(0.1, float(timeout_seconds)) if timeout_seconds is not None else None
    connect = (
        max(0.1, float(connect_timeout_seconds))
        if connect_timeout_seconds is not None
        else overall
    )
    return httpx.Timeout(overall, connect=connect)


class RequestForwarder:
    """Sends one call to the shop API with the shop's token attached.

    Non-2xx answers are returned as-is; only transport failures raise.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float | None = None,
        connect_timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if client is None:
            timeout = _build_timeout(timeout_seconds, connect_timeout_seconds)
            client = (
                httpx.AsyncClient(timeout=timeout)
                if timeout is not None
                else httpx.AsyncClient()
            )
        self.client = client

    async def close(self) -> None:
        await self.client.aclose()

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def forward(self, spec: UpstreamCallSpec, token: str) -> UpstreamResult:
        method = spec.method.upper()
        content: bytes | None = None
        if spec.body is not None:
            content = json.dumps(spec.body).encode("utf-8")

        try:
            response = await self.client.request(
                method,
                self.url_for(spec.path),
                content=content,
                headers=_build_upstream_headers(
                    spec.headers, token, has_body=content is not None
                ),
            )
        except httpx.RequestError as exc:
            logger.warning(
                "upstream_request_error method=%s path=%s error_type=%s is_timeout=%s",
                method,
                spec.path,
                exc.__class__.__name__,
                isinstance(exc, httpx.TimeoutException),
            )
            raise UpstreamTransportError(
                exc.__class__.__name__, method=method, path=spec.path
            ) from exc

        logger.info(
            "upstream_response method=%s path=%s status=%d",
            method,
            spec.path,
            response.status_code,
        )
        return UpstreamResult(
            status=response.status_code,
            headers=_filter_response_headers(response.headers),
            body=response.content,
        )
