from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from fastapi.responses import JSONResponse, Response

from tm_mobile_proxy.credential_cache import CredentialCache
from tm_mobile_proxy.errors import (
    CredentialUnavailableError,
    NotFoundError,
    UpstreamError,
    UpstreamTransportError,
    ValidationError,
)
from tm_mobile_proxy.forwarder import RequestForwarder, UpstreamCallSpec, UpstreamResult
from tm_mobile_proxy.gateway.inspections import (
    build_inspection_summary,
    build_task_update_payload,
    find_repair_order,
)

TM_PROXY_PREFIX = "/api/tm"
TM_API_PREFIX = "/api"
DEFAULT_VIDEO_FILE_TYPE = "video/webm"

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class RouteRequest:
    method: str
    path: str
    query: list[tuple[str, str]] = field(default_factory=list)
    body: Any = None

    def query_value(self, name: str) -> str | None:
        for key, value in self.query:
            if key == name:
                return value
        return None


@dataclass(slots=True)
class RouteResult:
    status: int
    payload: Any = None
    content: bytes | None = None
    media_type: str | None = None

    @classmethod
    def passthrough(cls, result: UpstreamResult) -> RouteResult:
        return cls(
            status=result.status,
            content=result.body,
            media_type=result.content_type or "application/json",
        )

    def to_fastapi_response(self) -> Response:
        if self.content is not None:
            return Response(
                content=self.content,
                status_code=self.status,
                media_type=self.media_type,
            )
        return JSONResponse(status_code=self.status, content=self.payload)


@dataclass(slots=True)
class RouteContext:
    cache: CredentialCache
    forwarder: RequestForwarder


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _clean(value: Any) -> str:
    return str(value).strip()


def _json_body(route_request: RouteRequest) -> dict[str, Any]:
    body = route_request.body
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValidationError("Expected a JSON object request body.")
    return body


def _require_fields(body: dict[str, Any], *names: str) -> None:
    missing = [name for name in names if _missing(body.get(name))]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _task_id(body: dict[str, Any]) -> Any:
    task_id = body.get("taskId")
    if _missing(task_id):
        task_id = body.get("itemId")
    return task_id


def _parsed_or_none(result: UpstreamResult) -> Any:
    try:
        return result.json()
    except ValueError:
        return None


async def _credential(ctx: RouteContext, shop_id: str) -> str:
    token = await ctx.cache.get_credential(shop_id)
    if token is None:
        raise CredentialUnavailableError(shop_id)
    return token


async def _forward(
    ctx: RouteContext,
    spec: UpstreamCallSpec,
    token: str,
    *,
    shop_id: str,
    route: str,
) -> UpstreamResult:
    try:
        return await ctx.forwarder.forward(spec, token)
    except UpstreamTransportError as exc:
        logger.error(
            "upstream_transport_failed shop_id=%s route=%s method=%s path=%s "
            "error_type=%s",
            shop_id,
            route,
            exc.method,
            exc.path,
            exc.error_type,
        )
        raise


async def get_inspections(ctx: RouteContext, route_request: RouteRequest) -> RouteResult:
    route = "get-inspections"
    shop_id = route_request.query_value("shopId")
    ro_number = route_request.query_value("roNumber")
    if _missing(shop_id) or _missing(ro_number):
        raise ValidationError("Missing shopId or roNumber")
    shop_id = _clean(shop_id)
    ro_number = _clean(ro_number)

    token = await _credential(ctx, shop_id)

    search = await _forward(
        ctx,
        UpstreamCallSpec(
            path=(
                f"/api/shop/{shop_id}/repair-orders?"
                f"{urlencode({'search': ro_number})}"
            )
        ),
        token,
        shop_id=shop_id,
        route=route,
    )
    if not search.ok:
        raise UpstreamError(
            search.status,
            f"Repair order lookup failed (RO: {ro_number})",
            upstream=_parsed_or_none(search),
        )
    try:
        search_payload = search.json()
    except ValueError as exc:
        raise UpstreamError(502, "Invalid repair order response from shop API") from exc

    order = find_repair_order(search_payload, ro_number)
    if order is None or _missing(order.get("id")):
        raise NotFoundError(f"RO not found (RO: {ro_number})")

    inspections = await _forward(
        ctx,
        UpstreamCallSpec(
            path=f"/api/shop/{shop_id}/repair-orders/{order['id']}/inspections"
        ),
        token,
        shop_id=shop_id,
        route=route,
    )
    if not inspections.ok:
        raise UpstreamError(
            inspections.status,
            "Failed to fetch inspections",
            upstream=_parsed_or_none(inspections),
        )
    try:
        inspection_payload = inspections.json()
    except ValueError as exc:
        raise UpstreamError(502, "Invalid inspections response from shop API") from exc

    summary = build_inspection_summary(order, inspection_payload)
    logger.info(
        "inspections_listed shop_id=%s ro_id=%s tasks=%d",
        shop_id,
        summary["roId"],
        len(summary["tasks"]),
    )
    return RouteResult(status=200, payload=summary)


async def request_video_upload(
    ctx: RouteContext, route_request: RouteRequest
) -> RouteResult:
    body = _json_body(route_request)
    task_id = _task_id(body)
    _require_fields(body, "shopId", "roId", "inspectionId")
    if _missing(task_id):
        raise ValidationError("Missing required fields: taskId")
    shop_id = _clean(body["shopId"])

    token = await _credential(ctx, shop_id)
    file_type = body.get("fileType") or DEFAULT_VIDEO_FILE_TYPE
    file_name = body.get("fileName") or f"inspection-{int(time.time() * 1000)}.webm"
    result = await _forward(
        ctx,
        UpstreamCallSpec(
            path=(
                f"/api/repair-order/{body['roId']}/inspection/{body['inspectionId']}"
                f"/item/{task_id}/media"
            ),
            method="POST",
            body={"mediaType": "VIDEO", "fileType": file_type, "fileName": file_name},
        ),
        token,
        shop_id=shop_id,
        route="upload-video-presigned",
    )
    return RouteResult.passthrough(result)


async def confirm_video_upload(
    ctx: RouteContext, route_request: RouteRequest
) -> RouteResult:
    body = _json_body(route_request)
    task_id = _task_id(body)
    _require_fields(body, "shopId", "roId", "inspectionId", "mediaId")
    if _missing(task_id):
        raise ValidationError("Missing required fields: taskId")
    shop_id = _clean(body["shopId"])

    token = await _credential(ctx, shop_id)
    result = await _forward(
        ctx,
        UpstreamCallSpec(
            path=(
                f"/api/repair-order/{body['roId']}/inspection/{body['inspectionId']}"
                f"/item/{task_id}/media/{body['mediaId']}/confirm"
            ),
            method="POST",
        ),
        token,
        shop_id=shop_id,
        route="upload-video-confirm",
    )
    return RouteResult.passthrough(result)


async def update_inspection_item(
    ctx: RouteContext, route_request: RouteRequest
) -> RouteResult:
    body = _json_body(route_request)
    task_id = _task_id(body)
    _require_fields(body, "shopId", "roId", "inspectionId")
    if _missing(task_id):
        raise ValidationError("Missing required fields: taskId")
    task = body.get("task")
    if task is not None and not isinstance(task, dict):
        raise ValidationError("task must be a JSON object")
    shop_id = _clean(body["shopId"])

    token = await _credential(ctx, shop_id)
    payload = build_task_update_payload(
        task_id=task_id,
        inspection_id=body["inspectionId"],
        task=task,
        rating=body.get("rating"),
        finding=body.get("finding"),
    )
    result = await _forward(
        ctx,
        UpstreamCallSpec(
            path=(
                f"/api/repair-order/{body['roId']}/inspection/{body['inspectionId']}"
                f"/item/{task_id}"
            ),
            method="PUT",
            body=payload,
        ),
        token,
        shop_id=shop_id,
        route="update-inspection-item",
    )
    return RouteResult.passthrough(result)


def rewrite_tm_path(path: str) -> str:
    if path == TM_PROXY_PREFIX or path.startswith(TM_PROXY_PREFIX + "/"):
        return TM_API_PREFIX + path[len(TM_PROXY_PREFIX) :]
    return path


async def passthrough(ctx: RouteContext, route_request: RouteRequest) -> RouteResult:
    shop_id = route_request.query_value("shopId")
    if _missing(shop_id):
        raise ValidationError("Missing shopId parameter")
    shop_id = _clean(shop_id)

    token = await _credential(ctx, shop_id)
    upstream_path = rewrite_tm_path(route_request.path)
    forwarded_query = [(key, value) for key, value in route_request.query if key != "shopId"]
    if forwarded_query:
        upstream_path = f"{upstream_path}?{urlencode(forwarded_query)}"

    result = await _forward(
        ctx,
        UpstreamCallSpec(
            path=upstream_path,
            method=route_request.method,
            body=route_request.body,
        ),
        token,
        shop_id=shop_id,
        route="tm-passthrough",
    )
    return RouteResult.passthrough(result)
