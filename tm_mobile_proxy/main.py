from __future__ import annotations

import json
import logging
import time
from typing import Any, Awaitable, Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from tm_mobile_proxy import __version__
from tm_mobile_proxy.credential_cache import CredentialCache
from tm_mobile_proxy.credential_store import SupabaseCredentialStore
from tm_mobile_proxy.errors import ProxyError, StoreMisconfiguredError, ValidationError
from tm_mobile_proxy.forwarder import RequestForwarder
from tm_mobile_proxy.gateway import handlers
from tm_mobile_proxy.gateway.handlers import RouteContext, RouteRequest
from tm_mobile_proxy.settings import get_settings

SERVICE_NAME = "tm-mobile-proxy"
HEALTH_PATHS = {"/", "/health"}
CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
CORS_HEADERS = ["Content-Type", "Authorization"]
CORS_MAX_AGE_SECONDS = 86400
PASSTHROUGH_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
BODYLESS_METHODS = {"GET", "HEAD"}

app = FastAPI(
    title="TM Mobile Proxy",
    description=(
        "Shop-local proxy that attaches the shop's cached API token to "
        "requests from the mobile inspection app."
    ),
    version=__version__,
)

logger = logging.getLogger("uvicorn.error")


@app.middleware("http")
async def credential_store_guard(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    if request.method == "OPTIONS":
        # Browser preflights are answered by CORSMiddleware before reaching here.
        return Response(status_code=204)
    if request.url.path in HEALTH_PATHS:
        return await call_next(request)

    settings = getattr(app.state, "settings", None) or get_settings()
    if not settings.credential_store_configured:
        error = StoreMisconfiguredError()
        return JSONResponse(status_code=error.status_code, content=error.to_payload())

    return await call_next(request)


@app.middleware("http")
async def request_logging(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "request method=%s path=%s status=%d duration_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000.0,
    )
    return response


# Outermost: CORS headers also cover the guard's 503 answers.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins_list,
    allow_methods=CORS_METHODS,
    allow_headers=CORS_HEADERS,
    max_age=CORS_MAX_AGE_SECONDS,
)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    credential_store = SupabaseCredentialStore(
        base_url=settings.supabase_url,
        api_key=settings.supabase_anon_key,
        table=settings.supabase_token_table,
        timeout_seconds=settings.credential_store_timeout_seconds,
    )
    app.state.settings = settings
    app.state.started_at = time.monotonic()
    app.state.credential_store = credential_store
    app.state.credential_cache = CredentialCache(
        credential_store, ttl_seconds=settings.token_cache_ttl_seconds
    )
    app.state.forwarder = RequestForwarder(
        base_url=settings.tm_base_url,
        timeout_seconds=settings.upstream_timeout_seconds,
        connect_timeout_seconds=settings.upstream_connect_timeout_seconds,
    )
    logger.info(
        (
            "startup complete service=%s version=%s port=%d tm_base_url=%s "
            "supabase_configured=%s allowed_origins=%s token_cache_ttl_seconds=%s"
        ),
        SERVICE_NAME,
        __version__,
        settings.port,
        settings.tm_base_url,
        settings.credential_store_configured,
        ",".join(settings.allowed_origins_list),
        settings.token_cache_ttl_seconds,
    )
    if not settings.credential_store_configured:
        logger.warning(
            "supabase_not_configured detail=api routes answer 503 until "
            "SUPABASE_URL and SUPABASE_ANON_KEY are set"
        )


@app.on_event("shutdown")
async def shutdown() -> None:
    forwarder: RequestForwarder | None = getattr(app.state, "forwarder", None)
    if forwarder is not None:
        await forwarder.close()
    credential_store: SupabaseCredentialStore | None = getattr(
        app.state, "credential_store", None
    )
    if credential_store is not None:
        await credential_store.close()
    logger.info("shutdown complete")


def _route_context() -> RouteContext:
    return RouteContext(
        cache=app.state.credential_cache,
        forwarder=app.state.forwarder,
    )


def _raw_path(request: Request) -> str:
    # Percent-escapes stay intact so ids containing "%2F" reach the shop API unchanged.
    raw_path = request.scope.get("raw_path")
    if isinstance(raw_path, bytes) and raw_path:
        return raw_path.split(b"?", 1)[0].decode("latin-1")
    return request.url.path


async def _route_request(request: Request) -> RouteRequest:
    body: Any = None
    if request.method not in BODYLESS_METHODS:
        raw = await request.body()
        if raw.strip():
            try:
                body = json.loads(raw)
            except ValueError as exc:
                raise ValidationError(f"Expected JSON body: {exc}") from exc
    return RouteRequest(
        method=request.method,
        path=_raw_path(request),
        query=request.query_params.multi_items(),
        body=body,
    )


@app.get("/")
@app.get("/health")
async def health() -> dict[str, Any]:
    settings = getattr(app.state, "settings", None) or get_settings()
    cache: CredentialCache | None = getattr(app.state, "credential_cache", None)
    started_at: float | None = getattr(app.state, "started_at", None)
    uptime = time.monotonic() - started_at if started_at is not None else 0.0
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "credentialStoreConfigured": settings.credential_store_configured,
        "cachedTenantCount": cache.cached_tenant_count if cache is not None else 0,
        "uptimeSeconds": round(uptime, 3),
    }


@app.get("/api/get-inspections")
async def get_inspections(request: Request) -> Response:
    result = await handlers.get_inspections(
        _route_context(), await _route_request(request)
    )
    return result.to_fastapi_response()


@app.post("/api/upload-video/presigned")
async def upload_video_presigned(request: Request) -> Response:
    result = await handlers.request_video_upload(
        _route_context(), await _route_request(request)
    )
    return result.to_fastapi_response()


@app.post("/api/upload-video/confirm")
async def upload_video_confirm(request: Request) -> Response:
    result = await handlers.confirm_video_upload(
        _route_context(), await _route_request(request)
    )
    return result.to_fastapi_response()


@app.post("/api/update-inspection-item")
async def update_inspection_item(request: Request) -> Response:
    result = await handlers.update_inspection_item(
        _route_context(), await _route_request(request)
    )
    return result.to_fastapi_response()


@app.api_route("/api/tm/{subpath:path}", methods=PASSTHROUGH_METHODS)
async def tm_passthrough(subpath: str, request: Request) -> Response:
    # Prefix route; registered after every literal /api route.
    result = await handlers.passthrough(
        _route_context(), await _route_request(request)
    )
    return result.to_fastapi_response()


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "request_failed method=%s path=%s status=%d error_type=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.__class__.__name__,
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(
    _: Request, exc: StarletteHTTPException
) -> JSONResponse:
    message = "Not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error method=%s path=%s", request.method, request.url.path
    )
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc)},
    )


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tm_mobile_proxy.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        reload=False,
    )


if __name__ == "__main__":
    run()
