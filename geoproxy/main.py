"""Geofenced download proxy — FastAPI application entry point.

Admits clients by network origin, then streams files from a single
allowlisted origin without buffering them.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, Response

from geoproxy.config.settings import get_allowlist, get_settings
from geoproxy.errors import PolicyDenied, ProxyError
from geoproxy.logging.audit import (
    TransferTimer,
    bind_request,
    current_request_id,
    get_audit_logger,
    setup_logging,
)
from geoproxy.proxy.handler import stream_response
from geoproxy.proxy.target import resolve_target
from geoproxy.proxy.upstream import close_client, fetch_rate_limits, fetch_upstream
from geoproxy.security.asn import ASNResolver, close_asn_resolver, get_asn_resolver
from geoproxy.security.domains import DOMAIN_DENIED_MESSAGE, check_target
from geoproxy.security.geofence import ClientContext, evaluate_client, require_geofence

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging()
    allowlist = get_allowlist()
    get_audit_logger().info(
        "Proxy started",
        extra={"audit_data": {
            "allowed_domains": sorted(allowlist.domains),
            "allowed_asns": sorted(allowlist.asns),
        }},
    )
    yield
    await close_client()
    await close_asn_resolver()
    get_audit_logger().info("Proxy stopped")


app = FastAPI(
    title="Geofenced Download Proxy",
    description="Streams files from an allowlisted origin to geofenced clients",
    version=VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    rid = bind_request(request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "reason": exc.reason},
    )


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    get_audit_logger().error(
        "Unhandled error",
        exc_info=exc,
        extra={"audit_data": {"path": request.url.path}},
    )
    # Runs outside the request-id middleware, so the header is set here
    request_id = current_request_id()
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "reason": "internal_error"},
        headers={"X-Request-Id": request_id} if request_id else None,
    )


@app.get("/")
@app.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.get("/ip")
async def ip_info(request: Request, resolver: ASNResolver = Depends(get_asn_resolver)):
    """Report how the geofence sees the caller. Never blocks."""
    context = await evaluate_client(
        request.headers,
        resolver,
        get_allowlist(),
        strict=get_settings().strict_private_ranges,
    )
    return {
        "ip": context.ip,
        "private": context.private,
        "asn": context.asn,
        "allowed": context.allowed,
        "reason": context.reason,
    }


@app.get("/api")
async def proxy_download(
    request: Request,
    origin: str | None = None,
    file_id: str | None = Query(None, alias="id"),
    client: ClientContext = Depends(require_geofence),
):
    """Resolve the target file and stream it from the origin.

    Pipeline: Geofence (dependency) -> Target Resolution -> Domain Allowlist -> Fetch -> Stream
    """
    logger = get_audit_logger()
    settings = get_settings()

    # 1. Target resolution
    target_url = resolve_target(origin, file_id, settings.origin_download_url)

    # 2. Domain allowlist, before any outbound call
    target = check_target(target_url, get_allowlist())
    if not target.allowed:
        logger.warning(
            "Domain not allowed",
            extra={"audit_data": {"client_ip": client.ip, "target_host": target.hostname}},
        )
        raise PolicyDenied(DOMAIN_DENIED_MESSAGE, reason="domain_not_allowed")

    # 3. Fetch
    range_header = request.headers.get("range")
    with TransferTimer() as timer:
        exchange = await fetch_upstream(target, range_header)

    logger.info(
        "Request proxied",
        extra={"audit_data": {
            "client_ip": client.ip,
            "client_asn": client.asn,
            "target_host": target.hostname,
            "range": range_header,
            "upstream_status": exchange.status_code,
            "upstream_latency_ms": timer.elapsed_ms,
        }},
    )

    # 4. Stream
    return stream_response(
        exchange,
        target.url,
        header_policy=settings.header_policy,
        deadline_seconds=settings.upstream_stream_deadline_seconds,
    )


@app.get("/limit")
async def rate_limit_status(client: ClientContext = Depends(require_geofence)):
    """Relay the origin's rate-limit status unchanged."""
    upstream = await fetch_rate_limits()
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type", "application/json"),
    )
