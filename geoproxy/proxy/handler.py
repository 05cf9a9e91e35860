"""Relay an upstream exchange back to the caller as a streaming response."""

import posixpath
from collections.abc import AsyncIterator
from urllib.parse import unquote, urlsplit

import httpx
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from geoproxy.errors import UpstreamError
from geoproxy.logging.audit import TransferTimer, get_audit_logger
from geoproxy.proxy.upstream import UpstreamExchange

# RFC 9110 hop-by-hop headers; only meaningful on the upstream connection
HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "proxy-connection", "te", "trailer", "trailers", "transfer-encoding", "upgrade",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def filename_from_url(url: str) -> str:
    name = posixpath.basename(urlsplit(url).path)
    return unquote(name) or "download"


def build_response_headers(exchange: UpstreamExchange, target_url: str, policy: str) -> list[tuple[str, str]]:
    """Select the headers to send back.

    ``mirror`` copies every end-to-end header (content-length, content-range,
    accept-ranges included) so partial responses stay correct. ``curated``
    emits only content-type and content-disposition, with download defaults.
    """
    if policy == "curated":
        filename = filename_from_url(target_url).replace('"', "")
        return [
            ("content-type", exchange.headers.get("content-type", DEFAULT_CONTENT_TYPE)),
            (
                "content-disposition",
                exchange.headers.get("content-disposition", f'attachment; filename="{filename}"'),
            ),
        ]

    return [
        (key, value)
        for key, value in exchange.headers.multi_items()
        if key.lower() not in HOP_BY_HOP
    ]


async def relay_body(exchange: UpstreamExchange, deadline_seconds: float = 0) -> AsyncIterator[bytes]:
    """Pipe the upstream body chunk by chunk.

    Each chunk is handed to the server before the next is read, so the
    outbound side never runs ahead of the upstream read. The upstream
    response is closed however the stream ends (completion, error, deadline
    or client disconnect cancelling the task).
    """
    logger = get_audit_logger()
    timer = TransferTimer(deadline_seconds)
    try:
        async for chunk in exchange.aiter_body():
            yield chunk
            timer.record(chunk)
            if timer.expired():
                logger.warning(
                    "Stream deadline exceeded",
                    extra={"audit_data": {"upstream_url": exchange.url, **timer.audit_data()}},
                )
                raise UpstreamError("Upstream stream deadline exceeded", reason="upstream_timeout")
    except httpx.HTTPError as e:
        # Headers are already on the wire; abort so the caller sees a truncated transfer
        logger.warning(
            "Upstream stream interrupted",
            extra={"audit_data": {
                "upstream_url": exchange.url,
                "error": type(e).__name__,
                **timer.audit_data(),
            }},
        )
        raise
    finally:
        await exchange.aclose()

    logger.info(
        "Stream completed",
        extra={"audit_data": {
            "upstream_url": exchange.url,
            "upstream_status": exchange.status_code,
            **timer.audit_data(),
        }},
    )


def stream_response(
    exchange: UpstreamExchange,
    target_url: str,
    header_policy: str = "mirror",
    deadline_seconds: float = 0,
) -> StreamingResponse:
    """Build the outbound response: upstream status, selected headers, piped body."""
    response = StreamingResponse(
        relay_body(exchange, deadline_seconds),
        status_code=exchange.status_code,
        # Closes the upstream even if the body iterator is never started
        background=BackgroundTask(exchange.aclose),
    )
    for key, value in build_response_headers(exchange, target_url, header_policy):
        response.headers.append(key, value)
    return response
