"""Outbound requests to the origin.

A single shared httpx client follows redirects and streams bodies; the
caller owns the returned exchange and must close it.
"""

from collections.abc import AsyncIterator

import httpx

from geoproxy.config.settings import get_settings
from geoproxy.errors import PolicyDenied, UpstreamError, ValidationError
from geoproxy.logging.audit import get_audit_logger
from geoproxy.proxy.target import INVALID_URL_MESSAGE
from geoproxy.security.domains import DOMAIN_DENIED_MESSAGE, ProxyTarget

_client: httpx.AsyncClient | None = None


class UpstreamExchange:
    """Status, headers and a single-use raw body stream from the origin."""

    def __init__(self, response: httpx.Response):
        self.status_code = response.status_code
        self.headers = response.headers
        self.url = str(response.url)
        self._response = response
        self._consumed = False

    async def aiter_body(self) -> AsyncIterator[bytes]:
        """Yield the body as received, without decoding or buffering it."""
        if self._consumed:
            raise RuntimeError("Upstream body already consumed")
        self._consumed = True
        async for chunk in self._response.aiter_raw():
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


async def _get_client() -> httpx.AsyncClient:
    global _client
    if _client is None or _client.is_closed:
        settings = get_settings()
        _client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.upstream_read_timeout, connect=settings.upstream_connect_timeout),
            follow_redirects=True,
        )
    return _client


async def fetch_upstream(target: ProxyTarget, range_header: str | None = None) -> UpstreamExchange:
    """GET the target, forwarding the range header when the caller sent one.

    Raises:
        PolicyDenied: the target did not pass the domain allowlist.
        UpstreamError: transport failure, or an error status under the
            ``generic`` error policy.
    """
    if not target.allowed:
        raise PolicyDenied(DOMAIN_DENIED_MESSAGE, reason="domain_not_allowed")

    settings = get_settings()
    logger = get_audit_logger()

    # Relayed bytes must match the mirrored content-length/content-range
    headers = {"accept-encoding": "identity"}
    # No range → no header at all; an empty value confuses some origins
    if range_header:
        headers["range"] = range_header

    client = await _get_client()
    try:
        request = client.build_request("GET", target.url, headers=headers)
    except httpx.InvalidURL:
        raise ValidationError(INVALID_URL_MESSAGE, reason="invalid_url")

    try:
        response = await client.send(request, stream=True)
    except httpx.TimeoutException as e:
        logger.warning(
            "Upstream timed out",
            extra={"audit_data": {"target_host": target.hostname, "error": type(e).__name__}},
        )
        raise UpstreamError("Upstream request timed out", reason="upstream_timeout")
    except httpx.HTTPError as e:
        logger.warning(
            "Upstream unreachable",
            extra={"audit_data": {"target_host": target.hostname, "error": type(e).__name__}},
        )
        raise UpstreamError("Cannot reach upstream", reason="upstream_unreachable")

    if response.is_error and settings.upstream_error_policy == "generic":
        await response.aclose()
        logger.warning(
            "Upstream returned error status",
            extra={"audit_data": {"target_host": target.hostname, "upstream_status": response.status_code}},
        )
        raise UpstreamError("Upstream request failed", reason="upstream_status")

    return UpstreamExchange(response)


async def fetch_rate_limits() -> httpx.Response:
    """Fetch the origin's rate-limit status payload (small, read in full)."""
    settings = get_settings()
    client = await _get_client()
    try:
        return await client.get(settings.rate_limit_status_url)
    except httpx.HTTPError as e:
        get_audit_logger().warning(
            "Rate limit status unavailable",
            extra={"audit_data": {"error": type(e).__name__}},
        )
        raise UpstreamError("Cannot reach upstream", reason="upstream_unreachable")


async def close_client() -> None:
    """Gracefully close the shared client on shutdown."""
    global _client
    if _client is not None and not _client.is_closed:
        await _client.aclose()
    _client = None
