"""ASN resolution for client IPs.

The geofence only depends on the narrow ``ASNResolver`` interface, so the
lookup backend and any caching in front of it can change without touching
policy code.
"""

import asyncio
import time
from abc import ABC, abstractmethod

import httpx

from geoproxy.config.settings import get_settings
from geoproxy.logging.audit import get_audit_logger


class ASNResolver(ABC):
    """Base class for IP → ASN lookups."""

    @abstractmethod
    async def resolve(self, ip: str) -> str | None:
        """Return the ASN (e.g. ``"AS13335"``) owning *ip*.

        Returns None when the lookup fails for any reason. Callers decide
        what absence means; implementations never raise for lookup failures.
        """
        ...

    async def close(self) -> None:
        """Cleanup resources. Override if the resolver holds connections."""
        pass


class IPApiASNResolver(ASNResolver):
    """Resolves ASNs via an ip-api.com compatible JSON endpoint.

    One request per call, no retries. The whole call (connect, send, read)
    is bounded by ``timeout_ms``.
    """

    def __init__(self, url_template: str, timeout_ms: int):
        self._url_template = url_template
        self._timeout = timeout_ms / 1000
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout))
        return self._client

    async def resolve(self, ip: str) -> str | None:
        logger = get_audit_logger()
        client = await self._get_client()
        url = self._url_template.format(ip=ip)
        try:
            response = await asyncio.wait_for(client.get(url), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("ASN lookup timed out", extra={"audit_data": {"client_ip": ip}})
            return None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # InvalidURL: an address ipaddress accepts but a URL cannot carry (scoped IPv6)
            logger.warning(
                "ASN lookup failed",
                extra={"audit_data": {"client_ip": ip, "error": type(e).__name__}},
            )
            return None

        if response.status_code != 200:
            logger.warning(
                "ASN lookup returned non-success status",
                extra={"audit_data": {"client_ip": ip, "lookup_status": response.status_code}},
            )
            return None

        try:
            data = response.json()
        except ValueError:
            logger.warning("ASN lookup returned malformed JSON", extra={"audit_data": {"client_ip": ip}})
            return None

        return parse_asn(data)

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def parse_asn(data: object) -> str | None:
    """Extract the ASN from an ip-api style payload.

    ``{"status": "success", "as": "AS13335 Cloudflare, Inc."}`` → ``"AS13335"``.
    """
    if not isinstance(data, dict) or data.get("status") != "success":
        return None
    as_field = data.get("as")
    if not isinstance(as_field, str) or not as_field.strip():
        return None
    asn = as_field.split()[0].upper()
    if not asn.startswith("AS"):
        return None
    return asn


class CachedASNResolver(ASNResolver):
    """Wraps another resolver with an in-memory TTL cache keyed by IP.

    Keys come from client-supplied headers, so the cache is bounded: a full
    cache first drops expired entries, then the oldest insertions.
    """

    def __init__(self, inner: ASNResolver, ttl_seconds: float, max_entries: int = 10000):
        self._inner = inner
        self._ttl = ttl_seconds
        self._max_entries = max(1, max_entries)
        self._cache: dict[str, tuple[str, float]] = {}

    async def resolve(self, ip: str) -> str | None:
        if ip in self._cache:
            asn, expires_at = self._cache[ip]
            if time.monotonic() < expires_at:
                return asn
            del self._cache[ip]

        asn = await self._inner.resolve(ip)

        # Only cache hits so a transient lookup failure is retried next request
        if asn is not None:
            self._store(ip, asn)

        return asn

    def _store(self, ip: str, asn: str) -> None:
        now = time.monotonic()
        if len(self._cache) >= self._max_entries:
            self._cache = {k: v for k, v in self._cache.items() if v[1] > now}
        while len(self._cache) >= self._max_entries:
            del self._cache[next(iter(self._cache))]
        self._cache[ip] = (asn, now + self._ttl)

    async def close(self) -> None:
        self._cache.clear()
        await self._inner.close()


_resolver: ASNResolver | None = None


def get_asn_resolver() -> ASNResolver:
    """Get the process-wide resolver, creating it from settings on first use."""
    global _resolver
    if _resolver is not None:
        return _resolver

    settings = get_settings()
    resolver: ASNResolver = IPApiASNResolver(
        url_template=settings.asn_lookup_url,
        timeout_ms=settings.asn_lookup_timeout_ms,
    )
    if settings.asn_cache_ttl_seconds > 0:
        resolver = CachedASNResolver(
            resolver,
            settings.asn_cache_ttl_seconds,
            max_entries=settings.asn_cache_max_entries,
        )

    _resolver = resolver
    return _resolver


async def close_asn_resolver() -> None:
    """Gracefully close the resolver on shutdown."""
    global _resolver
    if _resolver is not None:
        await _resolver.close()
        _resolver = None
