"""Geofencing based on the client's network origin.

Private addresses are admitted without a lookup. Public addresses must
resolve to an allowlisted ASN. Every failure path denies (fail-closed):
no IP, unparseable IP, lookup error/timeout, or an ASN outside the list.

Private classification matches any address starting with "172.", which is
wider than the real 172.16.0.0/12 block. STRICT_PRIVATE_RANGES=true
switches to the exact block.
"""

import ipaddress
from collections.abc import Mapping
from dataclasses import dataclass

from fastapi import Depends, Request

from geoproxy.config.settings import AllowlistConfig, get_allowlist, get_settings
from geoproxy.errors import PolicyDenied
from geoproxy.logging.audit import get_audit_logger
from geoproxy.security.asn import ASNResolver, get_asn_resolver

NO_IP_MESSAGE = "No IP detected"
DENIED_MESSAGE = "Access denied: your network is not permitted"

_LOOPBACKS = {"127.0.0.1", "::1"}
_PRIVATE_NETS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("192.168.0.0/16"),
]
_STRICT_172_NET = ipaddress.ip_network("172.16.0.0/12")


@dataclass
class ClientContext:
    ip: str | None
    private: bool
    asn: str | None
    allowed: bool
    reason: str  # private_ip | asn_allowed | no_ip | invalid_ip | asn_lookup_failed | asn_not_allowed


def extract_client_ip(headers: Mapping[str, str]) -> str | None:
    """First x-forwarded-for entry, else x-real-ip, else None."""
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or None


def is_private_ip(ip: str, strict: bool = False) -> bool:
    if ip in _LOOPBACKS:
        return True
    if not strict and ip.startswith("172."):
        return True

    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False

    nets = _PRIVATE_NETS + [_STRICT_172_NET] if strict else _PRIVATE_NETS
    return any(addr.version == net.version and addr in net for net in nets)


async def evaluate_client(
    headers: Mapping[str, str],
    resolver: ASNResolver,
    allowlist: AllowlistConfig,
    strict: bool = False,
) -> ClientContext:
    """Classify the client and compute the allow/deny decision.

    Never raises; the decision and its reason live on the returned context.
    """
    ip = extract_client_ip(headers)
    if ip is None:
        return ClientContext(ip=None, private=False, asn=None, allowed=False, reason="no_ip")

    if is_private_ip(ip, strict=strict):
        return ClientContext(ip=ip, private=True, asn=None, allowed=True, reason="private_ip")

    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return ClientContext(ip=ip, private=False, asn=None, allowed=False, reason="invalid_ip")

    asn = await resolver.resolve(ip)
    if asn is None:
        return ClientContext(ip=ip, private=False, asn=None, allowed=False, reason="asn_lookup_failed")

    if asn.upper() not in allowlist.asns:
        return ClientContext(ip=ip, private=False, asn=asn, allowed=False, reason="asn_not_allowed")

    return ClientContext(ip=ip, private=False, asn=asn, allowed=True, reason="asn_allowed")


async def require_geofence(
    request: Request,
    resolver: ASNResolver = Depends(get_asn_resolver),
) -> ClientContext:
    """FastAPI dependency that admits or rejects the request.

    Raises PolicyDenied on denial, so the route handler never runs. Lookup
    failures and disallowed ASNs produce the same caller-facing error.
    """
    settings = get_settings()
    context = await evaluate_client(
        request.headers,
        resolver,
        get_allowlist(),
        strict=settings.strict_private_ranges,
    )
    if context.allowed:
        return context

    get_audit_logger().warning(
        "Geofence denied",
        extra={"audit_data": {
            "client_ip": context.ip,
            "asn": context.asn,
            "deny_reason": context.reason,
            "path": request.url.path,
        }},
    )
    if context.reason == "no_ip":
        raise PolicyDenied(NO_IP_MESSAGE, reason="no_ip")
    raise PolicyDenied(DENIED_MESSAGE, reason="geofence_denied")
