"""Domain allowlist for proxy targets.

A hostname passes when it equals an allowlisted domain or is a subdomain
of one. Runs before any outbound request is made.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import urlsplit

from geoproxy.config.settings import AllowlistConfig

DOMAIN_DENIED_MESSAGE = "Domain not allowed"


@dataclass(frozen=True)
class ProxyTarget:
    url: str
    hostname: str
    allowed: bool


def is_domain_allowed(hostname: str, domains: Iterable[str]) -> bool:
    host = hostname.lower()
    return any(host == domain or host.endswith("." + domain) for domain in domains)


def check_target(url: str, allowlist: AllowlistConfig) -> ProxyTarget:
    """Build a ProxyTarget for an absolute URL, flagging whether it may be fetched.

    Expects a URL already validated by the target resolver.
    """
    hostname = urlsplit(url).hostname or ""
    allowed = bool(hostname) and is_domain_allowed(hostname, allowlist.domains)
    return ProxyTarget(url=url, hostname=hostname, allowed=allowed)
