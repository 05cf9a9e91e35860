"""Application settings loaded from environment variables."""

from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Allowlists
    # Comma-separated; subdomains of each domain are allowed too
    allowed_domains: str = "pixeldrain.com,cdn.pixeldrain.com"
    allowed_asns: str = "AS13335,AS812"

    # Origin
    origin_download_url: str = "https://pixeldrain.com/api/file/{file_id}?download"
    rate_limit_status_url: str = "https://pixeldrain.com/api/misc/rate_limits"

    # Geofencing
    asn_lookup_url: str = "http://ip-api.com/json/{ip}?fields=status,as"
    asn_lookup_timeout_ms: int = 3000
    asn_cache_ttl_seconds: int = 0  # 0 = every public-IP request hits the lookup API
    asn_cache_max_entries: int = 10000
    strict_private_ranges: bool = False  # True = 172.16.0.0/12 instead of any "172." address

    # Proxy behaviour (one policy per deployment)
    header_policy: Literal["mirror", "curated"] = "mirror"
    upstream_error_policy: Literal["passthrough", "generic"] = "passthrough"
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 60.0
    upstream_stream_deadline_seconds: float = 3600.0  # 0 = no deadline

    # Logging
    log_level: str = "INFO"
    audit_log_file: str = ""  # Empty = stdout only

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def allowed_domains_set(self) -> frozenset[str]:
        return _split_csv(self.allowed_domains, upper=False)

    @property
    def allowed_asns_set(self) -> frozenset[str]:
        return _split_csv(self.allowed_asns, upper=True)


@dataclass(frozen=True)
class AllowlistConfig:
    """Process-wide allowlists. Built once, never mutated."""

    domains: frozenset[str]
    asns: frozenset[str]


def _split_csv(raw: str, upper: bool) -> frozenset[str]:
    items = (item.strip() for item in raw.split(","))
    return frozenset(item.upper() if upper else item.lower() for item in items if item)


@lru_cache
def get_settings() -> Settings:
    return Settings()


@lru_cache
def get_allowlist() -> AllowlistConfig:
    settings = get_settings()
    return AllowlistConfig(
        domains=settings.allowed_domains_set,
        asns=settings.allowed_asns_set,
    )
