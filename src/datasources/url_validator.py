"""URL validation: SSRF protection, HTTPS enforcement, host allowlist.

Only literal host matching is performed; no DNS resolution happens here, so
hostname allowlisting is best-effort against DNS rebinding. Relative URLs
(``/api/...``) target the trusted origin and bypass host checks.
"""

import ipaddress
import re
from typing import Annotated
from urllib.parse import urlsplit

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.datasources.errors import DataSourceError, DataSourceErrorCode
from src.datasources.redact import redact_url_credentials


logger = structlog.get_logger()

PRIVATE_NETWORKS: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = (
    ipaddress.ip_network("127.0.0.0/8"),  # loopback
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("169.254.0.0/16"),  # link-local
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
)

PRIVATE_HOSTNAMES = frozenset({"localhost"})

PRIVATE_IP_REASON = "PRIVATE_IP"
ALLOWLIST_REASON = "NOT_ALLOWLISTED"


class URLValidationConfig(BaseModel):
    """Security policy applied to resolved URLs.

    Attributes:
        allowed_hosts: Regex patterns; patterns starting with ``^/`` apply to
            relative URLs, all others to absolute URLs.
        block_private_ips: Reject loopback, RFC1918 and link-local literals.
        require_https: Reject absolute non-HTTPS URLs.
        strict_mode: Also check relative URLs against relative patterns.
        allow_relative: Accept relative URLs at all.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    allowed_hosts: list[Annotated[str, Field(min_length=1)]] | None = None
    block_private_ips: bool = True
    require_https: bool = False
    strict_mode: bool = False
    allow_relative: bool = True

    @field_validator("allowed_hosts")
    @classmethod
    def validate_regex(cls, v: list[str] | None) -> list[str] | None:
        """Validate that every allowlist entry is a valid regex."""
        for pattern in v or []:
            try:
                re.compile(pattern)
            except re.error as e:
                msg = f"Invalid regex pattern '{pattern}': {e}"
                raise ValueError(msg) from e
        return v

    @property
    def relative_patterns(self) -> list[str]:
        """Allowlist patterns that apply to relative URLs."""
        return [p for p in self.allowed_hosts or [] if p.startswith("^/")]

    @property
    def absolute_patterns(self) -> list[str]:
        """Allowlist patterns that apply to absolute URLs."""
        return [p for p in self.allowed_hosts or [] if not p.startswith("^/")]


DEFAULT_URL_CONFIG = URLValidationConfig()


def is_relative_url(url: str) -> bool:
    """Check if a URL is origin-relative (``/path`` but not ``//host``)."""
    return url.startswith("/") and not url.startswith("//")


def is_private_host(hostname: str) -> bool:
    """Check if a literal hostname is loopback or in a private range.

    Args:
        hostname: Host without port or brackets.

    Returns:
        True for private/loopback IP literals and ``localhost``.
    """
    host = hostname.lower().rstrip(".")
    if host in PRIVATE_HOSTNAMES:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(address in network for network in PRIVATE_NETWORKS)


def _matches_any(patterns: list[str], value: str) -> bool:
    return any(re.search(pattern, value) for pattern in patterns)


def _validate_relative(url: str, cfg: URLValidationConfig) -> None:
    if not cfg.allow_relative:
        raise DataSourceError(
            DataSourceErrorCode.SSRF_BLOCKED,
            "Relative URLs not allowed",
            details={"reason": ALLOWLIST_REASON},
        )
    patterns = cfg.relative_patterns
    if cfg.strict_mode and patterns and not _matches_any(patterns, url):
        raise DataSourceError(
            DataSourceErrorCode.SSRF_BLOCKED,
            f"URL not in allowlist: {url}",
            details={"reason": ALLOWLIST_REASON},
        )


def validate_url(url: str, config: URLValidationConfig | None = None) -> None:
    """Validate a resolved URL against the security policy.

    Rules, in order: relative URLs are allowed; HTTPS is enforced; private
    IP literals are blocked; the allowlist must match.

    Args:
        url: Resolved URL.
        config: Policy; defaults block private IPs only.

    Raises:
        DataSourceError: INVALID_CONFIG, HTTPS_REQUIRED, or SSRF_BLOCKED.
    """
    cfg = config or DEFAULT_URL_CONFIG

    if not url or not url.strip():
        raise DataSourceError(DataSourceErrorCode.INVALID_CONFIG, "URL cannot be empty")

    if is_relative_url(url):
        _validate_relative(url, cfg)
        return

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise DataSourceError(
            DataSourceErrorCode.INVALID_CONFIG,
            f"Invalid URL: {redact_url_credentials(url)}",
        )

    if cfg.require_https and parts.scheme != "https":
        raise DataSourceError(
            DataSourceErrorCode.HTTPS_REQUIRED,
            f"HTTPS required, got: {parts.scheme}",
        )

    if cfg.block_private_ips and is_private_host(parts.hostname):
        raise DataSourceError(
            DataSourceErrorCode.SSRF_BLOCKED,
            f"Private IP addresses not allowed: {parts.hostname}",
            details={"reason": PRIVATE_IP_REASON, "host": parts.hostname},
        )

    patterns = cfg.absolute_patterns
    if patterns and not _matches_any(patterns, url):
        logger.warning(
            "url_not_allowlisted",
            component="url_validator",
            url=redact_url_credentials(url),
        )
        raise DataSourceError(
            DataSourceErrorCode.SSRF_BLOCKED,
            f"Host not in allowlist: {parts.hostname}",
            details={"reason": ALLOWLIST_REASON, "host": parts.hostname},
        )


def is_url_safe(url: str, config: URLValidationConfig | None = None) -> bool:
    """Check if a URL passes validation without raising."""
    try:
        validate_url(url, config)
    except DataSourceError:
        return False
    return True


def get_allowed_hosts(config: URLValidationConfig | None = None) -> list[str]:
    """Get the allowlist patterns of a policy."""
    cfg = config or DEFAULT_URL_CONFIG
    return list(cfg.allowed_hosts or [])
