"""Per-environment policies for the data source layer.

Every policy is a frozen model so a ``DataSourceConfig`` can be shared by
reference across managers and threads.
"""

from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.datasources.circuit_breaker import CircuitBreakerConfig
from src.datasources.constants import (
    MAX_CACHE_TTL_MS,
    MIN_CACHE_TTL_MS,
)
from src.datasources.definitions import BackoffKind
from src.datasources.retry import RetryPolicy
from src.datasources.url_validator import URLValidationConfig
from src.settings import AppSettings, get_settings


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class CachePolicy(BaseModel):
    """Cache sizing and TTL bounds."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    max_entries: Annotated[int, Field(ge=1)] = 100
    default_ttl_ms: Annotated[int, Field(ge=0)] = 60_000
    min_ttl_ms: Annotated[int, Field(ge=0)] = MIN_CACHE_TTL_MS
    max_ttl_ms: Annotated[int, Field(ge=0)] = MAX_CACHE_TTL_MS

    @model_validator(mode="after")
    def validate_bounds(self) -> "CachePolicy":
        """Ensure min <= default <= max."""
        if not self.min_ttl_ms <= self.default_ttl_ms <= self.max_ttl_ms:
            msg = "cache TTL bounds must satisfy min <= default <= max"
            raise ValueError(msg)
        return self

    def clamp_ttl(self, ttl_ms: int | None) -> int:
        """Clamp a definition's TTL into the policy bounds."""
        if ttl_ms is None:
            return self.default_ttl_ms
        return max(self.min_ttl_ms, min(ttl_ms, self.max_ttl_ms))


class FeatureFlags(BaseModel):
    """Toggles for optional resilience features."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enable_in_flight_dedupe: bool = True
    enable_circuit_breaker: bool = True
    enable_retry: bool = True
    enable_response_validation: bool = True


class DataSourceConfig(BaseModel):
    """Complete policy bundle for one environment."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    env: Environment = Environment.DEVELOPMENT
    url_policy: URLValidationConfig = Field(default_factory=URLValidationConfig)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    cache_policy: CachePolicy = Field(default_factory=CachePolicy)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    feature_flags: FeatureFlags = Field(default_factory=FeatureFlags)


_URL_POLICIES: dict[Environment, URLValidationConfig] = {
    Environment.DEVELOPMENT: URLValidationConfig(
        allowed_hosts=[
            "^/api/",
            "http://localhost:.*",
            r"http://127\.0\.0\.1:.*",
            "https://.*",
        ],
        block_private_ips=False,
        require_https=False,
        strict_mode=False,
    ),
    Environment.STAGING: URLValidationConfig(
        allowed_hosts=[
            "^/api/",
            r"https://.*\.staging\.example\.com",
            r"https://api-staging\.example\.com",
        ],
        block_private_ips=True,
        require_https=True,
        strict_mode=True,
    ),
    Environment.PRODUCTION: URLValidationConfig(
        allowed_hosts=[
            "^/api/",
            r"https://api\.example\.com",
            r"https://.*\.example\.com",
        ],
        block_private_ips=True,
        require_https=True,
        strict_mode=True,
    ),
}

_RETRY_POLICIES: dict[Environment, RetryPolicy] = {
    Environment.DEVELOPMENT: RetryPolicy(
        max_retries=2, base_delay_ms=100, max_delay_ms=1000, backoff=BackoffKind.EXPONENTIAL
    ),
    Environment.STAGING: RetryPolicy(
        max_retries=3, base_delay_ms=200, max_delay_ms=3000, backoff=BackoffKind.EXPONENTIAL
    ),
    Environment.PRODUCTION: RetryPolicy(
        max_retries=3, base_delay_ms=400, max_delay_ms=3000, backoff=BackoffKind.EXPONENTIAL
    ),
}

_CACHE_POLICIES: dict[Environment, CachePolicy] = {
    Environment.DEVELOPMENT: CachePolicy(max_entries=50, default_ttl_ms=60_000),
    Environment.STAGING: CachePolicy(max_entries=100, default_ttl_ms=300_000),
    Environment.PRODUCTION: CachePolicy(max_entries=200, default_ttl_ms=600_000),
}

_CIRCUIT_BREAKER_POLICIES: dict[Environment, CircuitBreakerConfig] = {
    Environment.DEVELOPMENT: CircuitBreakerConfig(),
    Environment.STAGING: CircuitBreakerConfig(backoff_multiplier=2.0),
    Environment.PRODUCTION: CircuitBreakerConfig(backoff_multiplier=2.0),
}

_FEATURE_FLAGS: dict[Environment, FeatureFlags] = {
    # Breaker disabled in development to keep local iteration quiet
    Environment.DEVELOPMENT: FeatureFlags(enable_circuit_breaker=False),
    Environment.STAGING: FeatureFlags(),
    Environment.PRODUCTION: FeatureFlags(),
}


def get_current_environment(settings: AppSettings | None = None) -> Environment:
    """Read the environment from ``DATASOURCES_ENV``."""
    settings = settings or get_settings()
    return Environment(settings.env)


def get_url_policy_for_env(env: Environment | str) -> URLValidationConfig:
    """Get the URL validation policy for an environment."""
    return _URL_POLICIES[Environment(env)]


def get_data_source_config(env: Environment | str | None = None) -> DataSourceConfig:
    """Get the complete policy bundle for an environment.

    Args:
        env: Environment; read from settings when omitted.

    Returns:
        Frozen configuration bundle.
    """
    resolved = Environment(env) if env is not None else get_current_environment()
    return DataSourceConfig(
        env=resolved,
        url_policy=_URL_POLICIES[resolved],
        retry_policy=_RETRY_POLICIES[resolved],
        cache_policy=_CACHE_POLICIES[resolved],
        circuit_breaker=_CIRCUIT_BREAKER_POLICIES[resolved],
        feature_flags=_FEATURE_FLAGS[resolved],
    )
