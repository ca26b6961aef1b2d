"""Declarative, resilient data fetching for forms.

This module provides:
- Template resolution against a read-only evaluation context
- SSRF protection (private IP blocking, host allowlists, HTTPS enforcement)
- Privacy enforcement with consent checks and header allowlisting
- LRU + TTL caching keyed by an order-independent request signature
- In-flight request coalescing
- Retry with full-jitter backoff and per-source circuit breakers
- Lifecycle events and per-instance metrics
"""

from src.datasources.cache import DataSourceCache, build_cache_key, compute_signature
from src.datasources.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from src.datasources.config import (
    CachePolicy,
    DataSourceConfig,
    Environment,
    FeatureFlags,
    get_data_source_config,
    get_url_policy_for_env,
)
from src.datasources.definitions import (
    CacheConfig,
    ChainDef,
    ComputedDef,
    DataSourceDef,
    HttpGetDef,
    HttpPostDef,
    PrivacyAnnotation,
    PrivacyClassification,
    RetryConfig,
    load_data_source_def,
)
from src.datasources.errors import (
    ClassifiedError,
    DataSourceError,
    DataSourceErrorCode,
    classify_error,
    to_data_source_error,
)
from src.datasources.events import DataSourceEvent, EventEmitter
from src.datasources.in_flight import InFlightRegistry, get_in_flight_key
from src.datasources.manager import DataSourceManager
from src.datasources.metrics import DataSourceMetrics
from src.datasources.models import (
    CacheMeta,
    CircuitBreakerState,
    CircuitState,
    EvalContext,
    FetchOptions,
    FetchResult,
)
from src.datasources.privacy import (
    PrivacyPolicy,
    PrivacyViolation,
    allowlist_headers,
    check_privacy_violations,
    mask_for_logs,
)
from src.datasources.response_validator import validate_response
from src.datasources.retry import RetryPolicy, compute_backoff_ms, execute_with_retry
from src.datasources.template import (
    apply_map_response,
    resolve_template,
    resolve_template_object,
)
from src.datasources.transport import (
    HttpxTransport,
    Transport,
    TransportRequest,
    TransportResponse,
)
from src.datasources.url_validator import URLValidationConfig, is_url_safe, validate_url
from src.datasources.user_messages import get_user_message


__all__ = [
    # Manager
    "DataSourceManager",
    # Definitions
    "CacheConfig",
    "ChainDef",
    "ComputedDef",
    "DataSourceDef",
    "HttpGetDef",
    "HttpPostDef",
    "PrivacyAnnotation",
    "PrivacyClassification",
    "RetryConfig",
    "load_data_source_def",
    # Models
    "CacheMeta",
    "CircuitBreakerState",
    "CircuitState",
    "EvalContext",
    "FetchOptions",
    "FetchResult",
    # Config
    "CachePolicy",
    "DataSourceConfig",
    "Environment",
    "FeatureFlags",
    "get_data_source_config",
    "get_url_policy_for_env",
    # Errors
    "ClassifiedError",
    "DataSourceError",
    "DataSourceErrorCode",
    "classify_error",
    "get_user_message",
    "to_data_source_error",
    # Components
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "DataSourceCache",
    "DataSourceEvent",
    "DataSourceMetrics",
    "EventEmitter",
    "HttpxTransport",
    "InFlightRegistry",
    "PrivacyPolicy",
    "PrivacyViolation",
    "RetryPolicy",
    "Transport",
    "TransportRequest",
    "TransportResponse",
    "URLValidationConfig",
    # Functions
    "allowlist_headers",
    "apply_map_response",
    "build_cache_key",
    "check_privacy_violations",
    "compute_backoff_ms",
    "compute_signature",
    "execute_with_retry",
    "get_in_flight_key",
    "is_url_safe",
    "mask_for_logs",
    "resolve_template",
    "resolve_template_object",
    "validate_response",
    "validate_url",
]
