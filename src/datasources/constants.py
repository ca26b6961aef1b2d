"""Constants for the data source layer.

Centralizes HTTP and policy constants to avoid duplication across modules.
"""

# HTTP Status Code Ranges
HTTP_STATUS_OK_MIN = 200
HTTP_STATUS_OK_MAX = 300
HTTP_STATUS_BAD_REQUEST = 400
HTTP_STATUS_SERVER_ERROR_MIN = 500
HTTP_STATUS_SERVER_ERROR_MAX = 600

# Response Size Limits
DEFAULT_MAX_RESPONSE_SIZE_BYTES = 10 * 1024 * 1024  # 10 MB

# Request defaults
DEFAULT_TIMEOUT_MS = 10_000
MIN_TIMEOUT_MS = 1_000
MAX_TIMEOUT_MS = 30_000

# Cache defaults
DEFAULT_CACHE_MAX_ENTRIES = 100
DEFAULT_CACHE_TTL_MS = 60_000
MIN_CACHE_TTL_MS = 1_000
MAX_CACHE_TTL_MS = 604_800_000  # 7 days

# Circuit breaker defaults
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_FAILURE_WINDOW_MS = 60_000
DEFAULT_RESET_TIMEOUT_MS = 30_000
DEFAULT_MAX_RESET_TIMEOUT_MS = 300_000

# Retry defaults
DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 300
DEFAULT_MAX_DELAY_MS = 5_000
MAX_RETRIES_LIMIT = 5

# Payload limits for request bodies
DEFAULT_MAX_PAYLOAD_KB = 64

# Template delimiters
TEMPLATE_OPEN = "{{"
TEMPLATE_CLOSE = "}}"
