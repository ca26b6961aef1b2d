"""User-facing messages for data source errors.

Maps stable error codes to localizable default messages. Keyed by the code
string so this module stays free of imports from the error taxonomy.
"""

from collections.abc import Mapping
from typing import Final, Literal

from pydantic import BaseModel, ConfigDict


class UserMessage(BaseModel):
    """Title, body, and suggested action shown to end users."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str
    message: str
    action: str | None = None


class SafeModeMessage(BaseModel):
    """Banner shown when a form continues with partial data."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: str
    message: str
    level: Literal["info", "warning"]


# Short default messages returned by error classification
ERROR_MESSAGES: Final[dict[str, str]] = {
    "TIMEOUT": "Request timed out. Please try again.",
    "ABORTED": "Request was cancelled.",
    "NETWORK": "Network error. Check your connection.",
    "CB_OPEN": "Service temporarily unavailable. Please wait.",
    "HTTP_4XX": "Invalid request. Please check your input.",
    "HTTP_5XX": "Server error. Please try again.",
    "VALIDATION": "Response failed validation.",
    "PRIVACY_BLOCKED": "Privacy policy violation.",
    "SSRF_BLOCKED": "URL not allowed.",
    "HTTPS_REQUIRED": "HTTPS required for security.",
    "SOURCE_NOT_FOUND": "Data source not found.",
    "INVALID_CONFIG": "Invalid data source configuration.",
    "UNKNOWN": "An unexpected error occurred.",
}

USER_MESSAGES: Final[dict[str, UserMessage]] = {
    "TIMEOUT": UserMessage(
        title="Request Timed Out",
        message="The service didn't respond in time. This is usually temporary.",
        action="Try again",
    ),
    "ABORTED": UserMessage(
        title="Request Cancelled",
        message="The request was cancelled.",
        action="Continue",
    ),
    "NETWORK": UserMessage(
        title="Connection Issue",
        message=(
            "Looks like there's a connection problem. "
            "Check your internet and try again."
        ),
        action="Retry",
    ),
    "CB_OPEN": UserMessage(
        title="Service Temporarily Unavailable",
        message="We're pausing requests for a moment to let the service recover.",
        action="Wait and retry",
    ),
    "HTTP_4XX": UserMessage(
        title="Invalid Request",
        message="There was a problem with your request. Please check your input.",
        action="Go back",
    ),
    "HTTP_5XX": UserMessage(
        title="Service Error",
        message="The service is experiencing issues. Please try again in a moment.",
        action="Try again",
    ),
    "VALIDATION": UserMessage(
        title="Validation Failed",
        message="The response failed validation checks.",
        action="Contact support",
    ),
    "PRIVACY_BLOCKED": UserMessage(
        title="Privacy Policy Violation",
        message="This request was blocked due to privacy policies.",
        action="Contact support",
    ),
    "SSRF_BLOCKED": UserMessage(
        title="Blocked Request",
        message="This URL is not allowed for security reasons.",
        action="Contact support",
    ),
    "HTTPS_REQUIRED": UserMessage(
        title="Secure Connection Required",
        message="HTTPS is required for this request.",
        action="Contact support",
    ),
    "SOURCE_NOT_FOUND": UserMessage(
        title="Configuration Error",
        message="The requested data source was not found.",
        action="Contact support",
    ),
    "INVALID_CONFIG": UserMessage(
        title="Configuration Error",
        message="There is an error in the data source configuration.",
        action="Contact support",
    ),
    "UNKNOWN": UserMessage(
        title="Unexpected Error",
        message="Something unexpected happened. Please try again.",
        action="Try again",
    ),
}

SafeModeKind = Literal["non_retryable_failure", "partial_failure", "stale_data"]

SAFE_MODE_MESSAGES: Final[dict[str, SafeModeMessage]] = {
    "non_retryable_failure": SafeModeMessage(
        title="Some data could not be loaded",
        message="You can continue, but some information may be missing.",
        level="warning",
    ),
    "partial_failure": SafeModeMessage(
        title="Partial data loaded",
        message="Some data sources failed, but you can still continue.",
        level="info",
    ),
    "stale_data": SafeModeMessage(
        title="Showing cached data",
        message="We could not refresh the data, but here is what we have.",
        level="info",
    ),
}


def get_user_message(
    code: str,
    overrides: Mapping[str, str] | None = None,
) -> UserMessage:
    """Get the user-facing message for an error code.

    Args:
        code: Error code (a ``DataSourceErrorCode`` or its string value).
        overrides: Per-call-site replacements for ``title``, ``message``,
            or ``action``.

    Returns:
        UserMessage with overrides applied.
    """
    key = getattr(code, "value", code)
    base = USER_MESSAGES.get(key, USER_MESSAGES["UNKNOWN"])
    if not overrides:
        return base
    update = {k: v for k, v in overrides.items() if k in UserMessage.model_fields}
    return base.model_copy(update=update)


def get_safe_mode_message(kind: SafeModeKind) -> SafeModeMessage:
    """Get a safe mode banner message."""
    return SAFE_MODE_MESSAGES[kind]
