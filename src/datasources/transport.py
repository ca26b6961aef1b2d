"""Network transport for data source requests.

The manager only depends on the ``Transport`` protocol; ``HttpxTransport``
is the default implementation. Tests inject spies or wrap
``httpx.MockTransport``.
"""

import json
from io import BytesIO
from typing import Any, Protocol

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.datasources.constants import (
    DEFAULT_MAX_RESPONSE_SIZE_BYTES,
    DEFAULT_TIMEOUT_MS,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_SERVER_ERROR_MIN,
)
from src.datasources.errors import DataSourceError, DataSourceErrorCode
from src.datasources.redact import redact_headers, redact_url_credentials


logger = structlog.get_logger()

DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_USER_AGENT = "datasources/0.1 (+httpx)"


class TransportRequest(BaseModel):
    """A fully resolved, validated request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    url: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS


class TransportResponse(BaseModel):
    """Decoded response of a successful request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    status_code: int
    data: Any = None
    headers: dict[str, str] = Field(default_factory=dict)
    size_bytes: int = 0


class Transport(Protocol):
    """Performs the network I/O for one attempt.

    Implementations raise ``DataSourceError`` (or any exception the error
    taxonomy can classify) on failure.
    """

    async def __call__(self, request: TransportRequest) -> TransportResponse:
        """Send a request and return the decoded response."""
        ...


class HttpxTransport:
    """Transport backed by ``httpx.AsyncClient``.

    Provides:
    - Per-request timeout
    - Maximum response size enforcement while streaming
    - JSON decoding
    - HTTP status and httpx error mapping onto the error taxonomy
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        max_response_size_bytes: int = DEFAULT_MAX_RESPONSE_SIZE_BYTES,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Origin used to resolve relative URLs.
            client: Pre-built client (e.g. with ``httpx.MockTransport``).
            max_response_size_bytes: Response body limit.
            user_agent: Default User-Agent header.
        """
        self._base_url = base_url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url or "",
            follow_redirects=False,
        )
        self._max_response_size_bytes = max_response_size_bytes
        self._user_agent = user_agent
        self._log = logger.bind(component="transport")

    async def __aenter__(self) -> "HttpxTransport":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    def _build_headers(self, request: TransportRequest) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent, "Accept": "application/json"}
        headers.update(request.headers)
        return headers

    def _is_unresolvable(self, url: str) -> bool:
        return url.startswith("/") and not (self._base_url or self._client.base_url.host)

    async def __call__(self, request: TransportRequest) -> TransportResponse:
        """Send a request.

        Args:
            request: Resolved request.

        Returns:
            Decoded response for 2xx/3xx statuses.

        Raises:
            DataSourceError: HTTP_4XX/HTTP_5XX with message ``HTTP <status>``,
                TIMEOUT, NETWORK, VALIDATION (invalid JSON or oversized body),
                or INVALID_CONFIG (relative URL without a base URL).
        """
        if self._is_unresolvable(request.url):
            raise DataSourceError(
                DataSourceErrorCode.INVALID_CONFIG,
                "Relative URL requires a base URL",
                details={"url": request.url},
            )

        headers = self._build_headers(request)
        log = self._log.bind(
            method=request.method,
            url=redact_url_credentials(request.url),
        )
        log.debug("transport_request", headers=redact_headers(headers))

        try:
            async with self._client.stream(
                request.method,
                request.url,
                headers=headers,
                json=request.body if request.method != "GET" else None,
                timeout=request.timeout_ms / 1000,
            ) as response:
                self._raise_for_status(response)
                body = await self._read_body_with_limit(response)
                response_headers = dict(response.headers)
        except httpx.TimeoutException as e:
            raise DataSourceError(
                DataSourceErrorCode.TIMEOUT,
                f"Request timed out after {request.timeout_ms}ms",
                details={"timeout_ms": request.timeout_ms},
            ) from e
        except httpx.TransportError as e:
            raise DataSourceError(
                DataSourceErrorCode.NETWORK,
                f"Network error: {type(e).__name__}",
            ) from e

        log.debug("transport_response", status_code=response.status_code, bytes=len(body))
        return TransportResponse(
            status_code=response.status_code,
            data=self._decode(body),
            headers=response_headers,
            size_bytes=len(body),
        )

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status >= HTTP_STATUS_SERVER_ERROR_MIN:
            code = DataSourceErrorCode.HTTP_5XX
        elif status >= HTTP_STATUS_BAD_REQUEST:
            code = DataSourceErrorCode.HTTP_4XX
        else:
            return
        raise DataSourceError(code, f"HTTP {status}", details={"status": status})

    async def _read_body_with_limit(self, response: httpx.Response) -> bytes:
        """Read response body with size limit.

        Raises:
            DataSourceError: VALIDATION if the body exceeds the limit.
        """
        max_size = self._max_response_size_bytes
        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > max_size:
            raise DataSourceError(
                DataSourceErrorCode.VALIDATION,
                f"Response size {content_length} exceeds limit {max_size}",
                details={"limit_bytes": max_size},
            )

        buffer = BytesIO()
        total_read = 0
        async for chunk in response.aiter_bytes(chunk_size=DEFAULT_CHUNK_SIZE):
            total_read += len(chunk)
            if total_read > max_size:
                raise DataSourceError(
                    DataSourceErrorCode.VALIDATION,
                    f"Response size exceeded limit of {max_size} bytes",
                    details={"limit_bytes": max_size},
                )
            buffer.write(chunk)
        return buffer.getvalue()

    def _decode(self, body: bytes) -> Any:
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except ValueError as e:
            raise DataSourceError(
                DataSourceErrorCode.VALIDATION,
                "Response is not valid JSON",
            ) from e
