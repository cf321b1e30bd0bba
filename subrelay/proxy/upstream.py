"""Upstream fetch for the subscription relay.

Sends one request to the target URL through the shared ``httpx.AsyncClient``
and materializes the raw body. Failures are reported as one of three tagged
variants carried by ``UpstreamFetchError``.
"""

import asyncio
import errno
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union

import httpx

logger = logging.getLogger(__name__)

BODYLESS_METHODS = frozenset({"GET", "HEAD"})


@dataclass
class UpstreamResponse:
    """Fully buffered upstream response. Body is still content-encoded."""
    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str = ""

    @property
    def content_encoding(self) -> str:
        return self.headers.get("content-encoding", "").strip().lower()


# ============================================================================
# Fetch Failures
# ============================================================================

@dataclass(frozen=True)
class TimeoutFailure:
    """The fetch did not finish within the deadline."""
    timeout: float

    def describe(self) -> str:
        return f"upstream request timed out after {self.timeout:g}s"


@dataclass(frozen=True)
class TransportFailure:
    """Network, DNS or TLS failure before a usable response existed."""
    message: str
    cause_code: Optional[str] = None

    def describe(self) -> str:
        return self.message


@dataclass(frozen=True)
class UpstreamErrorResponse:
    """A failure that still carries the upstream response."""
    status_code: int
    body: bytes = b""

    def describe(self) -> str:
        return f"upstream responded with status {self.status_code}"


FetchFailure = Union[TimeoutFailure, TransportFailure, UpstreamErrorResponse]


class UpstreamFetchError(Exception):
    """Raised by fetch_upstream; ``failure`` holds the tagged cause."""

    def __init__(self, failure: FetchFailure):
        super().__init__(failure.describe())
        self.failure = failure


def cause_code_of(exc: BaseException) -> str:
    """
    Find the most specific failure code in an exception chain.

    Returns the errno name of the first OSError carrying one (``ECONNRESET``,
    ``ECONNREFUSED``...). A chain that only mentions a connection reset in
    its messages maps to ``ECONNRESET``. Otherwise the class name of the
    outermost exception.
    """
    seen = set()
    current: Optional[BaseException] = exc
    mentions_reset = False

    while current is not None and id(current) not in seen:
        seen.add(id(current))

        if isinstance(current, ConnectionResetError):
            return "ECONNRESET"
        if isinstance(current, OSError) and current.errno in errno.errorcode:
            return errno.errorcode[current.errno]
        if "connection reset" in str(current).lower():
            mentions_reset = True

        current = current.__cause__ or current.__context__

    if mentions_reset:
        return "ECONNRESET"
    return type(exc).__name__


async def _send_and_read(
    client: httpx.AsyncClient,
    request: httpx.Request,
) -> UpstreamResponse:
    response = await client.send(request, stream=True)
    try:
        if response.is_stream_consumed:
            # Transport already buffered the body
            content = response.content
        else:
            content = b"".join([chunk async for chunk in response.aiter_raw()])
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            content=content,
            url=str(response.url),
        )
    finally:
        await response.aclose()


async def fetch_upstream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    headers: httpx.Headers,
    body: Optional[AsyncIterator[bytes]] = None,
    timeout: float = 10.0,
) -> UpstreamResponse:
    """
    Issue one upstream request and buffer the complete raw body.

    Args:
        client: Shared client (redirects followed)
        method: Inbound method, preserved
        url: Target URL
        headers: Outbound header set
        body: Inbound body stream, forwarded for methods other than GET/HEAD
        timeout: Deadline in seconds covering send and body read

    Returns:
        UpstreamResponse with status, headers and raw body

    Raises:
        UpstreamFetchError: On timeout, transport failure or an error that
            carries an upstream response. Never retried.
    """
    method = method.upper()
    content = body if method not in BODYLESS_METHODS else None

    try:
        request = client.build_request(method, url, headers=headers, content=content)
        return await asyncio.wait_for(_send_and_read(client, request), timeout=timeout)

    except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
        raise UpstreamFetchError(TimeoutFailure(timeout=timeout)) from exc

    except httpx.HTTPStatusError as exc:
        try:
            error_body = exc.response.content
        except httpx.ResponseNotRead:
            error_body = b""
        raise UpstreamFetchError(
            UpstreamErrorResponse(status_code=exc.response.status_code, body=error_body)
        ) from exc

    except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError, OSError) as exc:
        message = str(exc) or type(exc).__name__
        raise UpstreamFetchError(
            TransportFailure(message=message, cause_code=cause_code_of(exc))
        ) from exc
