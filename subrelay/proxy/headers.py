"""
Header Policy
=============

Which headers cross the relay boundary in each direction, and how the
outbound header set is assembled from the inbound request.

Both header bags are case-insensitive, ordered and multi-valued. Outbound
headers are an ``httpx.Headers``: assigning a key replaces every value
stored under it, so defaults never produce duplicates.
"""

import logging
from typing import Iterable, Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


# Request headers never forwarded upstream (hop-by-hop or host-identifying)
REQUEST_STRIP_HEADERS = frozenset({
    "host",
    "connection",
    "content-length",
    "transfer-encoding",
    "keep-alive",
    "expect",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "upgrade",
})

# Upstream response headers never relayed; the body is re-materialized
RESPONSE_STRIP_HEADERS = frozenset({
    "transfer-encoding",
    "connection",
    "keep-alive",
    "content-encoding",
    "content-length",
})


def is_forwardable_request_header(name: str) -> bool:
    return name.lower() not in REQUEST_STRIP_HEADERS


def is_relayable_response_header(name: str) -> bool:
    return name.lower() not in RESPONSE_STRIP_HEADERS


def build_outbound_headers(
    inbound: Iterable[Tuple[str, str]],
    client_host: Optional[str],
    user_agent: str,
    accept_encoding: str,
) -> httpx.Headers:
    """
    Build headers for the upstream request.

    Args:
        inbound: Inbound header items, duplicates included
            (``request.headers.items()`` on Starlette).
        client_host: Caller's network address, if known
        user_agent: Default User-Agent when the caller sent none
        accept_encoding: Default Accept-Encoding when the caller sent none

    Returns:
        Outbound header set without any stripped key
    """
    headers = httpx.Headers([
        (name, value) for name, value in inbound
        if is_forwardable_request_header(name)
    ])

    if "user-agent" not in headers:
        headers["User-Agent"] = user_agent

    if "accept-encoding" not in headers:
        headers["Accept-Encoding"] = accept_encoding

    # An inbound X-Forwarded-For was already copied through unchanged
    if "x-forwarded-for" not in headers and client_host:
        headers["X-Forwarded-For"] = client_host

    return headers
