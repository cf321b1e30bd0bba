"""
Proxy Routes - Subscription Relay
=================================

This module implements the relay endpoint that fetches a subscription
source named by the ``url`` query parameter and relays it to the caller,
annotated with a tally of the proxy-node protocols it contains.

Pipeline:
---------
1. Extract target URL and build outbound headers
2. Fetch upstream with a bounded lifetime (redirects followed)
3. Decompress and decode the body (gzip/deflate, UTF-8, base64 unwrap)
4. Classify node protocols (YAML document or line scan)
5. Relay status, sanitized headers, X-Node-Protocols and body

Failures from step 2 onwards are translated by ``errors.translate_failure``.

Endpoints:
----------
- /api/proxy?url=...: any of GET, HEAD, POST, PUT, PATCH, DELETE, OPTIONS
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
import httpx

from ..config import Settings, get_settings
from .classifier import classify
from .decoder import decode_content
from .errors import (
    MissingTargetURL,
    error_response,
    log_fetch_failure,
    translate_failure,
)
from .headers import build_outbound_headers
from .relay import build_relay_response
from .upstream import BODYLESS_METHODS, UpstreamFetchError, fetch_upstream

logger = logging.getLogger(__name__)

# Create router
proxy_router = APIRouter()

RELAY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


# ============================================================================
# Dependencies
# ============================================================================

def get_upstream_client(request: Request) -> httpx.AsyncClient:
    """
    Dependency to get the upstream HTTP client from app state.

    Args:
        request: FastAPI request object

    Returns:
        Shared httpx.AsyncClient (follows redirects)
    """
    app_state = getattr(request.app.state, "app_state", None)
    client = getattr(app_state, "upstream_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Upstream client not initialized"
        )

    return client


# ============================================================================
# Request Adaptation
# ============================================================================

def extract_target_url(request: Request) -> str:
    """
    Read the target URL from the ``url`` query parameter.

    Starlette builds ``request.url`` from the Host header, so relative
    inbound URLs are already resolved here.

    Raises:
        MissingTargetURL: If the parameter is absent or blank
    """
    target_url = request.query_params.get("url", "").strip()
    if not target_url:
        raise MissingTargetURL()
    return target_url


# ============================================================================
# Relay Endpoint
# ============================================================================

@proxy_router.api_route("/proxy", methods=RELAY_METHODS)
async def relay_subscription(
    request: Request,
    settings: Settings = Depends(get_settings),
    upstream_client: httpx.AsyncClient = Depends(get_upstream_client),
) -> Response:
    """
    Relay one request to the subscription source in ``url``.

    Returns:
        Upstream status, headers and body with the protocol tally header,
        or a translated error response
    """
    try:
        target_url = extract_target_url(request)
    except MissingTargetURL as e:
        logger.info("Rejected relay request without url parameter")
        return error_response(e.to_relay_error())

    client_host = request.client.host if request.client else None
    outbound_headers = build_outbound_headers(
        request.headers.items(),
        client_host,
        user_agent=settings.DEFAULT_USER_AGENT,
        accept_encoding=settings.DEFAULT_ACCEPT_ENCODING,
    )

    method = request.method.upper()
    body = request.stream() if method not in BODYLESS_METHODS else None

    try:
        upstream = await fetch_upstream(
            upstream_client,
            method,
            target_url,
            outbound_headers,
            body=body,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )
    except UpstreamFetchError as e:
        log_fetch_failure(e, target_url)
        relay_error = translate_failure(e.failure)
        return error_response(relay_error)

    decoded = decode_content(upstream)
    tally = classify(decoded.text)

    logger.info(
        "Relayed subscription",
        extra={
            "target_url": target_url,
            "method": method,
            "status_code": upstream.status_code,
            "node_total": tally.total,
            "decompressed": decoded.decompressed,
            "base64_unwrapped": decoded.base64_unwrapped,
        },
    )

    return build_relay_response(
        upstream,
        decoded,
        tally,
        header_name=settings.PROTOCOL_HEADER_NAME,
        method=method,
    )
