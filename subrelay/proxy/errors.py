"""
Error Translation
=================

Maps relay failures to the status and body sent to the caller.

Failure Taxonomy:
-----------------
- MissingTargetURL: caller error, 400
- TimeoutFailure: deadline exceeded, 500
- TransportFailure: network/DNS/TLS failure, 500; 403 on connection reset
- UpstreamErrorResponse: upstream status and body relayed verbatim
- Classification failures never reach this module (empty tally instead)

Connection reset → 403 is a heuristic: subscription providers commonly reset
connections from blocked addresses or for expired subscriptions, but a
genuine network fault looks the same.
"""

import logging
from typing import Any, Awaitable, Callable, MutableMapping

from starlette.responses import Response

from ..models import RelayError
from .upstream import (
    FetchFailure,
    TimeoutFailure,
    TransportFailure,
    UpstreamErrorResponse,
    UpstreamFetchError,
    cause_code_of,
)

logger = logging.getLogger(__name__)

Send = Callable[[MutableMapping[str, Any]], Awaitable[None]]

MISSING_URL_MESSAGE = 'Bad Request: "url" parameter is missing.'
ACCESS_DENIED_MESSAGE = "access denied, likely IP-restricted or subscription expired"
RELAY_ERROR_PREFIX = "Relay Error"


class RelayException(Exception):
    """Base class for failures raised inside the relay pipeline."""


class MissingTargetURL(RelayException):
    """The inbound request has no usable ``url`` query parameter."""

    def to_relay_error(self) -> RelayError:
        return RelayError(status_code=400, message=MISSING_URL_MESSAGE)


def translate_failure(failure: FetchFailure) -> RelayError:
    """
    Translate a fetch failure into the terminal error response.

    Args:
        failure: Tagged failure from the upstream fetch

    Returns:
        RelayError with status code, message and optional relayed body
    """
    if isinstance(failure, UpstreamErrorResponse):
        return RelayError(
            status_code=failure.status_code,
            message=failure.describe(),
            body=failure.body,
        )

    if isinstance(failure, TransportFailure):
        if failure.cause_code == "ECONNRESET":
            return RelayError(
                status_code=403,
                message=ACCESS_DENIED_MESSAGE,
                cause_code=failure.cause_code,
            )
        return RelayError(
            status_code=500,
            message=f"{RELAY_ERROR_PREFIX}: {failure.describe()}",
            cause_code=failure.cause_code,
        )

    if isinstance(failure, TimeoutFailure):
        return RelayError(
            status_code=500,
            message=f"{RELAY_ERROR_PREFIX}: {failure.describe()}",
            cause_code="ETIMEDOUT",
        )

    raise TypeError(f"Unhandled fetch failure: {failure!r}")


def log_fetch_failure(exc: UpstreamFetchError, target_url: str) -> None:
    """Log a fetch failure with its cause chain."""
    cause = exc.__cause__
    logger.error(
        f"Upstream fetch failed: {exc}",
        exc_info=cause if cause is not None else exc,
        extra={
            "target_url": target_url,
            "failure": type(exc.failure).__name__,
            "cause_code": getattr(exc.failure, "cause_code", None),
            "cause_type": type(cause).__name__ if cause is not None else None,
        },
    )


def error_response(error: RelayError) -> Response:
    """Render a RelayError as a plain-text response."""
    media_type = None if error.body is not None else "text/plain"
    return Response(content=error.content, status_code=error.status_code, media_type=media_type)


async def finish_failed_response(exc: Exception, headers_sent: bool, send: Send) -> None:
    """
    Complete a response whose write failed.

    If the status line and headers already went out only the body stream is
    terminated; otherwise a 500 is sent in their place.
    """
    cause_code = cause_code_of(exc)
    logger.error(
        f"Failed writing relayed response: {exc}",
        exc_info=exc,
        extra={"headers_sent": headers_sent, "cause_code": cause_code},
    )

    try:
        if headers_sent:
            await send({"type": "http.response.body", "body": b"", "more_body": False})
            return

        error = RelayError(
            status_code=500,
            message=f"{RELAY_ERROR_PREFIX}: {exc}",
            cause_code=cause_code,
        )
        body = error.content
        await send({
            "type": "http.response.start",
            "status": error.status_code,
            "headers": [
                (b"content-type", b"text/plain; charset=utf-8"),
                (b"content-length", str(len(body)).encode("latin-1")),
            ],
        })
        await send({"type": "http.response.body", "body": body, "more_body": False})
    except (OSError, RuntimeError) as e:
        # Client went away; nothing left to write to
        logger.warning(f"Could not terminate failed response: {e}")
