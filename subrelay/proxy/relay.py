"""
Response Relay
==============

Builds the response sent back to the caller from the buffered upstream
response: upstream status verbatim, upstream headers minus the strip-list,
the protocol tally header, and the decompressed body. Content-Encoding is
kept only when the body could not be decompressed.
"""

import logging

from starlette.datastructures import MutableHeaders
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from ..models import ProtocolTally
from .decoder import DecodedContent
from .errors import finish_failed_response
from .headers import is_relayable_response_header
from .upstream import UpstreamResponse

logger = logging.getLogger(__name__)

_FORBIDDEN_VALUE_CHARS = ("\r", "\n", "\0")


class RelayResponse(Response):
    """
    Response that finishes cleanly when writing to the caller fails.

    Tracks whether ``http.response.start`` went out so a failure during the
    write only terminates the stream instead of sending a second status.
    """

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        headers_sent = False
        try:
            await send({
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            })
            headers_sent = True
            await send({"type": "http.response.body", "body": self.body})
        except (OSError, RuntimeError) as exc:
            await finish_failed_response(exc, headers_sent, send)
            return

        if self.background is not None:
            await self.background()


def set_header(headers: MutableHeaders, name: str, value: str) -> None:
    """
    Append one header value, rejecting values the transport would refuse.

    Raises:
        ValueError: If the value contains CR, LF or NUL
        UnicodeEncodeError: If name or value is not latin-1 encodable
    """
    if any(ch in value for ch in _FORBIDDEN_VALUE_CHARS):
        raise ValueError("header value contains a forbidden control character")
    headers.append(name, value)


def build_relay_response(
    upstream: UpstreamResponse,
    decoded: DecodedContent,
    tally: ProtocolTally,
    header_name: str,
    method: str = "GET",
) -> RelayResponse:
    """
    Build the caller-facing response.

    Args:
        upstream: Buffered upstream response (status and headers)
        decoded: Decoded content; ``decoded.body`` is what gets written
        tally: Protocol tally for the metadata header
        header_name: Name of the tally header
        method: Inbound method; HEAD responses carry no body

    Returns:
        RelayResponse ready to be returned from the route
    """
    body = b"" if method.upper() == "HEAD" else decoded.body
    response = RelayResponse(content=body, status_code=upstream.status_code)

    for name, value in upstream.headers.multi_items():
        if not is_relayable_response_header(name):
            continue
        try:
            set_header(response.headers, name, value)
        except (UnicodeEncodeError, ValueError) as e:
            logger.warning(
                f"Skipping upstream header '{name}': {e}",
                extra={"header": name, "status_code": upstream.status_code},
            )

    # Body still carries a coding the decoder could not undo
    if not decoded.decompressed and upstream.content_encoding not in ("", "identity"):
        try:
            set_header(response.headers, "content-encoding", upstream.headers["content-encoding"])
        except (UnicodeEncodeError, ValueError) as e:
            logger.warning(
                f"Skipping upstream header 'content-encoding': {e}",
                extra={"header": "content-encoding", "status_code": upstream.status_code},
            )

    response.headers[header_name] = tally.to_header_value()
    return response
