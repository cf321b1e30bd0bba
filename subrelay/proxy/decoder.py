"""Content decoding for fetched subscription payloads.

Turns the raw upstream body into text that the classifier can scan:
decompress according to Content-Encoding, decode as UTF-8 with replacement,
then unwrap a base64 layer when the unwrapped form looks like node data.
None of these steps raise.
"""

import base64
import binascii
import gzip
import logging
import re
import zlib
from dataclasses import dataclass
from typing import Optional, Tuple

from .upstream import UpstreamResponse

logger = logging.getLogger(__name__)

# Markers that identify a decoded payload as subscription content
BASE64_PAYLOAD_MARKERS = ("://", "proxies:")

_WHITESPACE = re.compile(r"\s+")


@dataclass
class DecodedContent:
    """Decoded view of one upstream body."""
    body: bytes
    text: str
    decompressed: bool = False
    base64_unwrapped: bool = False


def decompress(content: bytes, content_encoding: str) -> Tuple[bytes, bool]:
    """
    Undo gzip or deflate content coding.

    Returns:
        (bytes, decompressed). On an unknown coding or a corrupt stream the
        input bytes are returned unchanged with ``decompressed=False``.
    """
    codings = [c.strip() for c in content_encoding.lower().split(",") if c.strip()]
    if not codings or not content:
        return content, False

    try:
        if "gzip" in codings or "x-gzip" in codings:
            return gzip.decompress(content), True
        if "deflate" in codings:
            try:
                return zlib.decompress(content), True
            except zlib.error:
                # Some servers send raw deflate without the zlib wrapper
                return zlib.decompress(content, -zlib.MAX_WBITS), True
    except (OSError, EOFError, zlib.error) as e:
        logger.warning(
            f"Failed to decompress upstream body, relaying it undecompressed: {e}",
            extra={"content_encoding": content_encoding, "body_length": len(content)},
        )
        return content, False

    if codings != ["identity"]:
        logger.warning(
            "Unsupported content encoding, relaying body undecompressed",
            extra={"content_encoding": content_encoding},
        )
    return content, False


def unwrap_base64(text: str) -> Optional[str]:
    """
    Decode ``text`` as base64 if the result looks like subscription content.

    Whitespace and missing padding are tolerated; the standard alphabet is
    tried before the URL-safe one.

    Returns:
        The decoded text, or None when ``text`` is not base64 or the decoded
        form contains none of the payload markers.
    """
    compact = _WHITESPACE.sub("", text)
    if not compact:
        return None
    compact += "=" * (-len(compact) % 4)

    for altchars in (None, b"-_"):
        try:
            raw = base64.b64decode(compact, altchars=altchars, validate=True)
        except (binascii.Error, ValueError):
            continue
        decoded = raw.decode("utf-8", errors="replace")
        if any(marker in decoded for marker in BASE64_PAYLOAD_MARKERS):
            return decoded
        return None

    return None


def decode_content(upstream: UpstreamResponse) -> DecodedContent:
    """Decode an upstream body for classification."""
    body, decompressed = decompress(upstream.content, upstream.content_encoding)
    text = body.decode("utf-8", errors="replace")

    unwrapped = unwrap_base64(text)
    if unwrapped is not None:
        logger.debug("Upstream body was base64-wrapped, classifying decoded form")
        return DecodedContent(body=body, text=unwrapped, decompressed=decompressed, base64_unwrapped=True)

    return DecodedContent(body=body, text=text, decompressed=decompressed)
