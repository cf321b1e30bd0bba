"""
Protocol Classifier
===================

Counts proxy-node entries in decoded subscription text.

Two strategies, tried in order:

1. Structured: text holding both ``proxies:`` and ``proxy-groups:`` is parsed
   as YAML and every entry of the ``proxies`` list is counted under its
   ``type``. URI-looking strings inside YAML values are never counted.
2. Line scan: each non-empty line is matched against ``PROTOCOL_VOCABULARY``
   by ``<name>://`` prefix; the first match wins and a line counts once.

Classification never raises; a failure yields the empty tally.
"""

import logging
from collections import Counter
from typing import Any, Optional

import yaml

from ..models import ProtocolTally

logger = logging.getLogger(__name__)


# Ordered; matching is case-insensitive on "<name>://"
PROTOCOL_VOCABULARY = (
    "ss",
    "ssr",
    "trojan",
    "vmess",
    "vless",
    "http",
    "socks5",
    "hysteria",
    "hysteria2",
    "tuic",
    "wireguard",
    "brook",
    "snell",
    "reality",
    "juicity",
    "xray",
    "shadowtls",
    "v2ray",
    "outline",
    "warp",
    "naive",
    "httpobfs",
    "websocket",
    "quic",
    "grpc",
    "http2",
    "http3",
)

_PREFIXES = tuple((name, f"{name}://") for name in PROTOCOL_VOCABULARY)

STRUCTURED_MARKERS = ("proxies:", "proxy-groups:")

UNKNOWN_TYPE = "unknown"


def is_structured_document(text: str) -> bool:
    return all(marker in text for marker in STRUCTURED_MARKERS)


def _entry_type(entry: Any) -> str:
    if isinstance(entry, dict):
        declared = entry.get("type")
        if declared is not None and str(declared).strip():
            return str(declared).strip().lower()
    return UNKNOWN_TYPE


def classify_structured(text: str) -> Optional[ProtocolTally]:
    """
    Tally the ``proxies`` list of a YAML configuration document.

    Returns:
        The tally, or None when the text does not parse or has no
        ``proxies`` list (the caller then falls back to the line scan).
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.debug(f"Structured parse failed, falling back to line scan: {e}")
        return None

    if not isinstance(document, dict):
        return None

    proxies = document.get("proxies")
    if not isinstance(proxies, list):
        return None

    return ProtocolTally.from_counts(Counter(_entry_type(entry) for entry in proxies))


def match_protocol(line: str) -> Optional[str]:
    """Return the first vocabulary protocol whose ``name://`` prefixes the line."""
    lowered = line.strip().lower()
    if not lowered:
        return None
    for name, prefix in _PREFIXES:
        if lowered.startswith(prefix):
            return name
    return None


def classify_lines(text: str) -> ProtocolTally:
    counts = Counter()
    for line in text.splitlines():
        protocol = match_protocol(line)
        if protocol is not None:
            counts[protocol] += 1
    return ProtocolTally.from_counts(counts)


def classify(text: str) -> ProtocolTally:
    """
    Classify decoded subscription text.

    Args:
        text: Decoded content (after decompression and base64 unwrap)

    Returns:
        ProtocolTally; empty when nothing matched or classification failed
    """
    try:
        if is_structured_document(text):
            tally = classify_structured(text)
            if tally is not None:
                return tally
        return classify_lines(text)
    except Exception as e:
        logger.warning(
            f"Protocol classification failed, reporting empty tally: {e}",
            exc_info=True,
            extra={"text_length": len(text) if isinstance(text, str) else None},
        )
        return ProtocolTally()
