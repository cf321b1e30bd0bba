"""
Data Models Module

This module defines Pydantic models shared across the relay:
- Protocol tally (serialized into the response header)
- Relay error (terminal error value rendered to the caller)
- Health check response
"""

import json
from collections import Counter
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================================
# Classification Models
# ============================================================================

class ProtocolTally(BaseModel):
    """Count of proxy-node entries grouped by protocol name."""
    total: int = Field(default=0, description="Total number of counted nodes", ge=0)
    protocols: Dict[str, int] = Field(default_factory=dict, description="Protocol name to node count")

    @model_validator(mode="after")
    def check_total(self) -> "ProtocolTally":
        """Reject tallies whose total disagrees with the per-protocol counts."""
        counted = sum(self.protocols.values())
        if self.total != counted:
            raise ValueError(
                f"total ({self.total}) must equal the sum of protocol counts ({counted})"
            )
        return self

    @classmethod
    def from_counts(cls, counts: Mapping[str, int]) -> "ProtocolTally":
        """Build a tally from a Counter-like mapping, dropping zero entries."""
        protocols = {name: count for name, count in Counter(counts).items() if count > 0}
        return cls(total=sum(protocols.values()), protocols=protocols)

    def to_header_value(self) -> str:
        """
        Compact ASCII JSON, e.g. {"total":2,"protocols":{"vmess":1,"trojan":1}}.

        Non-ASCII protocol names are \\u-escaped so the value always fits
        in an HTTP header.
        """
        return json.dumps(self.model_dump(), separators=(",", ":"), ensure_ascii=True)


# ============================================================================
# Error Models
# ============================================================================

class RelayError(BaseModel):
    """Terminal error produced by the error translator. Never retried."""
    status_code: int = Field(..., description="HTTP status sent to the caller", ge=100, le=599)
    message: str = Field(..., description="Body sent to the caller")
    body: Optional[bytes] = Field(None, description="Raw upstream body relayed instead of message")
    cause_code: Optional[str] = Field(None, description="Underlying failure code, e.g. ECONNRESET")

    @property
    def content(self) -> bytes:
        """Bytes written as the response body."""
        if self.body is not None:
            return self.body
        return self.message.encode("utf-8")


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
