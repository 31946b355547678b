"""
Pydantic models for submitted content and its analysis record.
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from proof_anchor.core.utils import utc_now


class ContentKind(str, Enum):
    """Enumeration of supported content kinds."""
    IMAGE = "image"
    VIDEO = "video"
    TEXT = "text"


class ContentItem(BaseModel):
    """A single piece of submitted content. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: ContentKind = Field(..., description="Kind of content")
    data: bytes = Field(default=b"", description="Raw bytes for image/video content")
    text: Optional[str] = Field(None, description="Text body for text content")
    original_name: Optional[str] = Field(None, alias="originalName", description="Client filename")
    mime_type: Optional[str] = Field(None, alias="mimeType", description="MIME type of the content")
    size: Optional[int] = Field(None, ge=0, description="Declared size in bytes")

    @classmethod
    def from_text(cls, text: Optional[str]) -> "ContentItem":
        return cls(kind=ContentKind.TEXT, text=text, mime_type="text/plain")

    @classmethod
    def from_bytes(cls,
                   kind: ContentKind,
                   data: bytes,
                   original_name: Optional[str] = None,
                   mime_type: Optional[str] = None) -> "ContentItem":
        return cls(kind=kind, data=data, original_name=original_name,
                   mime_type=mime_type, size=len(data))

    def payload(self) -> bytes:
        """Raw bytes of the content regardless of kind."""
        if self.kind == ContentKind.TEXT:
            return (self.text or "").encode("utf-8")
        return self.data

    @property
    def raw_size(self) -> int:
        return len(self.payload())

    @property
    def is_empty(self) -> bool:
        if self.kind == ContentKind.TEXT:
            return not (self.text or "").strip()
        return len(self.data) == 0


class AnalysisOptions(BaseModel):
    """Options passed through to the analyzer."""
    max_payload_bytes: Optional[int] = Field(None, ge=1, description="Override the payload ceiling")
    timeout_seconds: Optional[float] = Field(None, gt=0, description="Override the analyzer timeout")
    hints: Dict[str, Any] = Field(default_factory=dict, description="Analyzer-specific hints")


class AnalysisRecord(BaseModel):
    """Normalized output of an analyzer. Immutable; the fingerprint is derived from it."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: ContentKind
    detected_summary: str = Field(..., alias="detectedSummary")
    confidence: float = Field(..., ge=0.0, le=1.0)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("confidence")
    @classmethod
    def validate_confidence(cls, v):
        if not math.isfinite(v):
            raise ValueError("Confidence must be a number between 0.0 and 1.0")
        return float(v)

    @property
    def word_count(self) -> Optional[int]:
        return self.metadata.get("wordCount")

    def to_public(self) -> Dict[str, Any]:
        """JSON-ready view for presentation layers."""
        return self.model_dump(by_alias=True, mode="json")
