import hashlib
import json
from datetime import datetime
from typing import Any

import structlog

from proof_anchor.core.utils import format_timestamp
from proof_anchor.models.content import AnalysisRecord
from proof_anchor.models.proof import ProofFingerprint

logger = structlog.get_logger()

__all__ = ["ProofHasher", "canonicalize_record", "fingerprint_record"]

# Fixed top-level field order of the canonical form
RECORD_FIELDS = ("kind", "detectedSummary", "confidence", "metadata", "timestamp")


class ProofHasher:
    """Derives proof fingerprints from analysis records via canonical JSON + SHA-256."""

    algorithm = "sha256"

    def canonicalize(self, record: AnalysisRecord) -> bytes:
        """
        Serialize a record to its canonical byte form.

        Rules:
        - Top-level fields in RECORD_FIELDS order
        - Mapping keys inside metadata sorted (Unicode code point order)
        - Compact separators, UTF-8, no ASCII escaping
        - Timestamps as fixed-width ISO-8601 UTC with microseconds
        - Lists keep their order; tuples become lists; sets are sorted

        Raises:
            ValueError: If metadata holds a value with no canonical JSON form
        """
        fields = {
            "kind": record.kind.value,
            "detectedSummary": record.detected_summary,
            "confidence": float(record.confidence),
            "metadata": _canonical_value(record.metadata),
            "timestamp": format_timestamp(record.timestamp),
        }
        body = ",".join(
            f"{_dump(name)}:{_dump(fields[name])}" for name in RECORD_FIELDS
        )
        return ("{" + body + "}").encode("utf-8")

    def fingerprint(self, record: AnalysisRecord) -> ProofFingerprint:
        """Hash the canonical form of a record into a 0x-prefixed 32-byte fingerprint."""
        canonical = self.canonicalize(record)
        digest = hashlib.new(self.algorithm, canonical).hexdigest()
        fingerprint = ProofFingerprint(value=f"0x{digest}", algorithm=self.algorithm)

        logger.debug("Computed proof fingerprint",
                     kind=record.kind.value,
                     canonical_size=len(canonical),
                     fingerprint=fingerprint.value)
        return fingerprint


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"),
                      ensure_ascii=False, allow_nan=False)


def _canonical_value(value: Any) -> Any:
    """Recursively normalize a metadata value into plain JSON types."""
    if value is None or isinstance(value, (bool, str, int, float)):
        return value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, dict):
        return {str(k): _canonical_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_canonical_value(item) for item in value)
    raise ValueError(f"Cannot canonicalize metadata value of type {type(value).__name__}")


_default_hasher = ProofHasher()


def canonicalize_record(record: AnalysisRecord) -> bytes:
    return _default_hasher.canonicalize(record)


def fingerprint_record(record: AnalysisRecord) -> ProofFingerprint:
    return _default_hasher.fingerprint(record)
