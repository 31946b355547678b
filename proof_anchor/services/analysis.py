import asyncio
import copy
import io
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests
import structlog
from fastapi.concurrency import run_in_threadpool
from PIL import Image, UnidentifiedImageError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from proof_anchor import config
from proof_anchor.core.errors import (
    AnalysisUnavailable, PayloadTooLarge, ProofWorkflowError, UnsupportedContent
)
from proof_anchor.core.utils import (
    calculate_content_hash, format_file_size, media_kind_for, sanitize_filename, utc_now
)
from proof_anchor.models.content import AnalysisOptions, AnalysisRecord, ContentItem, ContentKind

logger = structlog.get_logger()

__all__ = ["Analyzer", "StubAnalyzer", "HttpAnalyzer", "AnalysisGateway"]

STAGE = "analysis"


class Analyzer(ABC):
    """External analysis engine. Any implementation honoring this contract is valid."""

    @abstractmethod
    async def analyze(self, item: ContentItem, options: AnalysisOptions) -> AnalysisRecord:
        ...


class StubAnalyzer(Analyzer):
    """Local stand-in for the analysis model with fixed confidences per kind."""

    IMAGE_CONFIDENCE = 0.95
    VIDEO_CONFIDENCE = 0.92
    VIDEO_DURATION_SECONDS = 120
    TEXT_CONFIDENCE = 0.88

    async def analyze(self, item: ContentItem, options: AnalysisOptions) -> AnalysisRecord:
        if item.kind == ContentKind.TEXT:
            return self._analyze_text(item.text or "")

        fmt = item.mime_type.split("/", 1)[1] if item.mime_type and "/" in item.mime_type else None
        if item.kind == ContentKind.IMAGE:
            metadata = {"format": fmt, **_image_properties(item.data)}
            return AnalysisRecord(kind=item.kind,
                                  detected_summary="Sample detection result",
                                  confidence=self.IMAGE_CONFIDENCE,
                                  metadata=metadata)

        return AnalysisRecord(kind=item.kind,
                              detected_summary="Sample video analysis",
                              confidence=self.VIDEO_CONFIDENCE,
                              metadata={"duration": self.VIDEO_DURATION_SECONDS, "format": fmt})

    def _analyze_text(self, text: str) -> AnalysisRecord:
        words = text.split()
        # Capitalized tokens after the first word stand in for named entities
        entities = sorted({
            w.strip(".,;:!?\"'()[]") for w in words[1:] if w[:1].isupper()
        } - {""})
        return AnalysisRecord(kind=ContentKind.TEXT,
                              detected_summary=f"Text with {len(words)} words",
                              confidence=self.TEXT_CONFIDENCE,
                              metadata={
                                  "wordCount": len(words),
                                  "sentiment": "neutral",
                                  "entities": entities,
                              })


def _image_properties(data: bytes) -> Dict[str, Any]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return {"width": img.width, "height": img.height, "mode": img.mode}
    except (UnidentifiedImageError, OSError) as e:
        logger.warning("Failed to read image properties", error=str(e))
        return {}


class HttpAnalyzer(Analyzer):
    """Analyzer backed by a remote analysis service."""

    def __init__(self, endpoint: str, timeout_seconds: float = config.ANALYZER_TIMEOUT_SECONDS,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.session = session or self._build_session()
        logger.info("HTTP analyzer initialized", endpoint=self.endpoint)

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # Analysis is side-effect free, so POSTs may be retried
        retry_strategy = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=frozenset({"POST"}),
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    async def analyze(self, item: ContentItem, options: AnalysisOptions) -> AnalysisRecord:
        return await run_in_threadpool(self._analyze_sync, item, options)

    def _analyze_sync(self, item: ContentItem, options: AnalysisOptions) -> AnalysisRecord:
        url = f"{self.endpoint}/analyze/{item.kind.value}"
        timeout = options.timeout_seconds or self.timeout_seconds
        try:
            if item.kind == ContentKind.TEXT:
                response = self.session.post(url, json={"text": item.text, "hints": options.hints},
                                             timeout=timeout)
            else:
                files = {"file": (item.original_name or "upload", item.data,
                                  item.mime_type or "application/octet-stream")}
                response = self.session.post(url, files=files, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            logger.error("Analyzer HTTP error", url=url, error=str(e),
                         status_code=getattr(e.response, "status_code", None))
            raise AnalysisUnavailable(f"Analyzer request failed: {e}", stage=STAGE) from e

        analysis = body.get("analysis", body)
        try:
            return AnalysisRecord(kind=item.kind,
                                  detected_summary=analysis["detectedSummary"],
                                  confidence=analysis["confidence"],
                                  metadata=analysis.get("metadata") or {},
                                  timestamp=analysis.get("timestamp") or utc_now())
        except (KeyError, TypeError, ValueError) as e:
            raise AnalysisUnavailable(f"Analyzer returned a malformed record: {e}", stage=STAGE) from e


class AnalysisGateway:
    """Validates content, invokes the analyzer under a timeout, and normalizes its record."""

    def __init__(self,
                 analyzer: Optional[Analyzer] = None,
                 max_payload_bytes: int = config.MAX_PAYLOAD_BYTES,
                 timeout_seconds: float = config.ANALYZER_TIMEOUT_SECONDS):
        self.analyzer = analyzer or StubAnalyzer()
        self.max_payload_bytes = max_payload_bytes
        self.timeout_seconds = timeout_seconds

    async def analyze(self, item: ContentItem, options: Optional[AnalysisOptions] = None) -> AnalysisRecord:
        """
        Analyze a content item.

        Raises:
            AnalysisUnavailable: Item is empty, unsupported, or the analyzer failed or timed out
            PayloadTooLarge: Raw size exceeds the configured ceiling
        """
        options = options or AnalysisOptions()
        limit = options.max_payload_bytes or self.max_payload_bytes
        timeout = options.timeout_seconds or self.timeout_seconds

        self._validate(item, limit)

        logger.info("Starting content analysis",
                    kind=item.kind.value,
                    size_human=format_file_size(item.raw_size),
                    analyzer=type(self.analyzer).__name__)
        try:
            record = await asyncio.wait_for(self.analyzer.analyze(item, options), timeout)
        except asyncio.TimeoutError as e:
            logger.error("Analyzer timed out", kind=item.kind.value, timeout_seconds=timeout)
            raise AnalysisUnavailable(f"Analyzer did not respond within {timeout} seconds",
                                      stage=STAGE) from e
        except ProofWorkflowError:
            raise
        except Exception as e:
            logger.error("Analyzer failed", kind=item.kind.value, error=str(e))
            raise AnalysisUnavailable(f"Analyzer failed: {e}", stage=STAGE) from e

        if not isinstance(record, AnalysisRecord) or record.kind != item.kind:
            raise AnalysisUnavailable("Analyzer returned a record for a different content kind",
                                      stage=STAGE)

        record = self._normalize(item, record)
        logger.info("Content analysis completed",
                    kind=record.kind.value, confidence=record.confidence)
        return record

    def _validate(self, item: ContentItem, limit: int) -> None:
        if item.is_empty:
            raise AnalysisUnavailable("Content item is empty", stage=STAGE,
                                      hint="Submit a non-empty file or text.")

        size = max(item.raw_size, item.size or 0)
        if size > limit:
            raise PayloadTooLarge(size, limit, stage=STAGE)

        if item.kind in (ContentKind.IMAGE, ContentKind.VIDEO) and (item.mime_type or item.original_name):
            detected = media_kind_for(item.mime_type, item.original_name)
            if detected != item.kind.value:
                raise UnsupportedContent(
                    f"Unsupported {item.kind.value} content: {item.mime_type or item.original_name}",
                    stage=STAGE,
                )

    @staticmethod
    def _normalize(item: ContentItem, record: AnalysisRecord) -> AnalysisRecord:
        """Detach metadata from the analyzer and bind the record to the exact payload."""
        metadata = copy.deepcopy(dict(record.metadata))
        metadata["contentDigest"] = calculate_content_hash(item.payload())
        if item.kind != ContentKind.TEXT:
            metadata["filename"] = sanitize_filename(item.original_name)
            metadata["mimetype"] = item.mime_type
            metadata["size"] = item.raw_size
        return record.model_copy(update={"metadata": metadata})
