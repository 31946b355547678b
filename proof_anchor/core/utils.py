import hashlib
import mimetypes
import os
import re
import uuid
from datetime import datetime, timezone
from typing import Optional

import structlog

logger = structlog.get_logger()

__all__ = [
    "new_session_id",
    "calculate_content_hash",
    "utc_now",
    "format_timestamp",
    "format_file_size",
    "sanitize_filename",
    "guess_mime_type",
    "media_kind_for",
]

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.gif', '.webp', '.bmp', '.tiff'}
VIDEO_EXTENSIONS = {'.mp4', '.avi', '.mov', '.webm', '.mkv', '.flv', '.wmv'}


def new_session_id() -> str:
    """Generate a new unique workflow session ID."""
    return str(uuid.uuid4())


def calculate_content_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Calculate hash of raw content for binding a record to its payload."""
    hash_obj = hashlib.new(algorithm)
    # Hash in chunks so large payloads don't need a second full copy
    for start in range(0, len(data), 8192):
        hash_obj.update(data[start:start + 8192])
    return hash_obj.hexdigest()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as fixed-width ISO-8601 UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    i = 0
    while size >= 1024 and i < len(size_names) - 1:
        size /= 1024.0
        i += 1

    return f"{size:.1f} {size_names[i]}"


def sanitize_filename(filename: Optional[str]) -> str:
    """Sanitize a client-supplied filename before it goes into a record."""
    if not filename:
        return "unnamed_file"

    # Drop any client-side directory components
    filename = os.path.basename(filename.replace("\\", "/"))

    # Keep only alphanumeric, dots, dashes, underscores
    sanitized = re.sub(r'[^\w\-_\.]', '_', filename)
    sanitized = re.sub(r'_{2,}', '_', sanitized)

    if sanitized.startswith('.'):
        sanitized = 'file_' + sanitized

    if len(sanitized) > 255:
        name, ext = os.path.splitext(sanitized)
        sanitized = name[:255 - len(ext)] + ext

    return sanitized or "unnamed_file"


def guess_mime_type(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type


def media_kind_for(mime_type: Optional[str], filename: Optional[str] = None) -> Optional[str]:
    """Return 'image' or 'video' for a media upload, or None if it is neither."""
    if mime_type:
        major = mime_type.split("/", 1)[0].lower()
        if major in ("image", "video"):
            return major

    if filename:
        ext = os.path.splitext(filename.lower())[1]
        if ext in IMAGE_EXTENSIONS:
            return "image"
        if ext in VIDEO_EXTENSIONS:
            return "video"

    return None
