"""
File Insight

A short descriptive annotation for a completed transfer, produced by an
external asynchronous service keyed by (name, mime type, size). The
lookup runs after a transfer is already COMPLETED; whatever it does, the
caller gets a string back.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

InsightLookup = Callable[[str, str, int], Awaitable[str]]

FALLBACK_INSIGHT = "File processed successfully."
EMPTY_INSIGHT = "Standard file transfer."

_CATEGORIES = {
    'image': "Image",
    'video': "Video",
    'audio': "Audio recording",
    'text': "Text document",
    'font': "Font file",
}

_APPLICATION_TYPES = {
    'application/pdf': "PDF document",
    'application/zip': "ZIP archive",
    'application/gzip': "Gzip-compressed archive",
    'application/json': "JSON data",
    'application/vnd.android.package-archive': "Android application package",
}


def format_size(size: int) -> str:
    """Format bytes as human-readable size."""
    value = float(size)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if value < 1024:
            return f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} PB"


async def mimetype_insight(name: str, mime_type: str, size: int) -> str:
    """Offline lookup: describe a file from its mime type alone."""
    kind = _APPLICATION_TYPES.get(mime_type)
    if kind is None:
        kind = _CATEGORIES.get(mime_type.split('/', 1)[0])
    if kind is None:
        return ""
    return f"{kind} ({format_size(size)})."


async def describe_file(lookup: Optional[InsightLookup], name: str, mime_type: str,
                        size: int, timeout: float = 15.0) -> str:
    """
    Run an insight lookup without ever raising.

    Returns:
        The lookup's text, EMPTY_INSIGHT if it returned nothing, or
        FALLBACK_INSIGHT on any failure or timeout
    """
    if lookup is None:
        return FALLBACK_INSIGHT

    try:
        text = await asyncio.wait_for(lookup(name, mime_type, size), timeout=timeout)
    except Exception as e:
        logger.warning(f"Insight lookup failed for {name}: {e}")
        return FALLBACK_INSIGHT

    if not isinstance(text, str) or not text.strip():
        return EMPTY_INSIGHT
    return text.strip()
