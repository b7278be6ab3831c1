"""
Payload Sources

A source exposes a payload's name, size and mime type, and reads slices
at arbitrary offsets so a paused transfer resumes exactly where it left
off.
"""

import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import aiofiles

from ..config import CHUNK_SIZE

DEFAULT_MIME_TYPE = "application/octet-stream"


def get_chunk_count(size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Calculate number of chunks for a payload of given size."""
    return (size + chunk_size - 1) // chunk_size


def guess_mime_type(name: str) -> str:
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type or DEFAULT_MIME_TYPE


class PayloadSource(ABC):
    """Readable payload for an outbound transfer."""

    name: str
    size: int
    mime_type: str

    @abstractmethod
    async def read(self, offset: int, length: int) -> bytes:
        """Read up to `length` bytes starting at `offset`."""

    async def close(self):
        """Release any open handles."""


class BytesSource(PayloadSource):
    """Payload already in memory."""

    def __init__(self, name: str, data: bytes, mime_type: Optional[str] = None):
        self.name = name
        self.data = bytes(data)
        self.size = len(self.data)
        self.mime_type = mime_type or guess_mime_type(name)

    async def read(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]


class FileSource(PayloadSource):
    """
    Payload read from disk with aiofiles.

    The file is opened on first read and kept open until close().
    """

    def __init__(self, path: Path, mime_type: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"File not found: {self.path}")

        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.mime_type = mime_type or guess_mime_type(self.name)
        self._file = None

    async def read(self, offset: int, length: int) -> bytes:
        if self._file is None:
            self._file = await aiofiles.open(self.path, 'rb')
        await self._file.seek(offset)
        return await self._file.read(length)

    async def close(self):
        if self._file is not None:
            await self._file.close()
            self._file = None
