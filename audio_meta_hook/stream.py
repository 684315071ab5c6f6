from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from threading import Lock
from typing import BinaryIO, Optional, Union

from .models import AssetNotFound, InsufficientData, TransportError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

StreamSource = Union[str, Path, bytes, bytearray, memoryview, BinaryIO]


class AudioStreamHandle:
    """
    Sequential, forward-only view over a byte source.

    Reads never go backwards; `peek` keeps bytes in a small pushback buffer so
    container sniffing does not consume them. `abort` may be called from another
    thread while a read is blocked; the transport is cancelled and every later
    read returns end-of-stream instead of raising.
    """

    def __init__(
        self,
        raw: BinaryIO,
        *,
        size: Optional[int] = None,
        name: Optional[str] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self._raw = raw
        self.size = size
        self.name = name or getattr(raw, "name", None) or "<stream>"
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._lock = Lock()
        self._aborted = False
        self._closed = False
        self._released = False
        self._eof = False
        self._seekable = size is not None and _is_seekable(raw)
        self.position = 0
        self.bytes_read = 0

    def __enter__(self) -> "AudioStreamHandle":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exhausted(self) -> bool:
        return self._aborted or (self._eof and not self._buffer)

    def remaining(self) -> Optional[int]:
        if self.size is None:
            return None
        return max(self.size - self.position, 0)

    def read(self, max_bytes: int) -> bytes:
        if max_bytes <= 0 or self._aborted:
            return b""
        self._fill(max_bytes)
        data = bytes(self._buffer[:max_bytes])
        del self._buffer[:max_bytes]
        self.position += len(data)
        return data

    def read_exact(self, count: int) -> bytes:
        start = self.position
        data = self.read(count)
        if len(data) < count:
            raise InsufficientData(
                f"{self.name}: expected {count} bytes at offset {start}, got {len(data)}"
            )
        return data

    def peek(self, count: int) -> bytes:
        if count <= 0 or self._aborted:
            return b""
        self._fill(count)
        return bytes(self._buffer[:count])

    def skip(self, count: int) -> int:
        """Discard up to `count` bytes without buffering them; returns how many were skipped."""
        if count <= 0 or self._aborted:
            return 0
        skipped = min(count, len(self._buffer))
        del self._buffer[:skipped]
        remaining = count - skipped
        if remaining and self._seekable and self.size is not None:
            available = max(self.size - (self.position + skipped), 0)
            target = min(remaining, available)
            try:
                self._raw.seek(target, os.SEEK_CUR)
            except OSError as exc:
                if self._aborted:
                    return self._advance(skipped)
                raise TransportError(f"{self.name}: seek failed: {exc}") from exc
            skipped += target
            remaining = 0
            if target >= available:
                self._eof = True
        while remaining > 0:
            chunk = self._pull(min(remaining, self._chunk_size))
            if not chunk:
                break
            skipped += len(chunk)
            remaining -= len(chunk)
        return self._advance(skipped)

    def abort(self) -> None:
        with self._lock:
            if self._aborted or self._closed:
                return
            self._aborted = True
        logger.debug("Aborting %s after %d bytes", self.name, self.bytes_read)
        cancel = getattr(self._raw, "abort", None)
        if callable(cancel):
            try:
                cancel()
            except OSError as exc:
                logger.debug("Transport abort for %s failed: %s", self.name, exc)
            return
        self._release()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._release()

    def _advance(self, count: int) -> int:
        self.position += count
        return count

    def _fill(self, count: int) -> None:
        while len(self._buffer) < count:
            chunk = self._pull(count - len(self._buffer))
            if not chunk:
                break
            self._buffer += chunk

    def _pull(self, count: int) -> bytes:
        if self._aborted or self._closed or self._eof:
            return b""
        try:
            data = self._raw.read(count)
        except (OSError, ValueError) as exc:
            if self._aborted:
                # Aborting from another thread tears the transport down under the read.
                self._eof = True
                return b""
            if isinstance(exc, ValueError):
                raise
            raise TransportError(f"{self.name}: read failed: {exc}") from exc
        if not data:
            self._eof = True
            return b""
        self.bytes_read += len(data)
        return data

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            self._raw.close()
        except OSError as exc:
            logger.debug("Closing %s failed: %s", self.name, exc)


def open_stream(
    source: StreamSource,
    *,
    size: Optional[int] = None,
    name: Optional[str] = None,
) -> AudioStreamHandle:
    if isinstance(source, (str, Path)):
        path = Path(source)
        try:
            fh = path.open("rb")
        except FileNotFoundError as exc:
            raise AssetNotFound(f"{path} does not exist") from exc
        except OSError as exc:
            raise TransportError(f"cannot open {path}: {exc}") from exc
        file_size = os.fstat(fh.fileno()).st_size
        return AudioStreamHandle(fh, size=file_size, name=name or str(path))
    if isinstance(source, (bytes, bytearray, memoryview)):
        data = bytes(source)
        return AudioStreamHandle(io.BytesIO(data), size=len(data), name=name or "<bytes>")
    if not hasattr(source, "read"):
        raise TypeError(f"cannot open a stream over {type(source).__name__}")
    return AudioStreamHandle(source, size=size, name=name)


def _is_seekable(raw: object) -> bool:
    seekable = getattr(raw, "seekable", None)
    if not callable(seekable):
        return False
    try:
        return bool(seekable())
    except (OSError, ValueError):
        return False
