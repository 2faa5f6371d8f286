"""Length-prefixed record framing and non-blocking transport adapters."""

from __future__ import annotations

import logging
import queue
import struct
import threading
from typing import BinaryIO, Optional

__all__ = ["write_frame", "read_frame", "EagerWriter", "EagerReader"]

logger = logging.getLogger(__name__)

# Big-endian uint32 byte count ahead of every record
_HEADER = struct.Struct(">I")

_CLOSE = object()


def write_frame(stream: BinaryIO, payload: bytes) -> None:
    """Write one length-prefixed record and flush."""
    stream.write(_HEADER.pack(len(payload)))
    stream.write(payload)
    stream.flush()


def _read_exact(stream: BinaryIO, size: int) -> Optional[bytes]:
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            return None
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_frame(stream: BinaryIO) -> Optional[bytes]:
    """
    Read one length-prefixed record.

    Returns:
        The payload, or None at end of stream

    Raises:
        EOFError: If the stream ends in the middle of a record
    """
    header = _read_exact(stream, _HEADER.size)
    if header is None:
        return None
    (size,) = _HEADER.unpack(header)
    payload = _read_exact(stream, size)
    if payload is None:
        raise EOFError(f"stream ended inside a {size}-byte record")
    return payload


class EagerWriter:
    """
    Buffers outgoing records in memory and writes them on a background thread.

    ``write`` never blocks on the transport. With ``maxsize > 0`` it blocks
    only once that many records are waiting, which bounds memory use.
    """

    def __init__(self, stream: BinaryIO, maxsize: int = 0, name: str = "eager-writer"):
        """
        Initialize the writer and start its thread.

        Args:
            stream: Binary stream to write frames to (closed by ``close``)
            maxsize: Maximum buffered records (0 = unbounded)
            name: Thread name
        """
        self.stream = stream
        self.error: Optional[BaseException] = None
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._thread = threading.Thread(target=self._drain, daemon=True, name=name)
        self._thread.start()

    def write(self, payload: bytes) -> None:
        """Queue one record for writing."""
        if self._closed:
            raise ValueError("write to closed EagerWriter")
        self._queue.put(payload)

    @property
    def pending(self) -> int:
        """Records buffered but not yet written."""
        return self._queue.qsize()

    def _drain(self) -> None:
        while True:
            payload = self._queue.get()
            if payload is _CLOSE:
                break
            if self.error is not None:
                continue  # keep consuming so producers never block
            try:
                write_frame(self.stream, payload)
            except (OSError, ValueError) as exc:
                self.error = exc
                logger.warning("Eager writer lost its transport: %s", exc)

    def close(self, timeout: Optional[float] = None) -> None:
        """Flush everything buffered, stop the thread and close the stream."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_CLOSE)
        self._thread.join(timeout)
        try:
            self.stream.close()
        except OSError as exc:
            logger.debug("Error closing eager writer stream: %s", exc)

    def __enter__(self) -> "EagerWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class EagerReader:
    """
    Drains a transport into an in-memory queue on a background thread.

    The transport never backs up even when nobody is calling ``get``.
    """

    def __init__(self, stream: BinaryIO, maxsize: int = 0, name: str = "eager-reader"):
        """
        Initialize the reader and start its thread.

        Args:
            stream: Binary stream to read frames from
            maxsize: Maximum buffered records (0 = unbounded)
            name: Thread name
        """
        self.stream = stream
        self.error: Optional[BaseException] = None
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._eof = False
        self._thread = threading.Thread(target=self._fill, daemon=True, name=name)
        self._thread.start()

    def _fill(self) -> None:
        try:
            while True:
                payload = read_frame(self.stream)
                if payload is None:
                    break
                self._queue.put(payload)
        except (OSError, ValueError, EOFError) as exc:
            self.error = exc
            logger.warning("Eager reader stopped early: %s", exc)
        finally:
            self._queue.put(_CLOSE)
            try:
                self.stream.close()
            except OSError as exc:
                logger.debug("Error closing eager reader stream: %s", exc)

    def get(self, block: bool = False, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Take the next buffered record.

        Args:
            block: Wait for a record if none is buffered
            timeout: Maximum wait when blocking

        Returns:
            The payload, or None if nothing is available (or the stream ended)
        """
        if self._eof:
            return None
        try:
            payload = self._queue.get(block=block, timeout=timeout)
        except queue.Empty:
            return None
        if payload is _CLOSE:
            self._eof = True
            return None
        return payload

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def finished(self) -> bool:
        """True once the stream ended and every record was taken."""
        return self._eof

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)
