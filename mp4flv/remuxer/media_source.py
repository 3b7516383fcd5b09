"""
Random-access byte source for box parsing and sample extraction.

The parser and the sample extractor only need absolute seeks plus
sequential reads. Each transport implements the ByteSource protocol;
FileSource covers local files and in-memory buffers.
"""

import logging
import os
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Protocol, runtime_checkable

from mp4flv.remuxer.errors import IoFailure

logger = logging.getLogger(__name__)


@runtime_checkable
class ByteSource(Protocol):
    """
    Protocol for seekable, big-endian-readable media sources.

    Implementations must provide:
    - size: total length in bytes
    - tell(): current absolute position
    - seek(): move to an absolute position
    - read_exact(): read exactly n bytes or raise IoFailure
    - read(): read up to n bytes (short at end of stream)
    - read_at(): seek then read_exact
    """

    @property
    def size(self) -> int:
        """Total source size in bytes."""
        ...

    def tell(self) -> int:
        ...

    def seek(self, offset: int) -> None:
        ...

    def read(self, n: int) -> bytes:
        ...

    def read_exact(self, n: int) -> bytes:
        ...

    def read_at(self, offset: int, n: int) -> bytes:
        ...


class FileSource:
    """
    ByteSource backed by a seekable binary file object.

    Works for ``open(path, "rb")`` handles and ``io.BytesIO`` alike. The
    source does not close the wrapped file; use :meth:`open` for a source
    that owns its handle.
    """

    def __init__(self, fileobj: BinaryIO) -> None:
        self._file = fileobj
        try:
            current = fileobj.tell()
            self._size = fileobj.seek(0, os.SEEK_END)
            fileobj.seek(current)
        except OSError as e:
            raise IoFailure(f"Source is not seekable: {e}") from e

    @classmethod
    @contextmanager
    def open(cls, path: str) -> Iterator["FileSource"]:
        """Open ``path`` for reading and close it when the block exits."""
        try:
            fileobj = open(path, "rb")
        except OSError as e:
            raise IoFailure(f"Cannot open {path}: {e}") from e
        try:
            source = cls(fileobj)
            logger.debug("[media_source] Opened %s (%d bytes)", path, source.size)
            yield source
        finally:
            fileobj.close()

    @property
    def size(self) -> int:
        return self._size

    def tell(self) -> int:
        try:
            return self._file.tell()
        except OSError as e:
            raise IoFailure(f"tell failed: {e}") from e

    def seek(self, offset: int) -> None:
        if offset < 0:
            raise IoFailure(f"Cannot seek to negative offset {offset}")
        try:
            self._file.seek(offset)
        except OSError as e:
            raise IoFailure(f"Seek to {offset} failed: {e}") from e

    def read(self, n: int) -> bytes:
        try:
            return self._file.read(n)
        except OSError as e:
            raise IoFailure(f"Read of {n} bytes failed: {e}") from e

    def read_exact(self, n: int) -> bytes:
        """Read exactly ``n`` bytes from the current position."""
        position = self.tell()
        data = self.read(n)
        if len(data) != n:
            raise IoFailure(f"Short read at {position}: expected {n} bytes, got {len(data)}")
        return data

    def read_at(self, offset: int, n: int) -> bytes:
        """Seek to ``offset`` and read exactly ``n`` bytes."""
        self.seek(offset)
        return self.read_exact(n)
