# radlib/utils/sources.py
from __future__ import annotations

import gzip
import io
import logging
import mmap
import os
from contextlib import contextmanager
from typing import BinaryIO, Iterator, Optional, Sequence, TextIO, Union

from radlib.utils.varint import ByteCursor

__all__ = [
    "ByteSource",
    "Source",
    "TextSource",
    "Sink",
    "iter_lines",
    "open_binary_sink",
    "open_text_sink",
]

PathLike = Union[str, os.PathLike]
Source = Union[PathLike, bytes, bytearray, memoryview, BinaryIO]
TextSource = Union[PathLike, TextIO, Sequence[str]]   # path | text blob | file-like | sequence of lines
Sink = Optional[Union[PathLike, BinaryIO, TextIO]]

GZIP_MAGIC = b"\x1f\x8b"

logger = logging.getLogger(__name__)


def _is_path(source: object) -> bool:
    return isinstance(source, os.PathLike) or (
        isinstance(source, str) and os.path.isfile(source)
    )


# =========================
# Binary sources
# =========================

class ByteSource:
    """
    Read-only random-access view of a whole byte stream.

    Paths (and binary files that expose a real descriptor) are memory mapped,
    so workers can slice disjoint chunk ranges without copying the file.
    In-memory buffers are wrapped as-is. Anything else with .read() is read fully.
    """

    def __init__(self, data: Union[bytes, bytearray, memoryview, mmap.mmap], *, name: Optional[str] = None) -> None:
        self._backing = data
        self._view = memoryview(data)
        self.name = name or "<memory>"

    @classmethod
    def open(cls, source: Source) -> "ByteSource":
        if isinstance(source, ByteSource):
            return source
        if isinstance(source, (bytes, bytearray, memoryview)):
            return cls(source)
        if isinstance(source, str) and not os.path.exists(source):
            raise FileNotFoundError(f"RAD source not found: {source!r}")
        if isinstance(source, (str, os.PathLike)):
            with open(source, "rb") as fh:
                return cls._from_file(fh, name=os.fspath(source))
        if hasattr(source, "read"):
            if isinstance(source, io.TextIOBase):
                raise TypeError("binary reader expects a binary stream, got text")
            return cls._from_file(source, name=getattr(source, "name", None))
        raise TypeError(f"unsupported byte source type {type(source).__name__}")

    @classmethod
    def _from_file(cls, fh: BinaryIO, *, name: Optional[str]) -> "ByteSource":
        try:
            fileno = fh.fileno()
        except (AttributeError, OSError, io.UnsupportedOperation):
            fileno = None
        if fileno is not None and os.fstat(fileno).st_size > 0 and fh.seekable() and fh.tell() == 0:
            return cls(mmap.mmap(fileno, 0, access=mmap.ACCESS_READ), name=name)
        data = fh.read()
        if isinstance(data, str):
            raise TypeError("binary reader expects a binary stream, got text")
        return cls(data, name=name if isinstance(name, str) else None)

    @property
    def size(self) -> int:
        return len(self._view)

    def view(self, offset: int = 0, length: Optional[int] = None) -> memoryview:
        """Borrow [offset, offset+length); clipped to the end of the source."""
        stop = self.size if length is None else min(self.size, offset + length)
        return self._view[offset:stop]

    def cursor(self, offset: int = 0) -> ByteCursor:
        return ByteCursor(self._view, offset)

    def close(self) -> None:
        self._view.release()
        if isinstance(self._backing, mmap.mmap):
            try:
                self._backing.close()
            except BufferError:
                # borrowed chunk views (or tracebacks holding them) are still alive;
                # the mapping is unmapped when the last of them is collected
                logger.debug("%s: mapping still referenced, deferring unmap", self.name)

    def __enter__(self) -> "ByteSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


# =========================
# Text sources
# =========================

def _open_text_path(path: PathLike) -> TextIO:
    with open(path, "rb") as fh:
        gz = fh.read(2) == GZIP_MAGIC
    if gz:
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


def iter_lines(source: TextSource) -> Iterator[str]:
    """
    Yield lines (newline kept) from:
      - path (str or PathLike to an existing file; gzip detected by magic),
      - text blob (str that is not an existing path),
      - file-like (TextIO),
      - sequence[str]
    """
    if _is_path(source):
        with _open_text_path(source) as f:  # type: ignore[arg-type]
            yield from f
    elif isinstance(source, str):
        yield from io.StringIO(source)
    elif hasattr(source, "read"):
        for line in source:  # type: ignore[union-attr]
            if isinstance(line, bytes):
                raise TypeError("text reader expects a text stream, got bytes")
            yield line
    else:
        yield from source  # type: ignore[misc]


# =========================
# Sinks
# =========================

@contextmanager
def open_binary_sink(sink: Sink) -> Iterator[BinaryIO]:
    """
    Yields a binary writer: BytesIO when sink is None, a file opened for a path
    (closed on exit), or the caller's own stream (left open).
    """
    if sink is None:
        yield io.BytesIO()
    elif isinstance(sink, (str, os.PathLike)):
        with open(sink, "wb") as out:
            yield out
    elif hasattr(sink, "write"):
        if isinstance(sink, io.TextIOBase):
            raise TypeError("binary writer expects a binary stream, got text")
        yield sink  # type: ignore[misc]
    else:
        raise TypeError("sink must be a path or binary file-like")


@contextmanager
def open_text_sink(sink: Sink, *, compress: bool = False) -> Iterator[TextIO]:
    if sink is None:
        yield io.StringIO()
    elif isinstance(sink, (str, os.PathLike)):
        if compress or os.fspath(sink).endswith(".gz"):
            with gzip.open(sink, "wt", encoding="utf-8") as out:
                yield out
        else:
            with open(sink, "w", encoding="utf-8") as out:
                yield out
    elif hasattr(sink, "write"):
        yield sink  # type: ignore[misc]
    else:
        raise TypeError("sink must be a path or text file-like")
