# radlib/formats/rad.py
from __future__ import annotations

import io
import logging
import os
from typing import Any, BinaryIO, Iterable, Iterator, Mapping, Optional, Sequence, Tuple, Union

from radlib.formats import chunk as chunk_codec
from radlib.formats import header as header_codec
from radlib.formats.chunk import Chunk, ChunkSpan
from radlib.formats.cursor import RecordView
from radlib.models.header import FileHeader
from radlib.models.record import Record
from radlib.utils.sources import ByteSource, Sink, Source, open_binary_sink

__all__ = [
    "RadReader",
    "RadWriter",
    "decode",
    "encode",
    "read_header",
    "iter_spans",
]

logger = logging.getLogger(__name__)

# Stream := FileHeader Chunk* <end of input>

ChunkInput = Union[
    Sequence[Union[Record, RecordView]],
    Tuple[Sequence[Union[Record, RecordView]], Optional[Mapping[str, Any]]],
]

# =========================
# Reader
# =========================

def iter_spans(src: ByteSource, header: FileHeader, first_offset: int) -> Iterator[ChunkSpan]:
    """
    Boundary scan: read only chunk frames to locate every chunk. Stops cleanly
    at end of input; a partial trailing chunk raises TruncatedChunk for its index.
    """
    cur = src.cursor(first_offset)
    index = 0
    while not cur.at_end():
        yield chunk_codec.scan(cur, header, index)
        index += 1


class RadReader:
    """
    Sequential reader over a whole RAD stream.

        with RadReader("reads.rad") as rd:
            for rec in rd.records():
                ...

    The header is parsed eagerly (fail fast on bad magic or version).
    With zero_copy=True chunks borrow from the mapped source; release them
    before closing the reader.
    """

    def __init__(self, source: Source, *, zero_copy: bool = False) -> None:
        self._owns_source = not isinstance(source, ByteSource)
        self._src = ByteSource.open(source)
        self.zero_copy = zero_copy
        try:
            cur = self._src.cursor()
            self.header = header_codec.read(cur)
        except BaseException:
            self.close()
            raise
        self.data_offset = cur.offset

    @property
    def source(self) -> ByteSource:
        return self._src

    def chunk_spans(self) -> Iterator[ChunkSpan]:
        return iter_spans(self._src, self.header, self.data_offset)

    def chunks(self) -> Iterator[Chunk]:
        cur = self._src.cursor(self.data_offset)
        index = 0
        while not cur.at_end():
            yield chunk_codec.decode(cur, self.header, index=index, zero_copy=self.zero_copy)
            index += 1

    def records(self) -> Iterator[Union[Record, RecordView]]:
        for ch in self.chunks():
            yield from ch.records()

    def __iter__(self) -> Iterator[Union[Record, RecordView]]:
        return self.records()

    def close(self) -> None:
        if self._owns_source:
            self._src.close()

    def __enter__(self) -> "RadReader":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def read_header(source: Source) -> FileHeader:
    return header_codec.parse(source)


def decode(source: Source, *, zero_copy: bool = False) -> Iterator[Union[Record, RecordView]]:
    """Stream every record of a RAD source in file order."""
    with RadReader(source, zero_copy=zero_copy) as rd:
        yield from rd.records()

# =========================
# Writer
# =========================

class _CountingWriter:
    """Wrap a binary sink to count bytes written without requiring .tell()."""
    def __init__(self, sink: BinaryIO):
        self._sink = sink
        self.count = 0
    def write(self, b: Union[bytes, bytearray, memoryview]) -> int:
        n = self._sink.write(b)
        self.count += len(b) if n is None else n
        return n
    def flush(self) -> None:
        if hasattr(self._sink, "flush"):
            self._sink.flush()


class RadWriter:
    """
    Incremental writer: the header goes out on construction, then one
    write_chunk() per chunk. Paths are opened (and closed) by the writer;
    file-like sinks are left open.
    """

    def __init__(self, sink: Union[str, os.PathLike, BinaryIO], header: FileHeader) -> None:
        if isinstance(sink, (str, os.PathLike)):
            self._fh: BinaryIO = open(sink, "wb")
            self._owns = True
        elif hasattr(sink, "write") and not isinstance(sink, io.TextIOBase):
            self._fh = sink
            self._owns = False
        else:
            raise TypeError("sink must be a path or binary file-like")
        self.header = header
        self._out = _CountingWriter(self._fh)
        self.chunks_written = 0
        self.records_written = 0
        self._out.write(header_codec.encode(header))

    @property
    def bytes_written(self) -> int:
        return self._out.count

    def write_chunk(self, records: Iterable[Union[Record, RecordView]], tags: Optional[Mapping[str, Any]] = None) -> int:
        recs = list(records)
        blob = chunk_codec.encode(recs, self.header, tags)
        self._out.write(blob)
        self.chunks_written += 1
        self.records_written += len(recs)
        return len(blob)

    def close(self) -> None:
        self._out.flush()
        if self._owns:
            self._fh.close()
        logger.debug("wrote %d chunk(s), %d record(s), %d byte(s)",
                     self.chunks_written, self.records_written, self.bytes_written)

    def __enter__(self) -> "RadWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _split_chunk(item: ChunkInput) -> tuple[Sequence[Union[Record, RecordView]], Optional[Mapping[str, Any]]]:
    # (records, tags) pairs vs. a bare sequence of records
    if isinstance(item, tuple) and len(item) == 2 and (item[1] is None or isinstance(item[1], Mapping)):
        return item[0], item[1]
    return item, None  # type: ignore[return-value]


def encode(header: FileHeader, chunks: Iterable[ChunkInput], *, sink: Sink = None) -> bytes:
    """
    Encode a whole stream. Each item of `chunks` is either a sequence of
    records or a (records, chunk_tags) pair. Returns the bytes when no sink is
    given, b"" otherwise.
    """
    with open_binary_sink(sink) as out:
        w = RadWriter(out, header)
        for item in chunks:
            records, tags = _split_chunk(item)
            w.write_chunk(records, tags)
        w.close()
        return out.getvalue() if sink is None else b""
