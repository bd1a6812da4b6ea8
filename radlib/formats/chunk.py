# radlib/formats/chunk.py
from __future__ import annotations

from typing import Any, Iterable, Mapping, NamedTuple, Optional, Union

from radlib.errors import CorruptRecord, LengthMismatch, ReleasedBufferError, ShortRead, TruncatedChunk
from radlib.formats.cursor import RecordContext, RecordCursor, RecordView, read_record, skip_record, write_record
from radlib.models.header import FileHeader
from radlib.models.record import FlagLayout, Record
from radlib.utils.varint import ByteCursor, put_uleb

__all__ = [
    "Chunk",
    "ChunkSpan",
    "decode",
    "encode",
    "scan",
]

# Chunk := record_count(varint) byte_length(varint)
#          chunk_tag_value[...]
#          Record[record_count]          (byte_length bytes in total)


class ChunkSpan(NamedTuple):
    """Where one chunk sits in the stream, found without decoding its records."""
    index: int
    offset: int          # absolute offset of the chunk's first byte
    length: int          # frame + records, in bytes
    record_count: int

    @property
    def end(self) -> int:
        return self.offset + self.length

# =========================
# Chunk (the arena)
# =========================

class Chunk:
    """
    One decoded chunk: framing, chunk-scope tag values, and the record bytes.

    The records region is the arena. In copy mode it is a private bytes
    object; in zero-copy mode it is a memoryview into the source and the
    RecordViews handed out borrow from it until release().
    """
    __slots__ = (
        "index", "offset", "record_count", "byte_length", "tags", "header",
        "context", "zero_copy", "body_offset", "frame_length",
        "_buffer", "_record_offsets", "_released",
    )

    def __init__(
        self,
        *,
        index: int,
        offset: int,
        record_count: int,
        byte_length: int,
        tags: dict[str, Any],
        header: FileHeader,
        context: RecordContext,
        buffer: Union[bytes, memoryview],
        record_offsets: list[int],
        body_offset: int,
        zero_copy: bool,
    ) -> None:
        self.index = index
        self.offset = offset
        self.record_count = record_count
        self.byte_length = byte_length
        self.tags = tags
        self.header = header
        self.context = context
        self.zero_copy = zero_copy
        self.body_offset = body_offset
        self.frame_length = body_offset - offset
        self._buffer = memoryview(buffer)
        self._record_offsets = record_offsets
        self._released = False

    # ---- arena ----

    @property
    def released(self) -> bool:
        return self._released

    @property
    def buffer(self) -> memoryview:
        if self._released:
            raise ReleasedBufferError(f"chunk {self.index} was released")
        return self._buffer

    @property
    def layout(self) -> FlagLayout:
        return self.context.layout

    @property
    def encoded_length(self) -> int:
        return self.frame_length + self.byte_length

    def release(self) -> None:
        """Drop the record bytes. Borrowed RecordViews become invalid."""
        if not self._released:
            self._released = True
            self._buffer.release()

    # ---- records ----

    def records(self, borrow: Optional[bool] = None) -> RecordCursor:
        """A fresh cursor; borrow defaults to the chunk's zero_copy mode."""
        if self._released:
            raise ReleasedBufferError(f"chunk {self.index} was released")
        return RecordCursor(self, borrow=self.zero_copy if borrow is None else borrow)

    def record(self, i: int, *, borrow: Optional[bool] = None) -> Union[Record, RecordView]:
        """Random access through the record offset index built during decode."""
        if not (0 <= i < self.record_count):
            raise IndexError(f"record {i} out of range for chunk of {self.record_count}")
        start = self._record_offsets[i]
        end = self._record_offsets[i + 1] if i + 1 < self.record_count else self.byte_length
        cur = ByteCursor(self.buffer, start, end, base=self.body_offset)
        try:
            barcode, umi, flags, mappings, tags = read_record(cur, self.context)
        except CorruptRecord as exc:
            raise exc.with_context(chunk_index=self.index, record_index=i)
        if self.zero_copy if borrow is None else borrow:
            return RecordView(self, i, start, flags, mappings, tags)
        return Record(bytes(barcode), bytes(umi), flags, mappings, tags)

    def __iter__(self) -> RecordCursor:
        return self.records()

    def __len__(self) -> int:
        return self.record_count

    def __repr__(self) -> str:
        return (f"<Chunk index={self.index} offset={self.offset} records={self.record_count} "
                f"bytes={self.encoded_length}{' released' if self._released else ''}>")

# =========================
# Decoding
# =========================

def _as_cursor(source: Union[ByteCursor, bytes, bytearray, memoryview]) -> ByteCursor:
    if isinstance(source, ByteCursor):
        return source
    if isinstance(source, (bytes, bytearray, memoryview)):
        return ByteCursor(source)
    raise TypeError(f"chunk decode expects a ByteCursor or bytes-like, got {type(source).__name__}")


def _read_frame(cur: ByteCursor, header: FileHeader, index: int) -> tuple[int, int, dict[str, Any]]:
    start = cur.offset
    try:
        record_count = cur.uleb()
        byte_length = cur.uleb()
        at = cur.offset
        tags = header.chunk_schema.decode_values(cur)
    except ShortRead as exc:
        raise TruncatedChunk(f"chunk header ends early: {exc}", offset=exc.offset, chunk_index=index) from None
    except UnicodeDecodeError:
        raise TruncatedChunk("chunk tag string value is not valid UTF-8", offset=at, chunk_index=index) from None
    if byte_length > cur.remaining:
        raise TruncatedChunk(
            f"chunk declares {byte_length} byte(s) of records but only {cur.remaining} remain",
            offset=start, chunk_index=index,
        )
    return record_count, byte_length, tags


def _index_records(body: ByteCursor, record_count: int, ctx: RecordContext, index: int) -> list[int]:
    """Walk record boundaries without materializing records; checks the declared length."""
    if record_count * ctx.min_size > body.remaining:
        raise LengthMismatch(
            f"{record_count} record(s) need at least {record_count * ctx.min_size} byte(s), "
            f"chunk declares {body.remaining}",
            offset=body.offset, chunk_index=index,
        )
    offsets: list[int] = []
    for i in range(record_count):
        offsets.append(body.pos)
        try:
            skip_record(body, ctx)
        except ShortRead as exc:
            raise LengthMismatch(
                f"records overrun the declared chunk length: {exc}",
                offset=exc.offset, chunk_index=index, record_index=i,
            ) from None
    if body.remaining:
        raise LengthMismatch(
            f"{body.remaining} byte(s) left over after {record_count} record(s)",
            offset=body.offset, chunk_index=index,
        )
    return offsets


def decode(
    source: Union[ByteCursor, bytes, bytearray, memoryview],
    header: FileHeader,
    *,
    index: int = 0,
    zero_copy: bool = False,
) -> Chunk:
    """
    Decode one chunk at the cursor (record schema and chunk schema come from
    `header`). Fails with TruncatedChunk when the source cannot supply the
    declared bytes and LengthMismatch when the records do not exactly fill
    them; nothing partial is returned. On success the cursor sits just past
    the chunk.
    """
    cur = _as_cursor(source)
    offset = cur.offset
    record_count, byte_length, tags = _read_frame(cur, header, index)
    ctx = RecordContext.from_header(header)
    body_offset = cur.offset
    region = cur.buffer[cur.pos:cur.pos + byte_length]
    offsets = _index_records(ByteCursor(region, base=body_offset), record_count, ctx, index)
    cur.skip(byte_length)
    return Chunk(
        index=index,
        offset=offset,
        record_count=record_count,
        byte_length=byte_length,
        tags=tags,
        header=header,
        context=ctx,
        buffer=region if zero_copy else bytes(region),
        record_offsets=offsets,
        body_offset=body_offset,
        zero_copy=zero_copy,
    )


def scan(cur: ByteCursor, header: FileHeader, index: int = 0) -> ChunkSpan:
    """Locate the chunk at the cursor from its frame alone and skip past it."""
    offset = cur.offset
    record_count, byte_length, _ = _read_frame(cur, header, index)
    cur.skip(byte_length)
    return ChunkSpan(index, offset, cur.offset - offset, record_count)

# =========================
# Encoding
# =========================

def encode(
    records: Iterable[Union[Record, RecordView]],
    header: FileHeader,
    tags: Optional[Mapping[str, Any]] = None,
) -> bytes:
    """Encode records (plus chunk tag values) as one chunk; the inverse of decode."""
    ctx = RecordContext.from_header(header)
    body = bytearray()
    count = 0
    for rec in records:
        write_record(rec, ctx, body)
        count += 1
    out = bytearray()
    put_uleb(count, out)
    put_uleb(len(body), out)
    header.chunk_schema.encode_values(tags, out)
    out.extend(body)
    return bytes(out)
