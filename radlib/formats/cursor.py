# radlib/formats/cursor.py
from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Optional, Union

from radlib.errors import CorruptRecord, ReleasedBufferError, ShortRead
from radlib.formats.schema import TagSchema
from radlib.models.header import FileHeader
from radlib.models.record import FlagLayout, Mapping, Record, flag_layout
from radlib.utils.varint import ByteCursor, put_uleb

if TYPE_CHECKING:
    from radlib.formats.chunk import Chunk

__all__ = [
    "RecordContext",
    "RecordCursor",
    "RecordView",
    "read_record",
    "skip_record",
    "write_record",
]

# Record := barcode(barcode_len B) umi(umi_len B) flags(1B)
#           mapping_count(varint) (ref_id(varint) label(1B))[mapping_count]
#           record_tag_value[...]

# =========================
# Per-stream record layout
# =========================

@dataclass(frozen=True, slots=True)
class RecordContext:
    """Everything record decoding needs from the FileHeader, resolved once per chunk."""
    barcode_len: int
    umi_len: int
    ref_count: int
    layout: FlagLayout
    lenient: bool
    schema: TagSchema

    @classmethod
    def from_header(cls, header: FileHeader) -> "RecordContext":
        return cls(
            barcode_len=header.barcode_len,
            umi_len=header.umi_len,
            ref_count=header.ref_count,
            layout=flag_layout(header.version_major),
            lenient=header.is_newer_minor,
            schema=header.record_schema,
        )

    @property
    def min_size(self) -> int:
        # barcode + umi + flags + a one-byte zero mapping count
        return self.barcode_len + self.umi_len + 2


def skip_record(cur: ByteCursor, ctx: RecordContext) -> None:
    """Structural walk over one record; raises ShortRead if it overruns the window."""
    cur.skip(ctx.barcode_len + ctx.umi_len + 1)
    for _ in range(cur.uleb()):
        cur.uleb()
        cur.skip(1)
    ctx.schema.skip_values(cur)


def read_record(cur: ByteCursor, ctx: RecordContext) -> tuple[memoryview, memoryview, int, list[Mapping], dict[str, Any]]:
    """
    Decode and validate one record. Barcode and UMI come back borrowed from
    the cursor's buffer; the caller decides whether to copy them.
    Raises CorruptRecord (offset set) for any malformed field.
    """
    start = cur.offset
    try:
        barcode = cur.take(ctx.barcode_len)
        umi = cur.take(ctx.umi_len)
        flags = cur.u8()
        problem = ctx.layout.check(flags, lenient=ctx.lenient)
        if problem:
            raise CorruptRecord(problem, offset=start)
        at = cur.offset
        n = cur.uleb()
        if n * 2 > cur.remaining:
            raise CorruptRecord(f"mapping count {n} cannot fit in the {cur.remaining} byte(s) left", offset=at)
        mappings: list[Mapping] = []
        for _ in range(n):
            at = cur.offset
            ref_id = cur.uleb()
            label = cur.u8()
            if ref_id >= ctx.ref_count:
                raise CorruptRecord(f"reference id {ref_id} outside table of {ctx.ref_count}", offset=at)
            problem = ctx.layout.check_label(label)
            if problem:
                raise CorruptRecord(problem, offset=at)
            mappings.append(Mapping(ref_id, label))
        at = cur.offset
        tags = ctx.schema.decode_values(cur)
    except ShortRead as exc:
        raise CorruptRecord(f"record runs past the end of its chunk: {exc}", offset=exc.offset) from None
    except UnicodeDecodeError:
        raise CorruptRecord("record tag string value is not valid UTF-8", offset=at) from None
    return barcode, umi, flags, mappings, tags


def write_record(rec: Union[Record, "RecordView"], ctx: RecordContext, out: bytearray) -> None:
    if isinstance(rec, RecordView):
        rec = rec.to_record()
    if len(rec.barcode) != ctx.barcode_len:
        raise ValueError(f"barcode {rec.barcode!r} has {len(rec.barcode)} bytes, header declares {ctx.barcode_len}")
    if len(rec.umi) != ctx.umi_len:
        raise ValueError(f"UMI {rec.umi!r} has {len(rec.umi)} bytes, header declares {ctx.umi_len}")
    problem = ctx.layout.check(rec.flags)
    if problem:
        raise ValueError(problem)
    out.extend(rec.barcode)
    out.extend(rec.umi)
    out.append(rec.flags)
    put_uleb(len(rec.mappings), out)
    for ref_id, label in rec.mappings:
        if not (0 <= ref_id < ctx.ref_count):
            raise ValueError(f"reference id {ref_id} outside table of {ctx.ref_count}")
        problem = ctx.layout.check_label(label)
        if problem:
            raise ValueError(problem)
        put_uleb(ref_id, out)
        out.append(label)
    ctx.schema.encode_values(rec.tags, out)

# =========================
# Zero-copy view
# =========================

class RecordView:
    """
    A record borrowed from its chunk's buffer. Barcode and UMI are memoryviews
    into the chunk; touching them after Chunk.release() raises
    ReleasedBufferError. Mappings and tags were validated when the cursor
    produced the view and are held as plain values.
    """
    __slots__ = ("_chunk", "index", "_start", "flags", "mappings", "tags")

    def __init__(self, chunk: "Chunk", index: int, start: int, flags: int,
                 mappings: list[Mapping], tags: dict[str, Any]) -> None:
        self._chunk = chunk
        self.index = index
        self._start = start
        self.flags = flags
        self.mappings = mappings
        self.tags = tags

    def _slice(self, rel: int, n: int) -> memoryview:
        if self._chunk.released:
            raise ReleasedBufferError(f"chunk {self._chunk.index} was released; record {self.index} is no longer valid")
        p = self._start + rel
        return self._chunk.buffer[p:p + n]

    @property
    def barcode(self) -> memoryview:
        return self._slice(0, self._chunk.header.barcode_len)

    @property
    def umi(self) -> memoryview:
        h = self._chunk.header
        return self._slice(h.barcode_len, h.umi_len)

    @property
    def valid(self) -> bool:
        return not self._chunk.released

    @property
    def is_reverse(self) -> bool:
        return self._chunk.layout.is_reverse(self.flags)

    @property
    def is_multimapped(self) -> bool:
        return self._chunk.layout.is_multimapped(self.flags)

    @property
    def usa_class(self):
        return self._chunk.layout.usa_class(self.flags)

    def to_record(self) -> Record:
        return Record(
            barcode=bytes(self.barcode),
            umi=bytes(self.umi),
            flags=self.flags,
            mappings=list(self.mappings),
            tags=dict(self.tags),
        )

    def __repr__(self) -> str:
        state = "live" if self.valid else "released"
        return f"<RecordView chunk={self._chunk.index} index={self.index} {state}>"

# =========================
# Cursor
# =========================

class RecordCursor(Iterator[Union[Record, RecordView]]):
    """
    Lazy, forward-only iterator over one chunk's records.

    Each record is decoded only when requested and the bytes behind it are
    never read again by this cursor. A malformed record fails the cursor: the
    same CorruptRecord is raised on every later call. Exhausted cursors stay
    exhausted; ask the chunk for a fresh one to start over.
    """

    def __init__(self, chunk: "Chunk", *, borrow: bool = False) -> None:
        self._chunk = chunk
        self._borrow = borrow
        self._cur = ByteCursor(chunk.buffer, 0, chunk.byte_length, base=chunk.body_offset)
        self._next = 0
        self._error: Optional[CorruptRecord] = None

    @property
    def position(self) -> int:
        """Index of the next record to be produced."""
        return self._next

    @property
    def exhausted(self) -> bool:
        return self._next >= self._chunk.record_count

    def __iter__(self) -> "RecordCursor":
        return self

    def __next__(self) -> Union[Record, RecordView]:
        if self._error is not None:
            raise self._error
        if self._next >= self._chunk.record_count:
            raise StopIteration
        if self._chunk.released:
            raise ReleasedBufferError(f"chunk {self._chunk.index} was released")
        idx = self._next
        start = self._cur.pos
        try:
            barcode, umi, flags, mappings, tags = read_record(self._cur, self._chunk.context)
        except CorruptRecord as exc:
            self._error = exc.with_context(chunk_index=self._chunk.index, record_index=idx)
            raise self._error
        self._next += 1
        if self._borrow:
            return RecordView(self._chunk, idx, start, flags, mappings, tags)
        return Record(bytes(barcode), bytes(umi), flags, mappings, tags)
