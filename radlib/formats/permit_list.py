# radlib/formats/permit_list.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Iterator, Optional, Union

from radlib.errors import BadMagic, CorruptRecord, LengthMismatch, ShortRead, TruncatedHeader
from radlib.utils.sources import ByteSource, Sink, Source, TextSource, iter_lines, open_binary_sink, open_text_sink
from radlib.utils.varint import put_uleb

__all__ = [
    "PermitListEntry",
    "PermitList",
    "MAGIC",
    "decode",
    "encode",
    "decode_text",
    "encode_text",
]

# Binary:
#   [header] := "RPL\x01" flags(1B) barcode_len(1B) [entry_count(varint)]
#   entry    := barcode(barcode_len B) [count(varint)] [status(1B)]
# flags: bit0 counts present, bit1 status present, bit2 entry_count present.
# Without a header the stream is bare entries up to end of input.
#
# Text: barcode[<TAB>count[<TAB>retained|filtered]] per line.

MAGIC = b"RPL\x01"

FLAG_COUNTS = 0x01
FLAG_STATUS = 0x02
FLAG_ENTRY_COUNT = 0x04

STATUS_WORDS = {True: "retained", False: "filtered"}
_STATUS_BY_WORD = {v: k for k, v in STATUS_WORDS.items()}


@dataclass(slots=True)
class PermitListEntry:
    barcode: bytes
    count: Optional[int] = None
    retained: Optional[bool] = None

    def __post_init__(self) -> None:
        if isinstance(self.barcode, str):
            self.barcode = self.barcode.encode("ascii")
        else:
            self.barcode = bytes(self.barcode)


@dataclass
class PermitList:
    """
    Barcodes accepted for a sample, optionally with read counts and a
    retained/filtered status. The layout fields describe how the list is
    encoded so that writing a decoded list reproduces it exactly.
    """
    barcode_len: int
    entries: list[PermitListEntry] = field(default_factory=list)
    with_counts: bool = False
    with_status: bool = False
    has_header: bool = True
    declare_count: bool = True

    def __post_init__(self) -> None:
        if not (0 <= self.barcode_len <= 0xFF):
            raise ValueError(f"barcode_len {self.barcode_len} does not fit one byte")
        self.entries = [e if isinstance(e, PermitListEntry) else PermitListEntry(e) for e in self.entries]

    @classmethod
    def of(cls, barcodes: Iterable[Union[bytes, str]], **layout) -> "PermitList":
        entries = [PermitListEntry(b) for b in barcodes]
        return cls(len(entries[0].barcode) if entries else 0, entries, **layout)

    def barcodes(self, *, retained_only: bool = False) -> set[bytes]:
        return {e.barcode for e in self.entries if not retained_only or e.retained is not False}

    def __contains__(self, barcode: Union[bytes, str]) -> bool:
        if isinstance(barcode, str):
            barcode = barcode.encode("ascii")
        return any(e.barcode == barcode for e in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[PermitListEntry]:
        return iter(self.entries)

    def _check(self, e: PermitListEntry, i: int) -> None:
        if len(e.barcode) != self.barcode_len:
            raise ValueError(f"entry {i}: barcode {e.barcode!r} is not {self.barcode_len} byte(s)")
        if self.with_counts and (e.count is None or e.count < 0):
            raise ValueError(f"entry {i}: a non-negative count is required")
        if self.with_status and e.retained is None:
            raise ValueError(f"entry {i}: a retained/filtered status is required")

# =========================
# Binary codec
# =========================

def decode(
    source: Source,
    *,
    barcode_len: Optional[int] = None,
    with_counts: bool = False,
    with_status: bool = False,
    has_header: Optional[bool] = None,
) -> PermitList:
    """
    Read a binary permit list. A leading header overrides the keyword
    layout; a headerless stream needs `barcode_len` (and `with_counts` /
    `with_status` when those columns are present).

    `has_header=None` detects the header by its magic. Pass False for a
    headerless list whose first entry could read as the magic, or True to
    require the header (BadMagic when it is missing).
    """
    src = ByteSource.open(source)
    try:
        cur = src.cursor()
        found = bytes(src.view(0, len(MAGIC))) == MAGIC
        if has_header is None:
            has_header = found
        elif has_header and not found:
            raise BadMagic(f"permit list does not start with {MAGIC!r}", offset=0)
        entry_count = None
        if has_header:
            try:
                cur.skip(len(MAGIC))
                flags = cur.u8()
                barcode_len = cur.u8()
                if flags & FLAG_ENTRY_COUNT:
                    entry_count = cur.uleb()
            except ShortRead as exc:
                raise TruncatedHeader(f"permit list header ends early: {exc}", offset=exc.offset) from None
            with_counts = bool(flags & FLAG_COUNTS)
            with_status = bool(flags & FLAG_STATUS)
        elif barcode_len is None or barcode_len < 1:
            raise ValueError("a headerless permit list needs barcode_len >= 1")

        plist = PermitList(barcode_len, [], with_counts, with_status,
                           has_header=has_header, declare_count=entry_count is not None)
        if barcode_len == 0 and not (with_counts or with_status) and entry_count is None and not cur.at_end():
            raise CorruptRecord("zero-width entries cannot be delimited without an entry count", offset=cur.offset)
        i = 0
        while (i < entry_count) if entry_count is not None else not cur.at_end():
            at = cur.offset
            try:
                barcode = cur.read(barcode_len)
                count = cur.uleb() if with_counts else None
                status = cur.u8() if with_status else None
            except ShortRead as exc:
                raise CorruptRecord(f"entry ends early: {exc}", offset=exc.offset, entry_index=i) from None
            if status is not None and status > 1:
                raise CorruptRecord(f"status byte {status} is neither 0 nor 1", offset=at, entry_index=i)
            plist.entries.append(PermitListEntry(barcode, count, None if status is None else bool(status)))
            i += 1
        if not cur.at_end():
            raise LengthMismatch(f"{cur.remaining} byte(s) after the declared {entry_count} entries",
                                 offset=cur.offset)
    finally:
        if src is not source:
            src.close()
    return plist


def encode(plist: PermitList, *, sink: Sink = None) -> bytes:
    out = bytearray()
    if plist.has_header:
        out.extend(MAGIC)
        flags = (FLAG_COUNTS if plist.with_counts else 0) | (FLAG_STATUS if plist.with_status else 0)
        if plist.declare_count:
            flags |= FLAG_ENTRY_COUNT
        out.append(flags)
        out.append(plist.barcode_len)
        if plist.declare_count:
            put_uleb(len(plist.entries), out)
    elif plist.barcode_len < 1:
        raise ValueError("a headerless permit list needs barcode_len >= 1")
    for i, e in enumerate(plist.entries):
        plist._check(e, i)
        out.extend(e.barcode)
        if plist.with_counts:
            put_uleb(e.count, out)
        if plist.with_status:
            out.append(1 if e.retained else 0)
    blob = bytes(out)
    if sink is not None:
        with open_binary_sink(sink) as fh:
            fh.write(blob)
    return blob

# =========================
# Text codec
# =========================

def decode_text(source: TextSource) -> PermitList:
    """One barcode per line; the first line fixes the column set and barcode width."""
    plist: Optional[PermitList] = None
    ncols = 0
    for i, ln in enumerate(line for line in iter_lines(source) if line.strip()):
        fields = ln.rstrip("\r\n").split("\t")
        if plist is None:
            ncols = len(fields)
            if ncols > 3:
                raise CorruptRecord(f"expected at most 3 columns, found {ncols}", entry_index=i)
            plist = PermitList(len(fields[0]), [], with_counts=ncols >= 2, with_status=ncols == 3)
        if len(fields) != ncols:
            raise CorruptRecord(f"expected {ncols} column(s), found {len(fields)}", entry_index=i)
        try:
            barcode = fields[0].encode("ascii")
        except UnicodeEncodeError:
            raise CorruptRecord(f"barcode {fields[0]!r} is not ASCII", entry_index=i) from None
        if len(barcode) != plist.barcode_len:
            raise CorruptRecord(f"barcode {fields[0]!r} is not {plist.barcode_len} characters", entry_index=i)
        count = None
        if ncols >= 2:
            try:
                count = int(fields[1])
            except ValueError:
                raise CorruptRecord(f"count {fields[1]!r} is not an integer", entry_index=i) from None
            if count < 0:
                raise CorruptRecord(f"count {count} is negative", entry_index=i)
        retained = None
        if ncols == 3:
            if fields[2] not in _STATUS_BY_WORD:
                raise CorruptRecord(f"status {fields[2]!r} is neither retained nor filtered", entry_index=i)
            retained = _STATUS_BY_WORD[fields[2]]
        plist.entries.append(PermitListEntry(barcode, count, retained))
    return plist if plist is not None else PermitList(0)


def encode_text(plist: PermitList, *, sink: Sink = None) -> str:
    if plist.with_status and not plist.with_counts:
        raise ValueError("the text form carries a status column only after a count column")
    lines: list[str] = []
    for i, e in enumerate(plist.entries):
        plist._check(e, i)
        cols = [e.barcode.decode("ascii")]
        if plist.with_counts:
            cols.append(str(e.count))
        if plist.with_status:
            cols.append(STATUS_WORDS[bool(e.retained)])
        lines.append("\t".join(cols) + "\n")
    text = "".join(lines)
    if sink is not None:
        with open_text_sink(sink) as fh:
            fh.write(text)
    return text
