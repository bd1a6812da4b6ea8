# radlib/formats/bc_freq.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator, Optional, Union

from radlib.errors import BadMagic, CorruptRecord, LengthMismatch, ShortRead, TruncatedHeader
from radlib.formats.permit_list import PermitList, PermitListEntry
from radlib.utils.sources import ByteSource, Sink, Source, TextSource, iter_lines, open_binary_sink, open_text_sink
from radlib.utils.varint import put_uleb

if TYPE_CHECKING:
    from radlib.formats.cursor import RecordView
    from radlib.models.record import Record

__all__ = [
    "FrequencyTable",
    "MAGIC",
    "decode",
    "encode",
    "decode_text",
    "encode_text",
    "count_barcodes",
    "to_permit_list",
]

logger = logging.getLogger(__name__)

# Binary: "RBF\x01" barcode_len(1B) entry_count(varint) (barcode(barcode_len B) count(varint))[entry_count]
# Text:   barcode<TAB>count per line
# Both are written by descending count, ties by ascending barcode.

MAGIC = b"RBF\x01"


@dataclass
class FrequencyTable:
    """Barcode -> read count. Iteration and encoding use the canonical order."""
    barcode_len: int
    counts: dict[bytes, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not (0 <= self.barcode_len <= 0xFF):
            raise ValueError(f"barcode_len {self.barcode_len} does not fit one byte")
        self.counts = {(b.encode("ascii") if isinstance(b, str) else bytes(b)): int(n)
                       for b, n in self.counts.items()}

    def add(self, barcode: Union[bytes, bytearray, memoryview, str], n: int = 1) -> None:
        key = barcode.encode("ascii") if isinstance(barcode, str) else bytes(barcode)
        if len(key) != self.barcode_len:
            raise ValueError(f"barcode {key!r} is not {self.barcode_len} byte(s)")
        self.counts[key] = self.counts.get(key, 0) + n

    def ordered(self) -> list[tuple[bytes, int]]:
        return sorted(self.counts.items(), key=lambda kv: (-kv[1], kv[0]))

    def most_common(self, n: Optional[int] = None) -> list[tuple[bytes, int]]:
        items = self.ordered()
        return items if n is None else items[:n]

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def __getitem__(self, barcode: Union[bytes, str]) -> int:
        if isinstance(barcode, str):
            barcode = barcode.encode("ascii")
        return self.counts.get(barcode, 0)

    def __len__(self) -> int:
        return len(self.counts)

    def __iter__(self) -> Iterator[tuple[bytes, int]]:
        return iter(self.ordered())

    def _check(self) -> None:
        for b, n in self.counts.items():
            if len(b) != self.barcode_len:
                raise ValueError(f"barcode {b!r} is not {self.barcode_len} byte(s)")
            if n < 0:
                raise ValueError(f"barcode {b!r} has negative count {n}")

# =========================
# Binary codec
# =========================

def decode(source: Source) -> FrequencyTable:
    src = ByteSource.open(source)
    try:
        cur = src.cursor()
        head = bytes(src.view(0, len(MAGIC)))
        if head != MAGIC[:len(head)]:
            raise BadMagic(f"expected {MAGIC!r}, found {head!r}", offset=0)
        try:
            cur.skip(len(MAGIC))
            barcode_len = cur.u8()
            n = cur.uleb()
        except ShortRead as exc:
            raise TruncatedHeader(f"frequency table header ends early: {exc}", offset=exc.offset) from None
        table = FrequencyTable(barcode_len)
        for i in range(n):
            at = cur.offset
            try:
                barcode = cur.read(barcode_len)
                count = cur.uleb()
            except ShortRead as exc:
                raise CorruptRecord(f"entry ends early: {exc}", offset=exc.offset, entry_index=i) from None
            if barcode in table.counts:
                raise CorruptRecord(f"barcode {barcode!r} listed twice", offset=at, entry_index=i)
            table.counts[barcode] = count
        if not cur.at_end():
            raise LengthMismatch(f"{cur.remaining} byte(s) after the declared {n} entries", offset=cur.offset)
    finally:
        if src is not source:
            src.close()
    return table


def encode(table: FrequencyTable, *, sink: Sink = None) -> bytes:
    table._check()
    out = bytearray(MAGIC)
    out.append(table.barcode_len)
    put_uleb(len(table.counts), out)
    for barcode, count in table.ordered():
        out.extend(barcode)
        put_uleb(count, out)
    blob = bytes(out)
    if sink is not None:
        with open_binary_sink(sink) as fh:
            fh.write(blob)
    return blob

# =========================
# Text codec
# =========================

def decode_text(source: TextSource) -> FrequencyTable:
    table: Optional[FrequencyTable] = None
    for i, ln in enumerate(line for line in iter_lines(source) if line.strip()):
        parts = ln.rstrip("\r\n").split("\t")
        if len(parts) != 2:
            raise CorruptRecord(f"expected barcode and count, found {len(parts)} column(s)", entry_index=i)
        try:
            barcode = parts[0].encode("ascii")
            count = int(parts[1])
        except (UnicodeEncodeError, ValueError):
            raise CorruptRecord(f"malformed line {ln.rstrip()!r}", entry_index=i) from None
        if table is None:
            table = FrequencyTable(len(barcode))
        if len(barcode) != table.barcode_len:
            raise CorruptRecord(f"barcode {parts[0]!r} is not {table.barcode_len} characters", entry_index=i)
        if barcode in table.counts:
            raise CorruptRecord(f"barcode {parts[0]!r} listed twice", entry_index=i)
        if count < 0:
            raise CorruptRecord(f"count {count} is negative", entry_index=i)
        table.counts[barcode] = count
    return table if table is not None else FrequencyTable(0)


def encode_text(table: FrequencyTable, *, sink: Sink = None) -> str:
    table._check()
    text = "".join(f"{b.decode('ascii')}\t{n}\n" for b, n in table.ordered())
    if sink is not None:
        with open_text_sink(sink) as fh:
            fh.write(text)
    return text

# =========================
# Derivations
# =========================

def count_barcodes(records: Iterable[Union["Record", "RecordView"]], barcode_len: Optional[int] = None) -> FrequencyTable:
    """Reads per barcode over a record stream (e.g. RadReader.records())."""
    table: Optional[FrequencyTable] = None if barcode_len is None else FrequencyTable(barcode_len)
    for rec in records:
        barcode = bytes(rec.barcode)
        if table is None:
            table = FrequencyTable(len(barcode))
        table.add(barcode)
    return table if table is not None else FrequencyTable(0)


def to_permit_list(
    table: FrequencyTable,
    *,
    min_count: int = 1,
    top_n: Optional[int] = None,
    include_filtered: bool = False,
) -> PermitList:
    """
    Keep barcodes seen at least `min_count` times, at most `top_n` of them
    (in canonical order). Kept entries are marked retained; with
    `include_filtered` the rest are listed too, marked filtered.
    """
    if top_n is not None and top_n < 0:
        raise ValueError("top_n must be non-negative")
    entries: list[PermitListEntry] = []
    kept = 0
    for barcode, count in table.ordered():
        keep = count >= min_count and (top_n is None or kept < top_n)
        if keep:
            kept += 1
        if keep or include_filtered:
            entries.append(PermitListEntry(barcode, count, keep))
    logger.debug("permit list keeps %d of %d barcode(s) (min_count=%d, top_n=%s)",
                 kept, len(table), min_count, top_n)
    return PermitList(table.barcode_len, entries, with_counts=True, with_status=True)
