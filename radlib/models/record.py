# radlib/models/record.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable, NamedTuple, Optional, Union

__all__ = [
    "UsaClass",
    "Mapping",
    "FlagLayout",
    "FLAG_LAYOUTS",
    "flag_layout",
    "Record",
]


class UsaClass(enum.IntEnum):
    """Transcript-origin class of a read (or of one mapping) in USA mode."""
    SPLICED = 0
    UNSPLICED = 1
    AMBIGUOUS = 2
    UNKNOWN = 3


class Mapping(NamedTuple):
    """One (reference id, label) pair of a read's compatible mapping set."""
    ref_id: int
    label: int = 0

    @property
    def usa_class(self) -> UsaClass:
        return UsaClass(self.label)


# =========================
# Flag layouts
# =========================

@dataclass(frozen=True, slots=True)
class FlagLayout:
    """
    Bit layout of the per-record flag byte and the label range for one format
    major version. Looked up from FLAG_LAYOUTS; new major versions register
    their own layout rather than reinterpreting an old one.
    """
    major: int
    strand_bit: int = 0
    multimap_bit: int = 1
    usa_shift: int = 2
    usa_mask: int = 0b11
    reserved_mask: int = 0xF0
    max_label: int = 3

    def is_reverse(self, flags: int) -> bool:
        return bool(flags >> self.strand_bit & 1)

    def is_multimapped(self, flags: int) -> bool:
        return bool(flags >> self.multimap_bit & 1)

    def usa_class(self, flags: int) -> UsaClass:
        return UsaClass(flags >> self.usa_shift & self.usa_mask)

    def pack(self, *, reverse: bool = False, multimapped: bool = False,
             usa_class: Union[UsaClass, int] = UsaClass.SPLICED) -> int:
        usa = int(usa_class)
        if usa & ~self.usa_mask:
            raise ValueError(f"USA class {usa_class!r} does not fit the flag layout")
        return (int(reverse) << self.strand_bit) | (int(multimapped) << self.multimap_bit) | (usa << self.usa_shift)

    def check(self, flags: int, *, lenient: bool = False) -> Optional[str]:
        """Return a problem description for a flag byte, or None when it is valid."""
        if not (0 <= flags <= 0xFF):
            return f"flag value {flags} does not fit one byte"
        if not lenient and flags & self.reserved_mask:
            return f"reserved flag bits set (0x{flags & self.reserved_mask:02x})"
        return None

    def check_label(self, label: int) -> Optional[str]:
        if not (0 <= label <= self.max_label):
            return f"label {label} outside 0..{self.max_label}"
        return None


FLAG_LAYOUTS: dict[int, FlagLayout] = {
    1: FlagLayout(major=1),
}

def flag_layout(major: int) -> FlagLayout:
    try:
        return FLAG_LAYOUTS[major]
    except KeyError:
        raise ValueError(f"no record flag layout registered for format major version {major}") from None


_V1 = FLAG_LAYOUTS[1]

# =========================
# Record
# =========================

@dataclass(slots=True)
class Record:
    """
    One decoded read: fixed-width barcode and UMI, a flag byte, the ordered
    mapping set (its equivalence class) and any record-scope tag values.
    Owns its fields; nothing here points back into a chunk buffer.
    """
    barcode: bytes
    umi: bytes
    flags: int = 0
    mappings: list[Mapping] = field(default_factory=list)
    tags: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.barcode = bytes(self.barcode)
        self.umi = bytes(self.umi)
        self.mappings = [m if isinstance(m, Mapping) else Mapping(*m) for m in self.mappings]

    @classmethod
    def make(
        cls,
        barcode: Union[bytes, str],
        umi: Union[bytes, str],
        mappings: Iterable[Union[Mapping, tuple[int, int], int]] = (),
        *,
        reverse: bool = False,
        multimapped: Optional[bool] = None,
        usa_class: Union[UsaClass, int] = UsaClass.SPLICED,
        tags: Optional[dict[str, Any]] = None,
        layout: FlagLayout = _V1,
    ) -> "Record":
        """
        Build a record from friendly arguments: str barcodes are ASCII-encoded,
        bare ints in `mappings` get label 0, multimapped defaults to
        "more than one mapping".
        """
        maps = [Mapping(m, 0) if isinstance(m, int) else Mapping(*m) for m in mappings]
        if multimapped is None:
            multimapped = len(maps) > 1
        return cls(
            barcode=barcode.encode("ascii") if isinstance(barcode, str) else barcode,
            umi=umi.encode("ascii") if isinstance(umi, str) else umi,
            flags=layout.pack(reverse=reverse, multimapped=multimapped, usa_class=usa_class),
            mappings=maps,
            tags=dict(tags or {}),
        )

    # ---- flag accessors (format major version 1 layout) ----

    @property
    def is_reverse(self) -> bool:
        return _V1.is_reverse(self.flags)

    @property
    def is_multimapped(self) -> bool:
        return _V1.is_multimapped(self.flags)

    @property
    def usa_class(self) -> UsaClass:
        return _V1.usa_class(self.flags)

    # ---- equivalence class ----

    @property
    def ref_ids(self) -> tuple[int, ...]:
        return tuple(m.ref_id for m in self.mappings)

    def eq_class(self, *, with_labels: bool = False) -> tuple:
        """Hashable key of the mapping set: sorted, duplicates removed."""
        if with_labels:
            return tuple(sorted({(m.ref_id, m.label) for m in self.mappings}))
        return tuple(sorted(set(self.ref_ids)))
