# radlib/formats/salmon.py
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field
from typing import Any, Iterator, Optional, Union

from radlib.errors import CorruptRecord, DimensionMismatch, TruncatedHeader
from radlib.models.eqclass import EqClass, EqClassList
from radlib.utils.sources import Sink, TextSource, iter_lines, open_text_sink

__all__ = [
    "SalmonEqClasses",
    "MetaInfo",
    "QuantEntry",
    "QUANT_COLUMNS",
    "decode_eq_classes",
    "encode_eq_classes",
    "decode_meta_info",
    "encode_meta_info",
    "decode_quant",
    "encode_quant",
]

# eq_classes.txt(.gz):
#   num_targets
#   num_eq_classes
#   target name                       x num_targets
#   n t_1 .. t_n w_1 .. w_n count     x num_eq_classes   (whitespace separated)

@dataclass
class SalmonEqClasses:
    targets: list[str] = field(default_factory=list)
    classes: EqClassList = field(default_factory=EqClassList)

    @property
    def ntarget(self) -> int:
        return len(self.targets)

    @property
    def neq(self) -> int:
        return len(self.classes)


def _next_line(lines: Iterator[str], what: str, i: Optional[int] = None) -> str:
    try:
        return next(lines).rstrip("\r\n")
    except StopIteration:
        if i is None:
            raise TruncatedHeader(f"eq_classes file ends before {what}") from None
        raise CorruptRecord(f"eq_classes file ends before {what}", entry_index=i) from None


def _header_int(lines: Iterator[str], what: str) -> int:
    raw = _next_line(lines, what)
    try:
        return int(raw)
    except ValueError:
        raise TruncatedHeader(f"{what} {raw!r} is not an integer") from None


def decode_eq_classes(source: TextSource) -> SalmonEqClasses:
    """Read eq_classes.txt; a .gz file is detected by its magic bytes."""
    lines = iter(iter_lines(source))
    ntarget = _header_int(lines, "the target count")
    neq = _header_int(lines, "the class count")
    out = SalmonEqClasses([_next_line(lines, f"target name {t}") for t in range(ntarget)])

    for i in range(neq):
        fields = _next_line(lines, f"class {i}", i).split()
        try:
            n = int(fields[0])
        except (IndexError, ValueError):
            raise CorruptRecord(f"class line {' '.join(fields)!r} lacks a target count", entry_index=i) from None
        if n < 1 or len(fields) != 2 * n + 2:
            raise CorruptRecord(f"class declares {n} target(s) but has {len(fields)} field(s)", entry_index=i)
        try:
            labels = [int(x) for x in fields[1:n + 1]]
            weights = [float(x) for x in fields[n + 1:2 * n + 1]]
            count = int(fields[-1])
        except (IndexError, ValueError):
            raise CorruptRecord(f"malformed class line {' '.join(fields)!r}", entry_index=i) from None
        bad = [t for t in labels if not (0 <= t < ntarget)]
        if bad:
            raise DimensionMismatch(f"target index {bad[0]} outside {ntarget} target(s)", entry_index=i)
        out.classes.push(EqClass(labels, weights, count))

    rest = [ln for ln in lines if ln.strip()]
    if rest:
        raise CorruptRecord(f"{len(rest)} line(s) after the declared {neq} class(es)", entry_index=neq)
    return out


def encode_eq_classes(ecs: SalmonEqClasses, *, sink: Sink = None, compress: bool = False) -> str:
    """Text of the file; written to `sink` (gzipped for .gz paths or compress=True) when given."""
    lines = [f"{ecs.ntarget}\n", f"{ecs.neq}\n"]
    lines.extend(f"{name}\n" for name in ecs.targets)
    for ec in ecs.classes:
        for t in ec.labels:
            if not (0 <= t < ecs.ntarget):
                raise ValueError(f"target index {t} outside {ecs.ntarget} target(s)")
        fields = [str(len(ec.labels))]
        fields.extend(str(t) for t in ec.labels)
        fields.extend(repr(float(w)) for w in ec.weights)
        fields.append(str(ec.count))
        lines.append(" ".join(fields) + "\n")
    text = "".join(lines)
    if sink is not None:
        with open_text_sink(sink, compress=compress) as fh:
            fh.write(text)
    return text

# =========================
# meta_info.json
# =========================

@dataclass
class MetaInfo:
    num_valid_targets: int = 0
    serialized_eq_classes: bool = False
    num_bootstraps: int = 0
    num_eq_classes: int = 0
    eq_class_properties: list[str] = field(default_factory=list)
    samp_type: str = "none"
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def eq_classes_gzipped(self) -> bool:
        return "gzipped" in self.eq_class_properties

    @property
    def eq_classes_name(self) -> str:
        return "eq_classes.txt.gz" if self.eq_classes_gzipped else "eq_classes.txt"


_META_FIELDS = ("num_valid_targets", "serialized_eq_classes", "num_bootstraps",
                "num_eq_classes", "eq_class_properties", "samp_type")


def decode_meta_info(source: Union[str, os.PathLike, bytes, Any]) -> MetaInfo:
    """meta_info.json from a path, a JSON string/bytes, or an open file. Unknown keys land in `extra`."""
    if isinstance(source, os.PathLike) or (isinstance(source, str) and os.path.isfile(source)):
        with open(source, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    elif isinstance(source, (str, bytes, bytearray)):
        data = json.loads(source)
    elif hasattr(source, "read"):
        data = json.load(source)
    else:
        raise TypeError("meta info source must be a path, JSON text, or a file-like")
    if not isinstance(data, dict):
        raise CorruptRecord("meta_info.json does not hold a JSON object")
    known = {k: data[k] for k in _META_FIELDS if k in data}
    extra = {k: v for k, v in data.items() if k not in _META_FIELDS}
    return MetaInfo(**known, extra=extra)


def encode_meta_info(meta: MetaInfo, *, sink: Sink = None) -> str:
    data = asdict(meta)
    data.update(data.pop("extra"))
    text = json.dumps(data, indent=4, sort_keys=True) + "\n"
    if sink is not None:
        with open_text_sink(sink) as fh:
            fh.write(text)
    return text

# =========================
# quant.sf
# =========================

QUANT_COLUMNS = ("Name", "Length", "EffectiveLength", "TPM", "NumReads")


@dataclass(slots=True)
class QuantEntry:
    len: int
    efflen: float
    tpm: float
    num_reads: float


def decode_quant(source: TextSource) -> dict[str, QuantEntry]:
    """quant.sf TSV keyed by transcript name; columns are located by header name."""
    lines = iter(iter_lines(source))
    try:
        header = next(lines).rstrip("\r\n").split("\t")
    except StopIteration:
        raise TruncatedHeader("quant.sf has no header line") from None
    missing = [c for c in QUANT_COLUMNS if c not in header]
    if missing:
        raise TruncatedHeader(f"quant.sf header lacks column(s) {', '.join(missing)}")
    col = {c: header.index(c) for c in QUANT_COLUMNS}

    quants: dict[str, QuantEntry] = {}
    for i, ln in enumerate(ln for ln in lines if ln.strip()):
        f = ln.rstrip("\r\n").split("\t")
        if len(f) != len(header):
            raise CorruptRecord(f"expected {len(header)} column(s), found {len(f)}", entry_index=i)
        try:
            quants[f[col["Name"]]] = QuantEntry(
                len=int(f[col["Length"]]),
                efflen=float(f[col["EffectiveLength"]]),
                tpm=float(f[col["TPM"]]),
                num_reads=float(f[col["NumReads"]]),
            )
        except ValueError as exc:
            raise CorruptRecord(f"malformed quant row: {exc}", entry_index=i) from None
    return quants


def encode_quant(quants: dict[str, QuantEntry], *, sink: Sink = None) -> str:
    lines = ["\t".join(QUANT_COLUMNS) + "\n"]
    for name, q in quants.items():
        lines.append(f"{name}\t{q.len}\t{q.efflen!r}\t{q.tpm!r}\t{q.num_reads!r}\n")
    text = "".join(lines)
    if sink is not None:
        with open_text_sink(sink) as fh:
            fh.write(text)
    return text
