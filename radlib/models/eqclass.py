# radlib/models/eqclass.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, Iterator, NamedTuple, Optional, Sequence, Union

import numpy as np

from radlib.models.record import Record, UsaClass

if TYPE_CHECKING:
    from radlib.formats.cursor import RecordView
    from radlib.formats.eq_matrix import EqClassMatrix

__all__ = [
    "EqClass",
    "EqClassView",
    "EqClassList",
    "EqClassCountEntry",
    "EqClassCollection",
    "class_key",
]

# labels are USA classes when a matrix keeps them
N_LABELS = len(UsaClass)

# ===== packed equivalence classes (salmon-style: labels + weights + count) =====

@dataclass(slots=True)
class EqClass:
    labels: list[int]
    weights: list[float]
    count: int = 0

    def __post_init__(self) -> None:
        if len(self.labels) != len(self.weights):
            raise ValueError(f"{len(self.labels)} label(s) but {len(self.weights)} weight(s)")


class EqClassView(NamedTuple):
    labels: Sequence[int]
    weights: Sequence[float]
    count: int


class EqClassList:
    """
    All classes packed into three flat arrays plus an offset index:
    class i owns labels[offsets[i]:offsets[i+1]] (and the same weights).
    """

    def __init__(self) -> None:
        self.offsets: list[int] = [0]
        self.labels: list[int] = []
        self.weights: list[float] = []
        self.counts: list[int] = []

    def push(self, ec: Union[EqClass, EqClassView]) -> None:
        if len(ec.labels) != len(ec.weights):
            raise ValueError(f"{len(ec.labels)} label(s) but {len(ec.weights)} weight(s)")
        self.offsets.append(self.offsets[-1] + len(ec.labels))
        self.labels.extend(ec.labels)
        self.weights.extend(ec.weights)
        self.counts.append(ec.count)

    def get(self, i: int) -> Optional[EqClassView]:
        if not (0 <= i < len(self)):
            return None
        p, q = self.offsets[i], self.offsets[i + 1]
        return EqClassView(tuple(self.labels[p:q]), tuple(self.weights[p:q]), self.counts[i])

    def __getitem__(self, i: int) -> EqClassView:
        view = self.get(i)
        if view is None:
            raise IndexError(f"class {i} out of range for {len(self)} class(es)")
        return view

    def __len__(self) -> int:
        return len(self.offsets) - 1

    def __iter__(self) -> Iterator[EqClassView]:
        for i in range(len(self)):
            yield self[i]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EqClassList):
            return NotImplemented
        return (self.offsets, self.labels, self.weights, self.counts) == (
            other.offsets, other.labels, other.weights, other.counts)

    def to_arrays(self) -> dict[str, np.ndarray]:
        return {
            "offsets": np.asarray(self.offsets, dtype=np.int64),
            "labels": np.asarray(self.labels, dtype=np.int64),
            "weights": np.asarray(self.weights, dtype=np.float64),
            "counts": np.asarray(self.counts, dtype=np.int64),
        }

# ===== aggregation of RAD records into classes =====

def class_key(record: Union[Record, "RecordView"], *, with_labels: bool = False) -> tuple:
    """Sorted, de-duplicated mapping set: ref ids, or (ref id, label) pairs."""
    if with_labels:
        return tuple(sorted({(m.ref_id, m.label) for m in record.mappings}))
    return tuple(sorted({m.ref_id for m in record.mappings}))


@dataclass(slots=True)
class EqClassCountEntry:
    key: tuple
    count: int = 0

    @property
    def ref_ids(self) -> tuple[int, ...]:
        if self.key and isinstance(self.key[0], tuple):
            return tuple(dict.fromkeys(r for r, _ in self.key))
        return self.key


@dataclass
class EqClassCollection:
    """
    Counts of reads per equivalence class, classes in first-seen order.
    Records without mappings are tallied in `unmapped`.
    """
    ref_count: int
    with_labels: bool = False
    entries: list[EqClassCountEntry] = field(default_factory=list)
    unmapped: int = 0
    _index: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        for i, e in enumerate(self.entries):
            self._index[e.key] = i

    @classmethod
    def from_records(
        cls,
        records: Iterable[Union[Record, "RecordView"]],
        ref_count: int,
        *,
        with_labels: bool = False,
    ) -> "EqClassCollection":
        coll = cls(ref_count, with_labels)
        for rec in records:
            coll.add(rec)
        return coll

    def add(self, record: Union[Record, "RecordView"], count: int = 1) -> None:
        key = class_key(record, with_labels=self.with_labels)
        if not key:
            self.unmapped += count
            return
        for item in key:
            ref_id, label = item if self.with_labels else (item, 0)
            if not (0 <= ref_id < self.ref_count):
                raise ValueError(f"reference id {ref_id} outside table of {self.ref_count}")
            if not (0 <= label < N_LABELS):
                raise ValueError(f"label {label} outside 0..{N_LABELS - 1}")
        i = self._index.get(key)
        if i is None:
            self._index[key] = len(self.entries)
            self.entries.append(EqClassCountEntry(key, count))
        else:
            self.entries[i].count += count

    def merge(self, other: "EqClassCollection") -> None:
        """Fold another collection in (e.g. one built per chunk); keeps first-seen order."""
        if (other.ref_count, other.with_labels) != (self.ref_count, self.with_labels):
            raise ValueError("cannot merge collections built over different references or label modes")
        for e in other.entries:
            i = self._index.get(e.key)
            if i is None:
                self._index[e.key] = len(self.entries)
                self.entries.append(EqClassCountEntry(e.key, e.count))
            else:
                self.entries[i].count += e.count
        self.unmapped += other.unmapped

    def get(self, key: tuple) -> Optional[EqClassCountEntry]:
        i = self._index.get(tuple(key))
        return None if i is None else self.entries[i]

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[EqClassCountEntry]:
        return iter(self.entries)

    @property
    def total_reads(self) -> int:
        return sum(e.count for e in self.entries) + self.unmapped

    @property
    def n_cols(self) -> int:
        return self.ref_count * N_LABELS if self.with_labels else self.ref_count

    def column(self, ref_id: int, label: int = 0) -> int:
        # label-aware columns are laid out as one block of references per label
        return label * self.ref_count + ref_id if self.with_labels else ref_id

    def to_matrix(self) -> "EqClassMatrix":
        """row = class (first-seen order), column = reference, value = class count."""
        from radlib.formats.eq_matrix import EqClassMatrix

        rows: list[int] = []
        cols: list[int] = []
        values: list[int] = []
        for r, e in enumerate(self.entries):
            if self.with_labels:
                members = sorted({self.column(ref, label) for ref, label in e.key})
            else:
                members = list(e.key)
            rows.extend([r] * len(members))
            cols.extend(members)
            values.extend([e.count] * len(members))
        return EqClassMatrix(len(self.entries), self.n_cols, rows, cols,
                             np.asarray(values, dtype=np.int64), dtype=np.int64)
