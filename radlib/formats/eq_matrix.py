# radlib/formats/eq_matrix.py
from __future__ import annotations

import os
import struct
from typing import Any, Optional, Union

import numpy as np
import scipy.io
import scipy.sparse

from radlib.errors import (
    BadMagic,
    CorruptRecord,
    DimensionMismatch,
    LengthMismatch,
    ShortRead,
    TruncatedHeader,
    UnsupportedVersion,
)
from radlib.utils.sources import ByteSource, Sink, Source, open_binary_sink
from radlib.utils.varint import put_uleb

__all__ = [
    "EqClassMatrix",
    "MAGIC",
    "VERSION",
    "decode",
    "encode",
    "read_mtx",
]

# Matrix := magic("REQM") version(1B) value_kind(1B) row_count(varint) col_count(varint)
#           entry_count(varint) (row(varint) col(varint) value)[entry_count]
# value is a varint (value_kind 0) or a little-endian float64 (value_kind 1).
# Entries are strictly increasing in (row, col).

MAGIC = b"REQM"
VERSION = 1

VALUE_INT = 0
VALUE_FLOAT = 1

_F64 = struct.Struct("<d")


class EqClassMatrix:
    """
    Sparse count matrix in coordinate form: row = equivalence class (or
    cell), column = reference, value = count. Arrays are kept in row-major
    order; indices are validated against the declared shape.
    """

    def __init__(self, n_rows: int, n_cols: int, rows: Any = (), cols: Any = (), values: Any = (),
                 *, dtype: Optional[Any] = None) -> None:
        if n_rows < 0 or n_cols < 0:
            raise ValueError(f"matrix dimensions must be non-negative, got {n_rows}x{n_cols}")
        self.n_rows = int(n_rows)
        self.n_cols = int(n_cols)
        self.rows = np.asarray(rows, dtype=np.int64)
        self.cols = np.asarray(cols, dtype=np.int64)
        if dtype is None:
            # an empty list carries no kind; counts are integers unless told otherwise
            sample = values if isinstance(values, np.ndarray) or len(values) else np.zeros(0, dtype=np.int64)
            dtype = np.float64 if np.issubdtype(np.asarray(sample).dtype, np.floating) else np.int64
        values = np.asarray(values)
        self.values = values.astype(dtype, copy=False)
        if not (self.rows.shape == self.cols.shape == self.values.shape) or self.rows.ndim != 1:
            raise ValueError("rows, cols and values must be 1-D arrays of equal length")
        bad = np.flatnonzero((self.rows < 0) | (self.rows >= self.n_rows) | (self.cols < 0) | (self.cols >= self.n_cols))
        if bad.size:
            i = int(bad[0])
            raise DimensionMismatch(
                f"entry ({self.rows[i]}, {self.cols[i]}) outside {self.n_rows}x{self.n_cols}", entry_index=i,
            )

    # ---- shape ----

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n_rows, self.n_cols)

    @property
    def nnz(self) -> int:
        return int(self.values.size)

    @property
    def value_kind(self) -> int:
        return VALUE_FLOAT if np.issubdtype(self.values.dtype, np.floating) else VALUE_INT

    def is_row_major(self) -> bool:
        if self.nnz < 2:
            return True
        key = self.rows * max(self.n_cols, 1) + self.cols
        return bool(np.all(np.diff(key) > 0))

    def sorted(self) -> "EqClassMatrix":
        """Row-major copy; duplicate coordinates are summed."""
        return EqClassMatrix.from_coo(self.to_coo())

    # ---- scipy interop ----

    def to_coo(self) -> scipy.sparse.coo_matrix:
        return scipy.sparse.coo_matrix((self.values, (self.rows, self.cols)), shape=self.shape)

    @classmethod
    def from_coo(cls, m: Any) -> "EqClassMatrix":
        coo = scipy.sparse.coo_matrix(m)
        coo.sum_duplicates()
        order = np.lexsort((coo.col, coo.row))
        return cls(coo.shape[0], coo.shape[1], coo.row[order], coo.col[order], coo.data[order])

    def to_dense(self) -> np.ndarray:
        return self.to_coo().toarray()

    def write_mtx(self, target: Union[str, os.PathLike], *, comment: str = "") -> None:
        """MatrixMarket coordinate file (1-based indices), via scipy.io.mmwrite."""
        field = "integer" if self.value_kind == VALUE_INT else "real"
        scipy.io.mmwrite(target, self.to_coo(), comment=comment, field=field)

    # ---- comparison ----

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EqClassMatrix):
            return NotImplemented
        return (
            self.shape == other.shape
            and self.value_kind == other.value_kind
            and np.array_equal(self.rows, other.rows)
            and np.array_equal(self.cols, other.cols)
            and np.array_equal(self.values, other.values)
        )

    def __repr__(self) -> str:
        kind = "float" if self.value_kind == VALUE_FLOAT else "int"
        return f"<EqClassMatrix {self.n_rows}x{self.n_cols} nnz={self.nnz} {kind}>"


def read_mtx(source: Union[str, os.PathLike]) -> EqClassMatrix:
    return EqClassMatrix.from_coo(scipy.io.mmread(source))

# =========================
# Binary codec
# =========================

def decode(source: Source) -> EqClassMatrix:
    """
    Parse a binary matrix. Short header -> TruncatedHeader; a short or
    out-of-order entry -> CorruptRecord; an index past the declared
    dimensions -> DimensionMismatch; bytes after the last entry -> LengthMismatch.
    """
    src = ByteSource.open(source)
    try:
        cur = src.cursor()
        head = bytes(src.view(0, len(MAGIC)))
        if head != MAGIC[:len(head)]:
            raise BadMagic(f"expected {MAGIC!r}, found {head!r}", offset=0)
        try:
            cur.skip(len(MAGIC))
            version = cur.u8()
            if version != VERSION:
                raise UnsupportedVersion(f"matrix format version {version} (supported {VERSION})", offset=4)
            kind = cur.u8()
            if kind not in (VALUE_INT, VALUE_FLOAT):
                raise CorruptRecord(f"unknown value kind {kind}", offset=5)
            n_rows, n_cols, n_entries = cur.uleb(), cur.uleb(), cur.uleb()
        except ShortRead as exc:
            raise TruncatedHeader(f"matrix header ends early: {exc}", offset=exc.offset) from None

        rows: list[int] = []
        cols: list[int] = []
        values: list = []
        prev = (-1, -1)
        for i in range(n_entries):
            at = cur.offset
            try:
                r, c = cur.uleb(), cur.uleb()
                v = cur.unpack(_F64)[0] if kind == VALUE_FLOAT else cur.uleb()
            except ShortRead as exc:
                raise CorruptRecord(f"entry ends early: {exc}", offset=exc.offset, entry_index=i) from None
            if r >= n_rows or c >= n_cols:
                raise DimensionMismatch(f"entry ({r}, {c}) outside {n_rows}x{n_cols}", offset=at, entry_index=i)
            if (r, c) <= prev:
                raise CorruptRecord(f"entry ({r}, {c}) is not after ({prev[0]}, {prev[1]}) in row-major order",
                                    offset=at, entry_index=i)
            prev = (r, c)
            rows.append(r)
            cols.append(c)
            values.append(v)
        if not cur.at_end():
            raise LengthMismatch(f"{cur.remaining} byte(s) after the last of {n_entries} entries", offset=cur.offset)
    finally:
        if src is not source:
            src.close()

    dtype = np.float64 if kind == VALUE_FLOAT else np.int64
    return EqClassMatrix(n_rows, n_cols, rows, cols, values, dtype=dtype)


def encode(matrix: EqClassMatrix, *, sink: Sink = None) -> bytes:
    """Binary matrix bytes (entries in row-major order); also written to `sink` when given."""
    if not matrix.is_row_major():
        matrix = matrix.sorted()
    kind = matrix.value_kind
    out = bytearray(MAGIC)
    out.append(VERSION)
    out.append(kind)
    put_uleb(matrix.n_rows, out)
    put_uleb(matrix.n_cols, out)
    put_uleb(matrix.nnz, out)
    for r, c, v in zip(matrix.rows.tolist(), matrix.cols.tolist(), matrix.values.tolist()):
        put_uleb(r, out)
        put_uleb(c, out)
        if kind == VALUE_FLOAT:
            out.extend(_F64.pack(v))
        else:
            put_uleb(v, out)
    blob = bytes(out)
    if sink is not None:
        with open_binary_sink(sink) as fh:
            fh.write(blob)
    return blob
