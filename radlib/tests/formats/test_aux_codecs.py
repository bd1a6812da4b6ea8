# tests/formats/test_aux_codecs.py
import numpy as np
from numpy.testing import assert_array_equal
import pytest

from radlib.errors import (
    BadMagic,
    CorruptRecord,
    DimensionMismatch,
    LengthMismatch,
    TruncatedHeader,
    UnsupportedVersion,
)
from radlib.formats import bc_freq, eq_matrix, permit_list, rad
from radlib.formats.bc_freq import FrequencyTable
from radlib.formats.eq_matrix import EqClassMatrix
from radlib.formats.permit_list import PermitList, PermitListEntry
from radlib.models.eqclass import EqClassCollection

def _reqm(kind, n_rows, n_cols, entries, version=1):
    """Hand-built REQM bytes; entries are (row, col, value) with small ints."""
    out = bytearray(b"REQM") + bytes([version, kind, n_rows, n_cols, len(entries)])
    for r, c, v in entries:
        out += bytes([r, c, v])
    return bytes(out)

# ---------- equivalence-class matrix ----------

def test_collection_to_matrix(abc_stream):
    h, _, blob = abc_stream
    coll = EqClassCollection.from_records(rad.decode(blob), h.ref_count)
    assert coll.unmapped == 1
    assert coll.total_reads == 3
    m = coll.to_matrix()
    assert m.shape == (2, 4)
    assert_array_equal(m.rows, [0, 0, 1])
    assert_array_equal(m.cols, [0, 2, 1])
    assert_array_equal(m.values, [1, 1, 1])
    assert m.value_kind == eq_matrix.VALUE_INT

def test_labelled_columns_are_blocks_per_label(abc_stream):
    h, _, blob = abc_stream
    coll = EqClassCollection.from_records(rad.decode(blob), h.ref_count, with_labels=True)
    m = coll.to_matrix()
    assert m.n_cols == 4 * 4
    # C maps to reference 1 with label 1
    assert m.cols.tolist() == [0, 2, 1 * 4 + 1]

def test_matrix_binary_roundtrip(abc_stream):
    h, _, blob = abc_stream
    m = EqClassCollection.from_records(rad.decode(blob), h.ref_count).to_matrix()
    data = eq_matrix.encode(m)
    assert data[:4] == b"REQM"
    assert eq_matrix.decode(data) == m

def test_float_matrix_roundtrip(tmp_path):
    m = EqClassMatrix(2, 3, [0, 1], [2, 0], [0.5, 2.25])
    assert m.value_kind == eq_matrix.VALUE_FLOAT
    p = tmp_path / "m.reqm"
    eq_matrix.encode(m, sink=p)
    back = eq_matrix.decode(p)
    assert back == m
    assert back.values.dtype == np.float64

def test_unsorted_matrix_is_written_row_major():
    m = EqClassMatrix(2, 2, [1, 0, 0], [0, 1, 1], [3, 4, 1])
    assert not m.is_row_major()
    back = eq_matrix.decode(eq_matrix.encode(m))
    assert back.rows.tolist() == [0, 1]
    assert back.cols.tolist() == [1, 0]
    assert back.values.tolist() == [5, 3]

def test_empty_matrix_keeps_int_kind():
    m = EqClassMatrix(0, 4)
    assert m.value_kind == eq_matrix.VALUE_INT
    assert eq_matrix.decode(eq_matrix.encode(m)) == m

def test_matrix_rejects_out_of_range_entries():
    with pytest.raises(DimensionMismatch) as ei:
        EqClassMatrix(2, 2, [0, 1], [1, 2], [1, 1])
    assert ei.value.entry_index == 1
    with pytest.raises(ValueError):
        EqClassMatrix(2, 2, [0], [0, 1], [1])

def test_matrix_market_export(tmp_path, abc_stream):
    h, _, blob = abc_stream
    m = EqClassCollection.from_records(rad.decode(blob), h.ref_count).to_matrix()
    p = str(tmp_path / "classes.mtx")
    m.write_mtx(p, comment="abc")
    with open(p) as fh:
        assert fh.readline().startswith("%%MatrixMarket matrix coordinate integer")
    assert eq_matrix.read_mtx(p) == m
    assert m.to_dense().tolist() == [[1, 0, 1, 0], [0, 1, 0, 0]]

@pytest.mark.parametrize("data, err", [
    (b"MQER\x01\x00\x00\x00\x00", BadMagic),
    (b"RE", TruncatedHeader),
    (b"REQM\x01\x00\x02", TruncatedHeader),
    (_reqm(0, 2, 2, [], version=2), UnsupportedVersion),
    (_reqm(7, 2, 2, []), CorruptRecord),
    (_reqm(0, 2, 2, [(0, 0, 1)]) + b"\x00", LengthMismatch),
])
def test_matrix_decode_errors(data, err):
    with pytest.raises(err):
        eq_matrix.decode(data)

def test_matrix_entry_errors_carry_index():
    with pytest.raises(CorruptRecord) as ei:
        eq_matrix.decode(_reqm(0, 2, 3, [(1, 0, 5), (0, 2, 1)]))
    assert ei.value.entry_index == 1
    with pytest.raises(DimensionMismatch) as ei:
        eq_matrix.decode(_reqm(0, 2, 3, [(0, 0, 1), (2, 0, 1)]))
    assert ei.value.entry_index == 1
    with pytest.raises(CorruptRecord) as ei:
        eq_matrix.decode(_reqm(0, 2, 3, [(0, 0, 1), (1, 1, 1)])[:-2])
    assert ei.value.entry_index == 1

# ---------- permit lists ----------

def _plist():
    return PermitList(4, [
        PermitListEntry("AAAC", 120, True),
        PermitListEntry("GGTA", 3, False),
    ], with_counts=True, with_status=True)

def test_permit_list_binary_roundtrip():
    pl = _plist()
    blob = permit_list.encode(pl)
    assert blob[:4] == b"RPL\x01"
    back = permit_list.decode(blob)
    assert back == pl
    assert permit_list.encode(back) == blob
    assert back.barcodes(retained_only=True) == {b"AAAC"}
    assert "GGTA" in back

def test_headerless_permit_list():
    pl = PermitList.of(["ACGT", "TTGA"], has_header=False, declare_count=False)
    blob = permit_list.encode(pl)
    assert blob == b"ACGTTTGA"
    with pytest.raises(ValueError):
        permit_list.decode(blob)
    back = permit_list.decode(blob, barcode_len=4)
    assert back == pl

def test_headerless_list_that_starts_like_the_magic():
    pl = PermitList.of([b"RPL\x01", b"ACGT"], has_header=False, declare_count=False)
    blob = permit_list.encode(pl)
    assert blob[:4] == permit_list.MAGIC
    back = permit_list.decode(blob, barcode_len=4, has_header=False)
    assert back == pl
    assert not back.has_header

def test_required_header_missing():
    with pytest.raises(BadMagic):
        permit_list.decode(b"ACGTTTGA", barcode_len=4, has_header=True)

def test_header_without_entry_count_reads_to_end():
    pl = PermitList.of(["ACGT", "TTGA"], declare_count=False)
    back = permit_list.decode(permit_list.encode(pl))
    assert [e.barcode for e in back] == [b"ACGT", b"TTGA"]
    assert not back.declare_count

def test_permit_list_decode_errors():
    blob = bytearray(permit_list.encode(_plist()))
    with pytest.raises(TruncatedHeader):
        permit_list.decode(bytes(blob[:5]))
    with pytest.raises(LengthMismatch):
        permit_list.decode(bytes(blob) + b"\x00")
    with pytest.raises(CorruptRecord) as ei:
        permit_list.decode(bytes(blob[:-1]))
    assert ei.value.entry_index == 1
    blob[-1] = 2
    with pytest.raises(CorruptRecord) as ei:
        permit_list.decode(bytes(blob))
    assert ei.value.entry_index == 1

def test_permit_list_encode_checks_entries():
    with pytest.raises(ValueError):
        permit_list.encode(PermitList(4, ["ACG"]))
    with pytest.raises(ValueError):
        permit_list.encode(PermitList(4, [PermitListEntry("ACGT")], with_counts=True))

def test_permit_list_text_roundtrip(tmp_path):
    text = "AAAC\t120\tretained\nGGTA\t3\tfiltered\n"
    pl = permit_list.decode_text(text)
    assert pl.barcode_len == 4
    assert pl.with_counts and pl.with_status
    assert [(e.barcode, e.count, e.retained) for e in pl] == [(b"AAAC", 120, True), (b"GGTA", 3, False)]
    p = tmp_path / "permit.txt"
    assert permit_list.encode_text(pl, sink=p) == text
    assert p.read_text() == text

def test_permit_list_text_single_column():
    pl = permit_list.decode_text("ACGT\n\nTTGA\n")
    assert len(pl) == 2
    assert not pl.with_counts
    assert permit_list.encode_text(pl) == "ACGT\nTTGA\n"
    assert len(permit_list.decode_text("")) == 0

@pytest.mark.parametrize("text", [
    "ACGT\t3\nTTGA\n",
    "ACGT\nTTG\n",
    "ACGT\t3\nTTGA\tx\n",
    "ACGT\t3\tkept\n",
    "ACGT\t1\t2\t3\n",
])
def test_permit_list_text_errors(text):
    with pytest.raises(CorruptRecord):
        permit_list.decode_text(text)

def test_status_needs_counts_in_text():
    pl = PermitList(4, [PermitListEntry("ACGT", retained=True)], with_status=True)
    with pytest.raises(ValueError):
        permit_list.encode_text(pl)

# ---------- barcode frequencies ----------

def _table():
    return FrequencyTable(4, {"AAAA": 5, "CCCC": 5, "GGGG": 9, "TTTT": 1})

def test_frequency_order_and_lookup():
    t = _table()
    assert [b for b, _ in t] == [b"GGGG", b"AAAA", b"CCCC", b"TTTT"]
    assert t.most_common(1) == [(b"GGGG", 9)]
    assert t["ACGT"] == 0
    assert t.total == 20
    with pytest.raises(ValueError):
        t.add("ACG")

def test_count_barcodes_from_stream(many_chunks):
    h, chunks, blob = many_chunks
    t = bc_freq.count_barcodes(rad.decode(blob))
    assert t.barcode_len == h.barcode_len
    assert t.total == sum(len(c) for c in chunks)
    assert len(bc_freq.count_barcodes([], barcode_len=4)) == 0

def test_frequency_binary_roundtrip(tmp_path):
    t = _table()
    blob = bc_freq.encode(t)
    assert blob[:4] == b"RBF\x01"
    assert bc_freq.decode(blob) == t
    p = tmp_path / "freq.bin"
    bc_freq.encode(t, sink=p)
    assert bc_freq.decode(p) == t

def test_frequency_text_roundtrip():
    t = _table()
    text = bc_freq.encode_text(t)
    assert text.splitlines()[0] == "GGGG\t9"
    assert bc_freq.decode_text(text) == t

def test_frequency_decode_errors():
    with pytest.raises(BadMagic):
        bc_freq.decode(b"RPL\x01\x04\x00")
    with pytest.raises(TruncatedHeader):
        bc_freq.decode(b"RBF\x01")
    with pytest.raises(CorruptRecord) as ei:
        bc_freq.decode(b"RBF\x01\x04\x02AAAA\x01AAAA\x02")
    assert ei.value.entry_index == 1
    with pytest.raises(LengthMismatch):
        bc_freq.decode(b"RBF\x01\x04\x01AAAA\x01C")
    with pytest.raises(CorruptRecord):
        bc_freq.decode_text("AAAA\t1\nAAAA\t2\n")
    with pytest.raises(CorruptRecord):
        bc_freq.decode_text("AAAA\t-1\n")

def test_to_permit_list_thresholds():
    t = _table()
    pl = bc_freq.to_permit_list(t, min_count=2)
    assert [e.barcode for e in pl] == [b"GGGG", b"AAAA", b"CCCC"]
    assert all(e.retained for e in pl)

    pl = bc_freq.to_permit_list(t, top_n=2, include_filtered=True)
    assert [(e.barcode, e.retained) for e in pl] == [
        (b"GGGG", True), (b"AAAA", True), (b"CCCC", False), (b"TTTT", False),
    ]
    assert permit_list.decode(permit_list.encode(pl)) == pl
    with pytest.raises(ValueError):
        bc_freq.to_permit_list(t, top_n=-1)
