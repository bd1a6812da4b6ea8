# tests/utils/test_varint_cursor.py
import io
import struct

import pytest

from radlib.errors import ShortRead
from radlib.utils.sources import ByteSource, iter_lines, open_binary_sink
from radlib.utils.varint import ByteCursor, get_uleb, put_uleb

# ---------- ULEB128 ----------

@pytest.mark.parametrize("value, encoded", [
    (0, b"\x00"),
    (1, b"\x01"),
    (127, b"\x7f"),
    (128, b"\x80\x01"),
    (300, b"\xac\x02"),
    (16384, b"\x80\x80\x01"),
])
def test_uleb_known_encodings(value, encoded):
    out = bytearray()
    put_uleb(value, out)
    assert bytes(out) == encoded
    assert get_uleb(encoded, 0) == (value, len(encoded))

def test_put_uleb_rejects_negative():
    with pytest.raises(ValueError):
        put_uleb(-1, bytearray())

def test_get_uleb_short_read_reports_offset():
    with pytest.raises(ShortRead) as ei:
        get_uleb(b"\x00\x80\x80", 1)
    assert ei.value.offset == 1

# ---------- ByteCursor ----------

def test_cursor_reads_and_tracks_absolute_offset():
    buf = b"\x05" + struct.pack("<H", 513) + b"xyz" + b"\xac\x02"
    cur = ByteCursor(buf, base=100)
    assert cur.u8() == 5
    assert cur.unpack(struct.Struct("<H")) == (513,)
    assert cur.offset == 103
    assert cur.read(3) == b"xyz"
    assert cur.uleb() == 300
    assert cur.at_end()
    assert cur.remaining == 0

def test_cursor_take_borrows():
    data = bytearray(b"abcdef")
    cur = ByteCursor(data)
    v = cur.take(3)
    data[0] = ord("z")
    assert bytes(v) == b"zbc"

def test_cursor_never_reads_past_window():
    cur = ByteCursor(b"abcdef", 1, 3, base=10)
    assert cur.read(2) == b"bc"
    with pytest.raises(ShortRead) as ei:
        cur.u8()
    assert ei.value.offset == 13
    assert ei.value.available == 0

def test_cursor_short_uleb_is_absolute():
    cur = ByteCursor(b"\x80\x80", base=50)
    with pytest.raises(ShortRead) as ei:
        cur.uleb()
    assert ei.value.offset == 50

def test_cursor_sub_splits_window():
    cur = ByteCursor(b"0123456789")
    child = cur.sub(4)
    assert child.read(4) == b"0123"
    assert child.at_end()
    assert cur.read(1) == b"4"

def test_cursor_invalid_window():
    with pytest.raises(ValueError):
        ByteCursor(b"abc", 2, 1)

# ---------- sources ----------

def test_byte_source_from_path_is_mapped(tmp_path):
    p = tmp_path / "x.bin"
    p.write_bytes(b"hello world")
    with ByteSource.open(p) as src:
        assert src.size == 11
        assert bytes(src.view(6, 5)) == b"world"
        assert bytes(src.view(6, 100)) == b"world"
        assert src.name == str(p)

def test_byte_source_from_file_objects(tmp_path):
    p = tmp_path / "x.bin"
    p.write_bytes(b"abc")
    with open(p, "rb") as fh:
        src = ByteSource.open(fh)
        assert bytes(src.view()) == b"abc"
        src.close()
    assert bytes(ByteSource.open(io.BytesIO(b"xyz")).view()) == b"xyz"

def test_byte_source_rejects_text_and_missing():
    with pytest.raises(TypeError):
        ByteSource.open(io.StringIO("nope"))
    with pytest.raises(FileNotFoundError):
        ByteSource.open("/definitely/not/here.rad")
    with pytest.raises(TypeError):
        ByteSource.open(42)

def test_iter_lines_reads_gzip_by_magic(tmp_path):
    import gzip
    p = tmp_path / "lines.txt"
    with gzip.open(p, "wt", encoding="utf-8") as fh:
        fh.write("a\nb\n")
    assert list(iter_lines(p)) == ["a\n", "b\n"]
    assert list(iter_lines("x\ny")) == ["x\n", "y"]
    assert list(iter_lines(["p\n"])) == ["p\n"]

def test_open_binary_sink_variants(tmp_path):
    with open_binary_sink(None) as out:
        out.write(b"abc")
        assert out.getvalue() == b"abc"
    p = tmp_path / "o.bin"
    with open_binary_sink(p) as out:
        out.write(b"xy")
    assert p.read_bytes() == b"xy"
    with pytest.raises(TypeError):
        with open_binary_sink(io.StringIO()):
            pass
