# tests/formats/test_tag_schema.py
import struct

import pytest

from radlib.errors import DuplicateTagName, RadError, SchemaTooShort, UnknownType
from radlib.formats import header as header_codec
from radlib.formats.schema import TagSchema, decode_value, encode_value, skip_value
from radlib.models.tags import LengthPrefix, TagDefinition, TagScope, TagType
from radlib.utils.varint import ByteCursor

def _parse(data, allow_unknown=False):
    return TagSchema.parse(ByteCursor(data), TagScope.RECORD, allow_unknown=allow_unknown)

# ---------- value codec ----------

@pytest.mark.parametrize("defn, value, encoded", [
    (TagDefinition("a", TagType.U8), 200, b"\xc8"),
    (TagDefinition("a", TagType.U16), 513, b"\x01\x02"),
    (TagDefinition("a", TagType.U32), 1 << 20, struct.pack("<I", 1 << 20)),
    (TagDefinition("a", TagType.U64), 1 << 40, struct.pack("<Q", 1 << 40)),
    (TagDefinition("a", TagType.I32), -5, struct.pack("<i", -5)),
    (TagDefinition("a", TagType.I64), -(1 << 40), struct.pack("<q", -(1 << 40))),
    (TagDefinition("a", TagType.F32), 0.5, struct.pack("<f", 0.5)),
    (TagDefinition("a", TagType.F64), 0.1, struct.pack("<d", 0.1)),
    (TagDefinition("a", TagType.BYTES, 3), b"abc", b"abc"),
    (TagDefinition("a", TagType.VARBYTES), b"xy", b"\x02xy"),
    (TagDefinition("a", TagType.VARBYTES, LengthPrefix.U8), b"xy", b"\x02xy"),
    (TagDefinition("a", TagType.VARBYTES, LengthPrefix.U16), b"xy", b"\x02\x00xy"),
    (TagDefinition("a", TagType.VARBYTES, LengthPrefix.U32), b"", b"\x00\x00\x00\x00"),
    (TagDefinition("a", TagType.STRING), "", b"\x00"),
    (TagDefinition("a", TagType.STRING, LengthPrefix.U8), "hé", b"\x03h\xc3\xa9"),
    (TagDefinition("a", TagType.STRING, LengthPrefix.U32), "hé", b"\x03\x00\x00\x00h\xc3\xa9"),
])
def test_value_codec(defn, value, encoded):
    out = bytearray()
    encode_value(defn, value, out)
    assert bytes(out) == encoded

    # a trailing byte must be left alone
    cur = ByteCursor(encoded + b"\xff")
    assert decode_value(defn, cur) == value
    assert cur.pos == len(encoded)

    cur = ByteCursor(encoded + b"\xff")
    skip_value(defn, cur)
    assert cur.pos == len(encoded)

def test_f32_values_decode_at_single_precision():
    d = TagDefinition("score", TagType.F32)
    out = bytearray()
    encode_value(d, 0.1, out)
    back = decode_value(d, ByteCursor(bytes(out)))
    assert back == struct.unpack("<f", struct.pack("<f", 0.1))[0]
    assert back != 0.1

@pytest.mark.parametrize("defn, value", [
    (TagDefinition("a", TagType.U8), 256),
    (TagDefinition("a", TagType.I32), 1 << 31),
    (TagDefinition("a", TagType.BYTES, 3), b"ab"),
    (TagDefinition("a", TagType.VARBYTES, LengthPrefix.U8), b"x" * 256),
    (TagDefinition("a", TagType.STRING, LengthPrefix.U16), "x" * 65536),
])
def test_encode_value_rejects_out_of_range(defn, value):
    with pytest.raises(ValueError):
        encode_value(defn, value, bytearray())

def test_string_value_must_be_str():
    with pytest.raises(TypeError):
        encode_value(TagDefinition("a", TagType.STRING), b"bytes", bytearray())

# ---------- definition lists ----------

def test_parse_definitions():
    s = _parse(b"\x02" + b"\x02nh\x01\x01" + b"\x02tx\x0b\x02")
    assert s.names == ("nh", "tx")
    assert s["tx"].length_prefix is LengthPrefix.U16

    out = bytearray()
    s.encode(out)
    assert _parse(bytes(out)) == s

def test_repeated_name_on_the_wire():
    with pytest.raises(DuplicateTagName) as ei:
        _parse(b"\x02" + b"\x01a\x01\x01" + b"\x01a\x02\x02")
    assert ei.value.offset == 0

@pytest.mark.parametrize("data", [
    b"\x05\x01a\x01\x01",        # five definitions declared, one present
    b"\x01\x03abc\x01",          # width missing
    b"\x01\x09ab\x01\x01",       # name runs past the end
])
def test_declared_layout_longer_than_input(data):
    with pytest.raises(SchemaTooShort):
        _parse(data)

def test_count_check_reports_list_start():
    data = b"\x00\x00" + b"\x05\x01a\x01\x01"
    cur = ByteCursor(data, pos=2)
    with pytest.raises(SchemaTooShort) as ei:
        TagSchema.parse(cur, TagScope.RECORD)
    assert ei.value.offset == 2

@pytest.mark.parametrize("code", [1, 0x2A])
@pytest.mark.parametrize("allow_unknown", [False, True])
def test_empty_tag_name_is_schema_error(code, allow_unknown):
    data = b"\x01\x00" + bytes([code]) + b"\x01\x00\x00"
    with pytest.raises(SchemaTooShort) as ei:
        _parse(data, allow_unknown)
    assert isinstance(ei.value, RadError)
    assert ei.value.offset == 1

def test_numeric_width_mismatch_is_unknown_type():
    with pytest.raises(UnknownType) as ei:
        _parse(b"\x01\x01a\x02\x04")
    assert ei.value.offset == 1

def test_unknown_code_becomes_hidden_opaque_field():
    s = _parse(b"\x02" + b"\x01z\x2a\x03" + b"\x01n\x01\x01", allow_unknown=True)
    assert s.names == ("n",)
    assert "z" not in s
    cur = ByteCursor(b"abc\x07")
    assert s.decode_values(cur) == {"n": 7}
    assert cur.at_end()

def test_empty_name_in_newer_minor_header(make_header):
    h = make_header(version=(1, 1), record_tags=[("nh", TagType.U8)])
    blob = header_codec.encode(h)
    assert blob.count(b"\x02nh\x01\x01") == 1
    with pytest.raises(SchemaTooShort):
        header_codec.parse(blob.replace(b"\x02nh\x01\x01", b"\x00\x2a\x01\x00\x00"))

# ---------- value maps ----------

def test_undeclared_file_tag_is_rejected(make_header):
    with pytest.raises(ValueError):
        make_header(file_tags=[("sample", TagType.STRING)], file_values={"sample": "s1", "bogus": 1})
    h = make_header(file_tags=[("sample", TagType.STRING)], file_values={"sample": "s1"})
    assert h.file_tags == {"sample": "s1"}

def test_normalize_orders_by_declaration():
    s = TagSchema.of(TagScope.FILE, ("a", TagType.U8), ("b", TagType.U8))
    assert list(s.normalize({"b": 1, "a": 2})) == ["a", "b"]
    with pytest.raises(ValueError):
        s.normalize({"c": 1})
