from pathlib import Path
import pytest

from radlib.formats import rad
from radlib.formats.schema import TagSchema
from radlib.models.header import FileHeader
from radlib.models.record import Record
from radlib.models.tags import TagScope, TagType

REFS = ("ENST0001", "ENST0002", "ENST0003", "ENST0004")

# Builders are handed out as fixtures so test modules (which are not a
# package) can share them.  E.g.
#
#   def test_something(make_header, make_record, make_stream):
#       h = make_header(record_tags=[("nh", TagType.U8)])
#       blob = make_stream(h, [[make_record(mappings=[0, 1], tags={"nh": 2})]])
#

def _header(
    *,
    refs=REFS,
    barcode_len=4,
    umi_len=3,
    flags=0,
    version=(1, 0),
    file_tags=(),
    chunk_tags=(),
    record_tags=(),
    file_values=None,
):
    return FileHeader(
        ref_names=refs,
        barcode_len=barcode_len,
        umi_len=umi_len,
        flags=flags,
        version=version,
        file_schema=TagSchema.of(TagScope.FILE, *file_tags),
        chunk_schema=TagSchema.of(TagScope.CHUNK, *chunk_tags),
        record_schema=TagSchema.of(TagScope.RECORD, *record_tags),
        file_tags=file_values or {},
    )


def _record(barcode="ACGT", umi="TTG", mappings=(), **kw):
    return Record.make(barcode, umi, mappings, **kw)


@pytest.fixture
def make_header():
    return _header


@pytest.fixture
def make_record():
    return _record


@pytest.fixture
def make_stream():
    def _make(header, chunks, sink=None):
        return rad.encode(header, chunks, sink=sink)
    return _make


@pytest.fixture
def tagged_header():
    """Header exercising every scope: a file tag, a chunk tag, three record tags."""
    return _header(
        file_tags=[("sample", TagType.STRING)],
        chunk_tags=[("chunk_id", TagType.U32)],
        record_tags=[("nh", TagType.U8), ("score", TagType.F32), ("cb_raw", TagType.VARBYTES, 1)],
        file_values={"sample": "pbmc_1k"},
    )


@pytest.fixture
def abc_chunks():
    """Two chunks: [A (2 mappings), B (0 mappings)] and [C (1 mapping)]."""
    a = _record("AAAA", "CCC", [0, 2])
    b = _record("CCCC", "GGG", [])
    c = _record("GGGG", "TTT", [(1, 1)], reverse=True)
    return [[a, b], [c]]


@pytest.fixture
def abc_stream(make_header, abc_chunks):
    h = make_header()
    return h, abc_chunks, rad.encode(h, abc_chunks)


@pytest.fixture
def many_chunks(make_header):
    """A seven-chunk stream with uneven chunk sizes and mapping counts."""
    h = make_header()
    bases = "ACGT"
    chunks = []
    n = 0
    for size in (3, 1, 0, 5, 2, 4, 1):
        recs = []
        for _ in range(size):
            bc = "".join(bases[(n >> s) & 3] for s in (0, 2, 4, 6))
            maps = [(n + k) % len(REFS) for k in range(n % 3)]
            recs.append(_record(bc, "AAC", maps, reverse=bool(n & 1)))
            n += 1
        chunks.append(recs)
    return h, chunks, rad.encode(h, chunks)


@pytest.fixture
def rad_file(tmp_path: Path, abc_stream) -> Path:
    p = tmp_path / "abc.rad"
    p.write_bytes(abc_stream[2])
    return p
