# radlib/formats/header.py
from __future__ import annotations

import logging
from typing import Union

from radlib.errors import BadMagic, ShortRead, TruncatedHeader, UnsupportedVersion
from radlib.formats.schema import TagSchema
from radlib.models.header import MAGIC, SUPPORTED_VERSION, FileHeader
from radlib.models.tags import TagScope
from radlib.utils.sources import ByteSource, Source
from radlib.utils.varint import ByteCursor, put_uleb

__all__ = ["parse", "read", "encode", "encode_into"]

logger = logging.getLogger(__name__)

# FileHeader := magic(4B) version_major(1B) version_minor(1B) flags(1B)
#               ref_count(varint) ref_name[ref_count]
#               barcode_len(1B) umi_len(1B)
#               file/chunk/record TagDefinition lists
#               file_tag_value[...]

# =========================
# Decoding
# =========================

def _check_magic(cur: ByteCursor) -> None:
    head = bytes(cur.buffer[cur.pos:min(cur.end, cur.pos + len(MAGIC))])
    if head != MAGIC[:len(head)]:
        raise BadMagic(f"expected {MAGIC!r}, found {head!r}", offset=cur.offset)
    if len(head) < len(MAGIC):
        raise TruncatedHeader(f"stream ends inside the magic ({len(head)} byte(s))", offset=cur.offset)
    cur.skip(len(MAGIC))


def _check_version(major: int, minor: int, at: int) -> bool:
    """Returns True when the stream is a newer minor version (forward-compatible)."""
    sup_major, sup_minor = SUPPORTED_VERSION
    if major != sup_major:
        raise UnsupportedVersion(
            f"format version {major}.{minor} is not readable (supported major version {sup_major})",
            offset=at,
        )
    if minor > sup_minor:
        logger.warning(
            "RAD stream declares version %d.%d, newer than supported %d.%d; unknown tags will be ignored",
            major, minor, sup_major, sup_minor,
        )
        return True
    return False


def read(cur: ByteCursor) -> FileHeader:
    """Parse the header at the cursor, leaving it positioned at the first chunk."""
    start = cur.offset
    _check_magic(cur)
    try:
        at = cur.offset
        major, minor, flags = cur.u8(), cur.u8(), cur.u8()
        newer = _check_version(major, minor, at)

        at = cur.offset
        ref_count = cur.uleb()
        # every name needs at least its length byte
        if ref_count > cur.remaining:
            raise TruncatedHeader(
                f"reference table declares {ref_count} name(s) but only {cur.remaining} byte(s) remain",
                offset=at,
            )
        ref_names = []
        for i in range(ref_count):
            at = cur.offset
            raw = cur.take(cur.uleb())
            try:
                ref_names.append(str(raw, "utf-8"))
            except UnicodeDecodeError:
                raise TruncatedHeader(f"reference name {i} is not valid UTF-8", offset=at) from None

        barcode_len, umi_len = cur.u8(), cur.u8()
    except ShortRead as exc:
        raise TruncatedHeader(f"header ends early: {exc}", offset=exc.offset) from None

    file_schema = TagSchema.parse(cur, TagScope.FILE, allow_unknown=newer)
    chunk_schema = TagSchema.parse(cur, TagScope.CHUNK, allow_unknown=newer)
    record_schema = TagSchema.parse(cur, TagScope.RECORD, allow_unknown=newer)

    try:
        at = cur.offset
        file_tags = file_schema.decode_values(cur)
    except ShortRead as exc:
        raise TruncatedHeader(f"file tag values end early: {exc}", offset=exc.offset) from None
    except UnicodeDecodeError:
        raise TruncatedHeader("file tag string value is not valid UTF-8", offset=at) from None

    header = FileHeader(
        ref_names=tuple(ref_names),
        barcode_len=barcode_len,
        umi_len=umi_len,
        flags=flags,
        version=(major, minor),
        file_schema=file_schema,
        chunk_schema=chunk_schema,
        record_schema=record_schema,
        file_tags=file_tags,
    )
    logger.debug(
        "parsed RAD header v%d.%d: %d reference(s), barcode %dB, UMI %dB, %d header byte(s)",
        major, minor, ref_count, barcode_len, umi_len, cur.offset - start,
    )
    return header


def parse(source: Union[Source, ByteCursor]) -> FileHeader:
    """
    Parse a FileHeader from bytes, a path, a binary stream or a positioned
    ByteCursor. Fails with BadMagic, UnsupportedVersion, TruncatedHeader, or
    a SchemaError from the tag definition lists.
    """
    if isinstance(source, ByteCursor):
        return read(source)
    src = ByteSource.open(source)
    try:
        return read(src.cursor())
    finally:
        if src is not source:
            src.close()

# =========================
# Encoding
# =========================

def encode_into(header: FileHeader, out: bytearray) -> None:
    out.extend(MAGIC)
    major, minor = header.version
    out.append(major & 0xFF)
    out.append(minor & 0xFF)
    out.append(header.flags & 0xFF)
    put_uleb(header.ref_count, out)
    for name in header.ref_names:
        b = name.encode("utf-8")
        put_uleb(len(b), out)
        out.extend(b)
    out.append(header.barcode_len)
    out.append(header.umi_len)
    header.file_schema.encode(out)
    header.chunk_schema.encode(out)
    header.record_schema.encode(out)
    header.file_schema.encode_values(header.file_tags, out)


def encode(header: FileHeader) -> bytes:
    out = bytearray()
    encode_into(header, out)
    return bytes(out)
