# radlib/models/tags.py
from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional

__all__ = ["TagType", "TagScope", "LengthPrefix", "TagDefinition"]


class TagScope(enum.IntEnum):
    FILE = 0
    CHUNK = 1
    RECORD = 2


class LengthPrefix(enum.IntEnum):
    """Length-prefix encodings for variable-length tag values."""
    VARINT = 0
    U8 = 1
    U16 = 2
    U32 = 3

    @property
    def struct(self) -> Optional[struct.Struct]:
        return _PREFIX_STRUCTS[self]

    @property
    def max_length(self) -> Optional[int]:
        st = _PREFIX_STRUCTS[self]
        return None if st is None else (1 << (8 * st.size)) - 1


_PREFIX_STRUCTS = {
    LengthPrefix.VARINT: None,
    LengthPrefix.U8: struct.Struct("<B"),
    LengthPrefix.U16: struct.Struct("<H"),
    LengthPrefix.U32: struct.Struct("<I"),
}


class TagType(enum.IntEnum):
    """
    Wire type codes of tag values. Fixed types carry their byte width in the
    definition; VARBYTES/STRING carry the LengthPrefix code there instead.
    OPAQUE is never written: it stands for a type code this reader does not
    know, accepted only from newer-minor streams and skipped by width.
    """
    U8 = 1
    U16 = 2
    U32 = 3
    U64 = 4
    I32 = 5
    I64 = 6
    F32 = 7
    F64 = 8
    BYTES = 9
    VARBYTES = 10
    STRING = 11
    OPAQUE = 0xFF

    @property
    def struct(self) -> Optional[struct.Struct]:
        return _NUMERIC_STRUCTS.get(self)

    @property
    def is_numeric(self) -> bool:
        return self in _NUMERIC_STRUCTS

    @property
    def is_variable(self) -> bool:
        return self in (TagType.VARBYTES, TagType.STRING)


_NUMERIC_STRUCTS = {
    TagType.U8: struct.Struct("<B"),
    TagType.U16: struct.Struct("<H"),
    TagType.U32: struct.Struct("<I"),
    TagType.U64: struct.Struct("<Q"),
    TagType.I32: struct.Struct("<i"),
    TagType.I64: struct.Struct("<q"),
    TagType.F32: struct.Struct("<f"),
    TagType.F64: struct.Struct("<d"),
}


@dataclass(frozen=True, slots=True)
class TagDefinition:
    """
    One declared tag.

    width:
      numeric types -> natural byte width (filled in when omitted)
      BYTES         -> fixed value length
      VARBYTES/STRING -> LengthPrefix code of the value's length prefix
      OPAQUE        -> bytes to skip per value

    F32 values are stored at single precision, so a float that f32 cannot
    represent exactly (0.1) decodes as its nearest f32. Round trips compare
    equal only for f32-representable values; use F64 otherwise.
    """
    name: str
    type: TagType
    width: int = -1
    scope: TagScope = TagScope.RECORD

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("tag name must be non-empty")
        if self.width == -1:
            if self.type.is_numeric:
                object.__setattr__(self, "width", self.type.struct.size)
            elif self.type.is_variable:
                object.__setattr__(self, "width", int(LengthPrefix.VARINT))
            else:
                raise ValueError(f"tag {self.name!r}: {self.type.name} needs an explicit width")
        if self.type.is_numeric and self.width != self.type.struct.size:
            raise ValueError(f"tag {self.name!r}: {self.type.name} has width {self.type.struct.size}, got {self.width}")
        if self.type.is_variable:
            LengthPrefix(self.width)
        if self.width < 0:
            raise ValueError(f"tag {self.name!r}: negative width {self.width}")

    @property
    def fixed_size(self) -> Optional[int]:
        """Encoded value size in bytes, or None for length-prefixed values."""
        if self.type.is_variable:
            return None
        return self.width

    @property
    def length_prefix(self) -> Optional[LengthPrefix]:
        return LengthPrefix(self.width) if self.type.is_variable else None

    @property
    def ignored(self) -> bool:
        return self.type is TagType.OPAQUE
