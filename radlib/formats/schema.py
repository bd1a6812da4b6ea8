# radlib/formats/schema.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from radlib.errors import DuplicateTagName, SchemaTooShort, ShortRead, UnknownType
from radlib.models.tags import LengthPrefix, TagDefinition, TagScope, TagType
from radlib.utils.varint import ByteCursor, put_uleb

__all__ = [
    "TagSchema",
    "decode_value",
    "encode_value",
    "skip_value",
    "empty_schema",
]

logger = logging.getLogger(__name__)

# smallest possible encoded definition: 1-byte name length, 1-byte name, type, width
_MIN_DEF_SIZE = 4

# =========================
# Value codec
# =========================

def _read_length(defn: TagDefinition, cur: ByteCursor) -> int:
    prefix = LengthPrefix(defn.width)
    if prefix is LengthPrefix.VARINT:
        return cur.uleb()
    (n,) = cur.unpack(prefix.struct)
    return n

def decode_value(defn: TagDefinition, cur: ByteCursor) -> Any:
    """
    Decode one value of `defn` at the cursor, advancing by exactly its encoded
    size. Raises ShortRead when the cursor window is too short; callers
    translate that into their own error.
    """
    t = defn.type
    if t.is_numeric:
        (v,) = cur.unpack(t.struct)
        return v
    if t is TagType.BYTES:
        return cur.read(defn.width)
    if t is TagType.VARBYTES:
        return cur.read(_read_length(defn, cur))
    if t is TagType.STRING:
        raw = cur.take(_read_length(defn, cur))
        return str(raw, "utf-8")
    if t is TagType.OPAQUE:
        cur.skip(defn.width)
        return None
    raise UnknownType(f"no decoder for tag type {t!r} of {defn.name!r}")

def skip_value(defn: TagDefinition, cur: ByteCursor) -> None:
    if defn.type.is_variable:
        cur.skip(_read_length(defn, cur))
    else:
        cur.skip(defn.width)

def encode_value(defn: TagDefinition, value: Any, out: bytearray) -> None:
    t = defn.type
    if t.is_numeric:
        try:
            out.extend(t.struct.pack(value))
        except Exception as exc:  # struct.error / TypeError from the packer
            raise ValueError(f"tag {defn.name!r}: {value!r} does not fit {t.name}") from exc
        return
    if t is TagType.BYTES:
        b = bytes(value)
        if len(b) != defn.width:
            raise ValueError(f"tag {defn.name!r}: expected {defn.width} bytes, got {len(b)}")
        out.extend(b)
        return
    if t.is_variable:
        if t is TagType.STRING:
            if not isinstance(value, str):
                raise TypeError(f"tag {defn.name!r}: STRING value must be str, got {type(value).__name__}")
            b = value.encode("utf-8")
        else:
            b = bytes(value)
        prefix = LengthPrefix(defn.width)
        if prefix is LengthPrefix.VARINT:
            put_uleb(len(b), out)
        else:
            if len(b) > prefix.max_length:
                raise ValueError(f"tag {defn.name!r}: {len(b)} bytes exceed {prefix.name} length prefix")
            out.extend(prefix.struct.pack(len(b)))
        out.extend(b)
        return
    raise ValueError(f"tag {defn.name!r}: cannot encode values of type {t.name}")

# =========================
# Schema
# =========================

@dataclass(frozen=True)
class TagSchema:
    """
    Ordered tag definitions for one scope, built once at header-parse time
    and read-only afterwards.

    `layout` is the on-wire order including ignored (OPAQUE) tags;
    `definitions` is what callers see.
    """
    scope: TagScope
    layout: tuple[TagDefinition, ...] = ()
    _by_name: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        layout = tuple(self.layout)
        object.__setattr__(self, "layout", layout)
        for d in layout:
            if d.name in self._by_name:
                raise DuplicateTagName(f"tag {d.name!r} declared twice in {self.scope.name.lower()} scope")
            if d.scope is not self.scope:
                raise ValueError(f"tag {d.name!r} has scope {d.scope.name}, schema is {self.scope.name}")
            self._by_name[d.name] = d

    @classmethod
    def of(cls, scope: TagScope, *defs: tuple) -> "TagSchema":
        """TagSchema.of(TagScope.RECORD, ("nh", TagType.U8), ("tx", TagType.STRING, 2))"""
        return cls(scope, tuple(TagDefinition(d[0], d[1], *(d[2:] or (-1,)), scope=scope) for d in defs))

    # ---- introspection ----

    @property
    def definitions(self) -> tuple[TagDefinition, ...]:
        return tuple(d for d in self.layout if not d.ignored)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(d.name for d in self.definitions)

    def __len__(self) -> int:
        return len(self.definitions)

    def __iter__(self):
        return iter(self.definitions)

    def __contains__(self, name: object) -> bool:
        d = self._by_name.get(name)
        return d is not None and not d.ignored

    def __getitem__(self, name: str) -> TagDefinition:
        d = self._by_name[name]
        if d.ignored:
            raise KeyError(name)
        return d

    # ---- wire: definitions ----

    @classmethod
    def parse(cls, cur: ByteCursor, scope: TagScope, *, allow_unknown: bool = False) -> "TagSchema":
        """
        Read `count(varint) TagDefinition[count]` for one scope.

        Fails with SchemaTooShort when the declared layout needs more bytes than
        remain, UnknownType for an unrecognized type code (unless allow_unknown,
        in which case the tag becomes OPAQUE and is skipped), DuplicateTagName
        when a name repeats.
        A zero-length name is reported as SchemaTooShort, like an undecodable one.
        """
        start = cur.offset
        try:
            count = cur.uleb()
            if count * _MIN_DEF_SIZE > cur.remaining:
                raise SchemaTooShort(
                    f"{scope.name.lower()} schema declares {count} tag(s) but only {cur.remaining} byte(s) remain",
                    offset=start,
                )
            defs: list[TagDefinition] = []
            for _ in range(count):
                at = cur.offset
                name = str(cur.take(cur.uleb()), "utf-8")
                if not name:
                    raise SchemaTooShort(f"{scope.name.lower()} tag definition has an empty name", offset=at)
                code = cur.u8()
                width = cur.uleb()
                defs.append(cls._make_definition(name, code, width, scope, at, allow_unknown))
        except ShortRead as exc:
            raise SchemaTooShort(
                f"{scope.name.lower()} schema ends early: {exc}", offset=exc.offset
            ) from None
        except UnicodeDecodeError as exc:
            raise SchemaTooShort(f"tag name is not valid UTF-8: {exc.reason}", offset=start) from None
        try:
            return cls(scope, tuple(defs))
        except DuplicateTagName as exc:
            raise exc.with_context(offset=start)

    @staticmethod
    def _make_definition(name: str, code: int, width: int, scope: TagScope, at: int, allow_unknown: bool) -> TagDefinition:
        try:
            ttype = TagType(code)
            if ttype is TagType.OPAQUE:
                raise ValueError(code)
        except ValueError:
            if not allow_unknown:
                raise UnknownType(f"tag {name!r} has unknown type code {code}", offset=at) from None
            logger.debug("ignoring tag %r with unknown type code %d (%d byte(s) per value)", name, code, width)
            ttype = TagType.OPAQUE
        try:
            return TagDefinition(name, ttype, width, scope)
        except ValueError as exc:
            raise UnknownType(f"tag {name!r}: {exc}", offset=at) from None

    def encode(self, out: bytearray) -> None:
        """Write the visible definitions; ignored tags are not re-emitted."""
        defs = self.definitions
        put_uleb(len(defs), out)
        for d in defs:
            b = d.name.encode("utf-8")
            put_uleb(len(b), out)
            out.extend(b)
            out.append(int(d.type))
            put_uleb(d.width, out)

    # ---- wire: values ----

    def decode_values(self, cur: ByteCursor) -> dict[str, Any]:
        vals: dict[str, Any] = {}
        for d in self.layout:
            v = decode_value(d, cur)
            if not d.ignored:
                vals[d.name] = v
        return vals

    def skip_values(self, cur: ByteCursor) -> None:
        for d in self.layout:
            skip_value(d, cur)

    def encode_values(self, values: Optional[Mapping[str, Any]], out: bytearray) -> None:
        values = values or {}
        extra = set(values) - set(self.names)
        if extra:
            raise ValueError(f"undeclared {self.scope.name.lower()} tag(s): {sorted(extra)}")
        for d in self.definitions:
            if d.name not in values:
                raise ValueError(f"missing value for {self.scope.name.lower()} tag {d.name!r}")
            encode_value(d, values[d.name], out)

    def normalize(self, values: Optional[Mapping[str, Any]]) -> dict[str, Any]:
        """Return values in declaration order (what decode_values would yield)."""
        values = values or {}
        extra = set(values) - set(self.names)
        if extra:
            raise ValueError(f"undeclared {self.scope.name.lower()} tag(s): {sorted(extra)}")
        return {name: values[name] for name in self.names if name in values}


def empty_schema(scope: TagScope) -> TagSchema:
    return TagSchema(scope, ())

