# radlib/errors.py
from __future__ import annotations

from typing import Any, Optional

__all__ = [
    "RadError",
    "FormatError",
    "BadMagic",
    "UnsupportedVersion",
    "TruncatedHeader",
    "TruncatedChunk",
    "LengthMismatch",
    "CorruptRecord",
    "DimensionMismatch",
    "SchemaError",
    "UnknownType",
    "DuplicateTagName",
    "SchemaTooShort",
    "ChunkCallbackError",
    "ReleasedBufferError",
    "ShortRead",
]

_CONTEXT_FIELDS = ("offset", "chunk_index", "record_index", "entry_index")


class RadError(Exception):
    """
    Base of every error raised by radlib.

    Location context is optional and filled in by whichever layer knows it:
      offset       : absolute byte offset in the stream
      chunk_index  : 0-based chunk number
      record_index : 0-based record number inside its chunk
      entry_index  : 0-based entry number in an auxiliary file
    """
    kind = "RadError"
    exit_code = 1

    def __init__(
        self,
        message: str = "",
        *,
        offset: Optional[int] = None,
        chunk_index: Optional[int] = None,
        record_index: Optional[int] = None,
        entry_index: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.chunk_index = chunk_index
        self.record_index = record_index
        self.entry_index = entry_index

    def with_context(self, **ctx: Any) -> "RadError":
        """Fill location fields that are still unset; returns self for `raise err.with_context(...)`."""
        for name, value in ctx.items():
            if name not in _CONTEXT_FIELDS:
                raise TypeError(f"unknown error context field {name!r}")
            if getattr(self, name) is None and value is not None:
                setattr(self, name, value)
        return self

    def location(self) -> str:
        parts = []
        if self.chunk_index is not None:
            parts.append(f"chunk {self.chunk_index}")
        if self.record_index is not None:
            parts.append(f"record {self.record_index}")
        if self.entry_index is not None:
            parts.append(f"entry {self.entry_index}")
        if self.offset is not None:
            parts.append(f"byte offset {self.offset}")
        return ", ".join(parts)

    def __str__(self) -> str:
        loc = self.location()
        text = f"{self.kind}: {self.message}"
        return f"{text} ({loc})" if loc else text

    # keyword-only context would be lost by the default exception pickling
    def __reduce__(self):
        ctx = {name: getattr(self, name) for name in _CONTEXT_FIELDS}
        return (_rebuild, (type(self), self.message, ctx))


def _rebuild(cls, message, ctx):
    return cls(message, **ctx)


# =========================
# Format errors
# =========================

class FormatError(RadError, ValueError):
    kind = "FormatError"


class BadMagic(FormatError):
    kind = "BadMagic"
    exit_code = 10


class UnsupportedVersion(FormatError):
    kind = "UnsupportedVersion"
    exit_code = 11


class TruncatedHeader(FormatError):
    kind = "TruncatedHeader"
    exit_code = 12


class TruncatedChunk(FormatError):
    kind = "TruncatedChunk"
    exit_code = 13


class LengthMismatch(FormatError):
    kind = "LengthMismatch"
    exit_code = 14


class CorruptRecord(FormatError):
    kind = "CorruptRecord"
    exit_code = 15


class DimensionMismatch(FormatError):
    kind = "DimensionMismatch"
    exit_code = 16


# =========================
# Schema errors
# =========================

class SchemaError(RadError, ValueError):
    kind = "SchemaError"


class UnknownType(SchemaError):
    kind = "UnknownType"
    exit_code = 20


class DuplicateTagName(SchemaError):
    kind = "DuplicateTagName"
    exit_code = 21


class SchemaTooShort(SchemaError):
    kind = "SchemaTooShort"
    exit_code = 22


# =========================
# Engine / ownership errors
# =========================

class ChunkCallbackError(RadError):
    """A caller-supplied per-chunk callback raised; the original is chained as __cause__."""
    kind = "ChunkCallbackError"


class ReleasedBufferError(RuntimeError):
    """A zero-copy record was touched after its chunk buffer was released."""


class ShortRead(Exception):
    """
    Internal: a ByteCursor ran out of bytes. Never escapes the package;
    every layer translates it into its own taxonomy member.
    """

    def __init__(self, offset: int, needed: int, available: int) -> None:
        super().__init__(f"needed {needed} byte(s) at offset {offset}, {available} available")
        self.offset = offset
        self.needed = needed
        self.available = available
