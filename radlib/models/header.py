# radlib/models/header.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from radlib.formats.schema import TagSchema, empty_schema
from radlib.models.tags import TagScope

__all__ = [
    "MAGIC",
    "SUPPORTED_VERSION",
    "HeaderFlags",
    "FileHeader",
]

MAGIC = b"RAD\x1a"
SUPPORTED_VERSION = (1, 0)


class HeaderFlags(enum.IntFlag):
    PAIRED_END = 1 << 0
    USA_MODE = 1 << 1


@dataclass(frozen=True)
class FileHeader:
    """
    File-level header of a RAD stream. Immutable once parsed and shared
    read-only by every worker decoding the stream.

    ref_names index = reference id. Barcode and UMI widths are in bytes.
    The three schemas declare tags for file, chunk and record scope;
    file_tags holds the decoded file-scope values in declaration order.
    """
    ref_names: tuple[str, ...]
    barcode_len: int
    umi_len: int
    flags: int = 0
    version: tuple[int, int] = SUPPORTED_VERSION
    file_schema: TagSchema = field(default_factory=lambda: empty_schema(TagScope.FILE))
    chunk_schema: TagSchema = field(default_factory=lambda: empty_schema(TagScope.CHUNK))
    record_schema: TagSchema = field(default_factory=lambda: empty_schema(TagScope.RECORD))
    file_tags: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "ref_names", tuple(self.ref_names))
        object.__setattr__(self, "version", tuple(self.version))
        for name, width in (("barcode_len", self.barcode_len), ("umi_len", self.umi_len)):
            if not (0 <= width <= 0xFF):
                raise ValueError(f"{name} must fit in one byte, got {width}")
        if not (0 <= self.flags <= 0xFF):
            raise ValueError(f"header flags must fit in one byte, got {self.flags}")
        for scope, schema in (
            (TagScope.FILE, self.file_schema),
            (TagScope.CHUNK, self.chunk_schema),
            (TagScope.RECORD, self.record_schema),
        ):
            if schema.scope is not scope:
                raise ValueError(f"{scope.name.lower()}_schema has scope {schema.scope.name}")
        object.__setattr__(self, "file_tags", self.file_schema.normalize(self.file_tags))

    # ---- convenience ----

    @property
    def ref_count(self) -> int:
        return len(self.ref_names)

    @property
    def version_major(self) -> int:
        return self.version[0]

    @property
    def version_minor(self) -> int:
        return self.version[1]

    @property
    def is_paired_end(self) -> bool:
        return bool(self.flags & HeaderFlags.PAIRED_END)

    @property
    def is_usa_mode(self) -> bool:
        return bool(self.flags & HeaderFlags.USA_MODE)

    @property
    def is_newer_minor(self) -> bool:
        """True when the stream declares a newer minor version than this reader knows."""
        return self.version_major == SUPPORTED_VERSION[0] and self.version_minor > SUPPORTED_VERSION[1]

    def ref_name(self, ref_id: int) -> str:
        return self.ref_names[ref_id]

    def ref_index(self) -> dict[str, int]:
        return {n: i for i, n in enumerate(self.ref_names)}

