# radlib/utils/varint.py
from __future__ import annotations

import struct
from typing import Union

from radlib.errors import ShortRead

__all__ = [
    "put_uleb",
    "get_uleb",
    "ByteCursor",
]

Buffer = Union[bytes, bytearray, memoryview]

# =========================
# Primitives
# =========================

def put_uleb(x: int, out: bytearray) -> None:
    x = int(x)
    if x < 0:
        raise ValueError(f"cannot ULEB128-encode negative value {x}")
    while x >= 0x80:
        out.append((x & 0x7F) | 0x80)
        x >>= 7
    out.append(x & 0x7F)

def get_uleb(buf: Buffer, i: int, end: int | None = None) -> tuple[int, int]:
    """Decode one ULEB128 at buf[i]; raises ShortRead if it runs past `end`."""
    limit = len(buf) if end is None else end
    start = i
    shift = 0
    val = 0
    while True:
        if i >= limit:
            raise ShortRead(start, i - start + 1, limit - start)
        b = buf[i]; i += 1
        val |= (b & 0x7F) << shift
        if (b & 0x80) == 0:
            return val, i
        shift += 7


# =========================
# Cursor
# =========================

class ByteCursor:
    """
    Forward-only, bounds-checked reader over a buffer window [pos, end).

    `base` is the absolute stream offset of buf[0], so `offset` reports
    positions in stream coordinates for error messages. Reads never go past
    `end`; a short read raises ShortRead with absolute offsets.
    """
    __slots__ = ("_buf", "pos", "end", "base")

    def __init__(self, buf: Buffer, pos: int = 0, end: int | None = None, base: int = 0) -> None:
        self._buf = buf if isinstance(buf, memoryview) else memoryview(buf)
        self.pos = pos
        self.end = len(self._buf) if end is None else end
        self.base = base
        if not (0 <= pos <= self.end <= len(self._buf)):
            raise ValueError(f"invalid cursor window [{pos}, {end}) over {len(self._buf)} bytes")

    @property
    def buffer(self) -> memoryview:
        return self._buf

    @property
    def offset(self) -> int:
        return self.base + self.pos

    @property
    def remaining(self) -> int:
        return self.end - self.pos

    def at_end(self) -> bool:
        return self.pos >= self.end

    def _need(self, n: int) -> None:
        if n > self.end - self.pos:
            raise ShortRead(self.base + self.pos, n, self.end - self.pos)

    def take(self, n: int) -> memoryview:
        """Borrow the next n bytes (no copy)."""
        self._need(n)
        v = self._buf[self.pos:self.pos + n]
        self.pos += n
        return v

    def read(self, n: int) -> bytes:
        """Copy out the next n bytes."""
        return bytes(self.take(n))

    def skip(self, n: int) -> None:
        self._need(n)
        self.pos += n

    def u8(self) -> int:
        self._need(1)
        b = self._buf[self.pos]
        self.pos += 1
        return b

    def uleb(self) -> int:
        try:
            val, self.pos = get_uleb(self._buf, self.pos, self.end)
        except ShortRead as exc:
            raise ShortRead(self.base + exc.offset, exc.needed, exc.available) from None
        return val

    def unpack(self, st: struct.Struct) -> tuple:
        self._need(st.size)
        vals = st.unpack_from(self._buf, self.pos)
        self.pos += st.size
        return vals

    def sub(self, n: int) -> "ByteCursor":
        """Split off a bounded child cursor over the next n bytes and skip past them here."""
        self._need(n)
        child = ByteCursor(self._buf, self.pos, self.pos + n, self.base)
        self.pos += n
        return child
