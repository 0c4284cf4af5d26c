"""
chainsim.wire: little-endian binary codec used by transactions and traces.

Layout rules:
  * fixed-width integers and f64 are little-endian
  * lengths and variant indices are varuint32 (LEB128, at most 5 bytes)
  * bytes/string = varuint32 length + raw payload
  * optional<T> = u8 presence flag + T
  * vector<T> = varuint32 count + T...
  * name = u64; checksum256 = 32 raw bytes

`Writer` accumulates into a bytearray; `Reader` walks a bytes-like buffer and
raises `DeserializationError` on truncated or malformed input.
"""

from __future__ import annotations

import struct
from typing import Callable, Iterable, List, Optional, TypeVar

from hostcore.errors import DeserializationError, SerializationError

from .names import NameLike, as_name

T = TypeVar("T")

_U8 = struct.Struct("<B")
_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_F64 = struct.Struct("<d")


class Writer:
    def __init__(self) -> None:
        self._buf = bytearray()

    def getvalue(self) -> bytes:
        return bytes(self._buf)

    def __len__(self) -> int:
        return len(self._buf)

    # ---- scalars ----

    def _pack(self, st: struct.Struct, v: int | float, what: str) -> "Writer":
        try:
            self._buf += st.pack(v)
        except struct.error as e:
            raise SerializationError(f"{what} out of range", value=v) from e
        return self

    def u8(self, v: int) -> "Writer":
        return self._pack(_U8, v, "u8")

    def u16(self, v: int) -> "Writer":
        return self._pack(_U16, v, "u16")

    def u32(self, v: int) -> "Writer":
        return self._pack(_U32, v, "u32")

    def i32(self, v: int) -> "Writer":
        return self._pack(_I32, v, "i32")

    def u64(self, v: int) -> "Writer":
        return self._pack(_U64, v, "u64")

    def i64(self, v: int) -> "Writer":
        return self._pack(_I64, v, "i64")

    def f64(self, v: float) -> "Writer":
        return self._pack(_F64, v, "f64")

    def u128(self, v: int) -> "Writer":
        if not 0 <= v < (1 << 128):
            raise SerializationError("u128 out of range", value=v)
        self._buf += v.to_bytes(16, "little")
        return self

    def boolean(self, v: bool) -> "Writer":
        return self.u8(1 if v else 0)

    def varuint32(self, v: int) -> "Writer":
        if not 0 <= v < (1 << 32):
            raise SerializationError("varuint32 out of range", value=v)
        while True:
            b = v & 0x7F
            v >>= 7
            if v:
                self._buf.append(b | 0x80)
            else:
                self._buf.append(b)
                return self

    # ---- composites ----

    def raw(self, data: bytes) -> "Writer":
        self._buf += data
        return self

    def bytes_(self, data: bytes) -> "Writer":
        self.varuint32(len(data))
        self._buf += data
        return self

    def string(self, s: str) -> "Writer":
        return self.bytes_(s.encode("utf-8"))

    def name(self, n: NameLike) -> "Writer":
        return self.u64(as_name(n))

    def checksum256(self, data: bytes) -> "Writer":
        if len(data) != 32:
            raise SerializationError("checksum256 must be 32 bytes", size=len(data))
        self._buf += data
        return self

    def optional(self, v: Optional[T], fn: Callable[["Writer", T], object]) -> "Writer":
        if v is None:
            return self.u8(0)
        self.u8(1)
        fn(self, v)
        return self

    def vector(self, items: Iterable[T], fn: Callable[["Writer", T], object]) -> "Writer":
        items = list(items)
        self.varuint32(len(items))
        for it in items:
            fn(self, it)
        return self


class Reader:
    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = bytes(data)
        self._pos = 0

    @property
    def pos(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def done(self) -> bool:
        return self._pos >= len(self._data)

    def expect_end(self, what: str = "payload") -> None:
        if not self.done():
            raise DeserializationError(f"trailing bytes after {what}", extra=self.remaining)

    # ---- scalars ----

    def take(self, n: int) -> bytes:
        if n < 0 or self._pos + n > len(self._data):
            raise DeserializationError(
                "read past end of stream", pos=self._pos, want=n, size=len(self._data)
            )
        out = self._data[self._pos : self._pos + n]
        self._pos += n
        return out

    def _unpack(self, st: struct.Struct) -> int | float:
        return st.unpack(self.take(st.size))[0]

    def u8(self) -> int:
        return int(self._unpack(_U8))

    def u16(self) -> int:
        return int(self._unpack(_U16))

    def u32(self) -> int:
        return int(self._unpack(_U32))

    def i32(self) -> int:
        return int(self._unpack(_I32))

    def u64(self) -> int:
        return int(self._unpack(_U64))

    def i64(self) -> int:
        return int(self._unpack(_I64))

    def f64(self) -> float:
        return float(self._unpack(_F64))

    def u128(self) -> int:
        return int.from_bytes(self.take(16), "little")

    def boolean(self) -> bool:
        v = self.u8()
        if v > 1:
            raise DeserializationError("invalid bool", value=v)
        return bool(v)

    def varuint32(self) -> int:
        result = 0
        for shift in range(0, 35, 7):
            b = self.u8()
            result |= (b & 0x7F) << shift
            if not b & 0x80:
                if result >= (1 << 32):
                    break
                return result
        raise DeserializationError("varuint32 is too long", pos=self._pos)

    # ---- composites ----

    def bytes_(self) -> bytes:
        return self.take(self.varuint32())

    def string(self) -> str:
        raw = self.bytes_()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DeserializationError("string is not valid UTF-8") from e

    def name(self) -> int:
        return self.u64()

    def checksum256(self) -> bytes:
        return self.take(32)

    def optional(self, fn: Callable[["Reader"], T]) -> Optional[T]:
        return fn(self) if self.boolean() else None

    def vector(self, fn: Callable[["Reader"], T]) -> List[T]:
        n = self.varuint32()
        if n > self.remaining:
            # every element takes at least one byte
            raise DeserializationError("vector length exceeds payload", count=n)
        return [fn(self) for _ in range(n)]


__all__ = ["Writer", "Reader"]
