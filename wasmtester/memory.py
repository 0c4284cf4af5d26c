"""
wasmtester.memory: bounds-checked views of guest linear memory.

Every pointer the guest hands to a host call goes through one of these:

  * `Span(memory, ptr, length)`      : a byte range (buffers, strings)
  * `ScalarRef(memory, ptr, kind)`   : one fixed-width in/out value

Both validate `ptr + size <= memory.size()` at construction and raise
`MemoryAccessFault` otherwise, so a handler never touches an address it has
not checked.

Variable-length results are returned through the guest's allocator callback
(`Guest.set_data`). The callback runs guest code, which may grow memory; the
destination is therefore validated only *after* the call returns, against the
memory size at that moment. No host-side view of guest memory is held across
the callback.
"""

from __future__ import annotations

import struct
from typing import Any, Callable, Optional, Protocol

from hostcore.errors import AllocatorFault, HostFault, MemoryAccessFault

_U32_MASK = 0xFFFFFFFF


class LinearMemory(Protocol):
    def size(self) -> int: ...

    def read(self, ptr: int, length: int) -> bytes: ...

    def write(self, ptr: int, data: bytes) -> None: ...


class WasmtimeMemory:
    """Adapter over a `wasmtime.Memory` bound to a store or caller."""

    def __init__(self, store: Any, memory: Any) -> None:
        self._store = store
        self._memory = memory

    def size(self) -> int:
        return int(self._memory.data_len(self._store))

    def read(self, ptr: int, length: int) -> bytes:
        return bytes(self._memory.read(self._store, ptr, ptr + length))

    def write(self, ptr: int, data: bytes) -> None:
        self._memory.write(self._store, data, ptr)


class BytesMemory:
    """Plain bytearray memory; used by unit tests and host-side fakes."""

    PAGE = 65536

    def __init__(self, pages: int = 1) -> None:
        self.buf = bytearray(pages * self.PAGE)

    def size(self) -> int:
        return len(self.buf)

    def grow(self, pages: int) -> None:
        self.buf.extend(bytes(pages * self.PAGE))

    def read(self, ptr: int, length: int) -> bytes:
        return bytes(self.buf[ptr : ptr + length])

    def write(self, ptr: int, data: bytes) -> None:
        self.buf[ptr : ptr + len(data)] = data


def check_range(memory: LinearMemory, ptr: int, size: int) -> int:
    ptr &= _U32_MASK
    if size < 0 or ptr + size > memory.size():
        raise MemoryAccessFault(ptr, size, memory.size())
    return ptr


# ---------------------------------------------------------------------------
# Spans & scalar refs
# ---------------------------------------------------------------------------


class Span:
    __slots__ = ("memory", "ptr", "length")

    def __init__(self, memory: LinearMemory, ptr: int, length: int) -> None:
        length &= _U32_MASK
        self.memory = memory
        self.ptr = check_range(memory, ptr, length)
        self.length = length

    def __len__(self) -> int:
        return self.length

    def read(self) -> bytes:
        return self.memory.read(self.ptr, self.length) if self.length else b""

    def text(self) -> str:
        return self.read().decode("utf-8", errors="replace")

    def write(self, data: bytes) -> int:
        """Copy as much of `data` as fits; returns the number of bytes copied."""
        n = min(len(data), self.length)
        if n:
            self.memory.write(self.ptr, bytes(data[:n]))
        return n


def _int_codec(size: int, signed: bool):
    def pack(v: int) -> bytes:
        if not signed:
            v &= (1 << (8 * size)) - 1
        return int(v).to_bytes(size, "little", signed=signed)

    def unpack(b: bytes) -> int:
        return int.from_bytes(b, "little", signed=signed)

    return size, pack, unpack


_F64 = struct.Struct("<d")

SCALAR_KINDS = {
    "u8": _int_codec(1, False),
    "u16": _int_codec(2, False),
    "u32": _int_codec(4, False),
    "i32": _int_codec(4, True),
    "u64": _int_codec(8, False),
    "i64": _int_codec(8, True),
    "u128": _int_codec(16, False),
    "f64": (8, _F64.pack, lambda b: _F64.unpack(b)[0]),
    "bytes32": (32, bytes, bytes),
}


class ScalarRef:
    """A typed in/out parameter at a validated guest address."""

    __slots__ = ("memory", "ptr", "kind", "size", "_pack", "_unpack")

    def __init__(self, memory: LinearMemory, ptr: int, kind: str) -> None:
        try:
            size, pack, unpack = SCALAR_KINDS[kind]
        except KeyError:
            raise ValueError(f"unknown scalar kind {kind!r}") from None
        self.memory = memory
        self.kind = kind
        self.size = size
        self.ptr = check_range(memory, ptr, size)
        self._pack = pack
        self._unpack = unpack

    def get(self) -> Any:
        return self._unpack(self.memory.read(self.ptr, self.size))

    def set(self, value: Any) -> None:
        raw = self._pack(value)
        if len(raw) != self.size:
            raise ValueError(f"{self.kind} value must be {self.size} bytes")
        self.memory.write(self.ptr, raw)


# ---------------------------------------------------------------------------
# Guest view for one host call
# ---------------------------------------------------------------------------

# (table index, cb_alloc_data, size) -> raw result of the guest function
IndirectCall = Callable[[int, int, int], Any]


class Guest:
    def __init__(self, memory: LinearMemory, call_indirect: Optional[IndirectCall] = None) -> None:
        self.memory = memory
        self._call_indirect = call_indirect

    @classmethod
    def from_caller(cls, caller: Any) -> "Guest":
        """Build from a `wasmtime.Caller` (memory + function table exports)."""
        import wasmtime

        mem = caller.get("memory")
        if not isinstance(mem, wasmtime.Memory):
            raise HostFault("module does not export memory")
        table = caller.get("__indirect_function_table")

        call: Optional[IndirectCall] = None
        if isinstance(table, wasmtime.Table):

            def call(index: int, data: int, size: int) -> Any:
                if index >= table.size(caller):
                    raise AllocatorFault("cb_alloc is out of range", index=index)
                func = table.get(caller, index)
                if not isinstance(func, wasmtime.Func):
                    raise AllocatorFault("cb_alloc is not a function", index=index)
                ty = func.type(caller)
                if [str(p) for p in ty.params] != ["i32", "i32"] or [str(r) for r in ty.results] != ["i32"]:
                    raise AllocatorFault("cb_alloc returned incorrect type", index=index)
                return func(caller, data, size)

        return cls(WasmtimeMemory(caller, mem), call)

    # ---- argument helpers ----

    def span(self, ptr: int, length: int) -> Span:
        return Span(self.memory, ptr, length)

    def ref(self, ptr: int, kind: str) -> ScalarRef:
        return ScalarRef(self.memory, ptr, kind)

    def read(self, ptr: int, length: int) -> bytes:
        return Span(self.memory, ptr, length).read()

    def text(self, ptr: int, length: int) -> str:
        return Span(self.memory, ptr, length).text()

    # ---- allocator callback ----

    def allocate(self, cb_alloc_data: int, cb_alloc: int, size: int) -> Span:
        if self._call_indirect is None:
            raise AllocatorFault("module has no __indirect_function_table")
        result = self._call_indirect(cb_alloc & _U32_MASK, cb_alloc_data & _U32_MASK, size)
        if isinstance(result, bool) or not isinstance(result, int):
            raise AllocatorFault("cb_alloc returned incorrect type", result=repr(result))
        # memory may have grown inside the callback; Span re-reads its size
        return Span(self.memory, result & _U32_MASK, size)

    def set_data(self, cb_alloc_data: int, cb_alloc: int, data: bytes) -> None:
        span = self.allocate(cb_alloc_data, cb_alloc, len(data))
        span.write(data)


__all__ = [
    "LinearMemory",
    "WasmtimeMemory",
    "BytesMemory",
    "check_range",
    "Span",
    "ScalarRef",
    "SCALAR_KINDS",
    "Guest",
]
