from __future__ import annotations

import pytest

from hostcore.errors import AllocatorFault, MemoryAccessFault
from wasmtester.memory import BytesMemory, Guest, ScalarRef, Span


def test_span_bounds() -> None:
    mem = BytesMemory()
    Span(mem, mem.size() - 4, 4)
    Span(mem, mem.size(), 0)
    with pytest.raises(MemoryAccessFault) as ei:
        Span(mem, mem.size() - 4, 5)
    assert ei.value.data["memory_size"] == 65536


def test_negative_pointer_is_masked_to_u32() -> None:
    mem = BytesMemory()
    with pytest.raises(MemoryAccessFault) as ei:
        Span(mem, -1, 1)
    assert ei.value.data["ptr"] == 0xFFFFFFFF


def test_span_write_is_clamped_to_length() -> None:
    mem = BytesMemory()
    span = Span(mem, 10, 3)
    assert span.write(b"abcdef") == 3
    assert mem.read(10, 4) == b"abc\x00"
    assert span.read() == b"abc"
    assert Span(mem, 10, 0).read() == b""


def test_text_replaces_invalid_utf8() -> None:
    mem = BytesMemory()
    mem.write(0, b"ok\xff")
    assert Span(mem, 0, 3).text() == "ok�"


@pytest.mark.parametrize(
    "kind,value,raw",
    [
        ("u32", 0xDEADBEEF, bytes.fromhex("efbeadde")),
        ("i32", -1, b"\xff" * 4),
        ("u64", 1, b"\x01" + b"\x00" * 7),
        ("u128", 1 << 64, b"\x00" * 8 + b"\x01" + b"\x00" * 7),
        ("f64", 1.0, bytes.fromhex("000000000000f03f")),
    ],
)
def test_scalar_ref(kind: str, value, raw: bytes) -> None:
    mem = BytesMemory()
    ref = ScalarRef(mem, 8, kind)
    ref.set(value)
    assert mem.read(8, len(raw)) == raw
    assert ref.get() == value


def test_scalar_ref_bounds_and_kind() -> None:
    mem = BytesMemory()
    with pytest.raises(MemoryAccessFault):
        ScalarRef(mem, mem.size() - 7, "u64")
    with pytest.raises(ValueError):
        ScalarRef(mem, 0, "u7")
    with pytest.raises(ValueError):
        ScalarRef(mem, 0, "bytes32").set(b"short")


# ---- allocator callback ----


def test_set_data_writes_where_the_guest_allocates() -> None:
    mem = BytesMemory()
    calls = []

    def call_indirect(index: int, data: int, size: int) -> int:
        calls.append((index, data, size))
        return 256

    Guest(mem, call_indirect).set_data(7, 3, b"hello")
    assert calls == [(3, 7, 5)]
    assert mem.read(256, 5) == b"hello"


def test_allocation_may_grow_memory() -> None:
    mem = BytesMemory()

    def call_indirect(index: int, data: int, size: int) -> int:
        mem.grow(1)
        return 65536 + 16

    span = Guest(mem, call_indirect).allocate(0, 0, 32)
    assert span.ptr == 65536 + 16


def test_allocation_outside_memory() -> None:
    mem = BytesMemory()
    with pytest.raises(MemoryAccessFault):
        Guest(mem, lambda i, d, s: mem.size() - 2).allocate(0, 0, 4)


@pytest.mark.parametrize("result", [None, 1.5, True, "x"])
def test_allocator_returning_wrong_type(result) -> None:
    with pytest.raises(AllocatorFault):
        Guest(BytesMemory(), lambda i, d, s: result).allocate(0, 0, 1)


def test_allocator_missing() -> None:
    with pytest.raises(AllocatorFault):
        Guest(BytesMemory()).set_data(0, 0, b"x")
