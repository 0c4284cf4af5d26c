"""
wasmtester.registry: named host functions offered to guest modules.

A `CallRegistry` maps `(module, name)` to a `HostFunction`: a Python handler
plus its declared parameter/result kinds. Kinds are wasm value types refined
with signedness so handlers receive natural Python ints:

    i32  u32  i64  u64  f64

`u32`/`u64` arrive from wasm as signed values and are masked; results are
converted back to the signed range wasm expects.

Before instantiation, `resolve(module)` checks every import of a compiled
module against the registry (name *and* signature) so a guest that asks for
something the host does not provide fails before any guest code runs.

Handlers have the shape::

    def handler(host, guest: Guest, *args) -> result

where `guest` is the bounds-checked memory view for the calling instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Sequence, Tuple

from hostcore.errors import (
    DuplicateHostFunction,
    ImportSignatureMismatch,
    TesterError,
    UnresolvedImport,
)
from hostcore.logging import get_logger, scope

from .memory import Guest

log = get_logger("wasmtester.registry")

_WASM_TYPE = {"i32": "i32", "u32": "i32", "i64": "i64", "u64": "i64", "f64": "f64"}
_MASK = {"u32": 0xFFFFFFFF, "u64": 0xFFFFFFFFFFFFFFFF}
_BITS = {"i32": 32, "u32": 32, "i64": 64, "u64": 64}

Handler = Callable[..., Any]


def _to_signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


@dataclass(frozen=True)
class HostFunction:
    module: str
    name: str
    params: Tuple[str, ...]
    results: Tuple[str, ...]
    handler: Handler

    def __post_init__(self) -> None:
        for kind in self.params + self.results:
            if kind not in _WASM_TYPE:
                raise ValueError(f"{self.module}.{self.name}: unknown value kind {kind!r}")
        if len(self.results) > 1:
            raise ValueError(f"{self.module}.{self.name}: at most one result")

    @property
    def wasm_params(self) -> Tuple[str, ...]:
        return tuple(_WASM_TYPE[k] for k in self.params)

    @property
    def wasm_results(self) -> Tuple[str, ...]:
        return tuple(_WASM_TYPE[k] for k in self.results)

    def signature(self) -> str:
        return f"({', '.join(self.wasm_params)}) -> ({', '.join(self.wasm_results)})"

    def coerce_args(self, raw: Sequence[Any]) -> list:
        out = []
        for kind, value in zip(self.params, raw):
            if kind in _MASK:
                value = int(value) & _MASK[kind]
            out.append(value)
        return out

    def coerce_result(self, value: Any) -> Any:
        if not self.results:
            return None
        kind = self.results[0]
        if kind == "f64":
            return float(value)
        if isinstance(value, bool):
            value = int(value)
        return _to_signed(int(value), _BITS[kind])

    def invoke(self, host: Any, guest: Guest, raw_args: Sequence[Any]) -> Any:
        return self.coerce_result(self.handler(host, guest, *self.coerce_args(raw_args)))


class CallRegistry:
    def __init__(self) -> None:
        self._functions: Dict[Tuple[str, str], HostFunction] = {}

    # ---- registration ----

    def register(self, fn: HostFunction) -> HostFunction:
        key = (fn.module, fn.name)
        if key in self._functions:
            raise DuplicateHostFunction(fn.module, fn.name)
        self._functions[key] = fn
        return fn

    def add(
        self,
        module: str,
        name: str,
        params: Sequence[str] = (),
        results: Sequence[str] = (),
    ) -> Callable[[Handler], Handler]:
        """Decorator form of `register`."""

        def deco(handler: Handler) -> Handler:
            self.register(HostFunction(module, name, tuple(params), tuple(results), handler))
            return handler

        return deco

    def get(self, module: str, name: str) -> Optional[HostFunction]:
        return self._functions.get((module, name))

    def __contains__(self, key: Tuple[str, str]) -> bool:
        return key in self._functions

    def __iter__(self) -> Iterator[HostFunction]:
        return iter(self._functions.values())

    def __len__(self) -> int:
        return len(self._functions)

    # ---- resolution & linking ----

    def resolve_import(self, module: str, name: str, params: Sequence[str], results: Sequence[str]) -> HostFunction:
        fn = self.get(module, name)
        if fn is None:
            raise UnresolvedImport(module, name)
        got = (tuple(str(p) for p in params), tuple(str(r) for r in results))
        if got != (fn.wasm_params, fn.wasm_results):
            raise ImportSignatureMismatch(
                module, name, fn.signature(), f"({', '.join(got[0])}) -> ({', '.join(got[1])})"
            )
        return fn

    def resolve(self, wasm_module: Any) -> list:
        """Check all function imports of a compiled `wasmtime.Module`."""
        import wasmtime

        resolved = []
        for imp in wasm_module.imports:
            ty = imp.type
            if not isinstance(ty, wasmtime.FuncType):
                raise UnresolvedImport(imp.module, imp.name or "")
            resolved.append(self.resolve_import(imp.module, imp.name or "", ty.params, ty.results))
        log.debug("resolved imports", extra={"count": len(resolved)})
        return resolved

    def link(self, linker: Any, host: Any, functions: Optional[Sequence[HostFunction]] = None) -> None:
        """Define `functions` (default: all) on a `wasmtime.Linker`."""
        import wasmtime

        def valtype(t: str) -> Any:
            return {"i32": wasmtime.ValType.i32, "i64": wasmtime.ValType.i64, "f64": wasmtime.ValType.f64}[t]()

        for fn in functions if functions is not None else list(self):
            ty = wasmtime.FuncType([valtype(t) for t in fn.wasm_params], [valtype(t) for t in fn.wasm_results])
            linker.define_func(fn.module, fn.name, ty, _bind(fn, host), access_caller=True)


def _bind(fn: HostFunction, host: Any) -> Callable[..., Any]:
    def call(caller: Any, *args: Any) -> Any:
        try:
            with scope(call=fn.name):
                return fn.invoke(host, Guest.from_caller(caller), args)
        except TesterError as e:
            # wasmtime reports the failure as a trap; keep the original for the runner
            if getattr(host, "fault", None) is None:
                host.fault = e
            raise

    call.__name__ = fn.name
    return call


__all__ = ["HostFunction", "CallRegistry"]
