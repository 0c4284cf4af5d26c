"""
hostcore.errors
---------------

A small, consistent error system for the tester and the chain simulator.

Design goals
------------
- One root `TesterError` with machine-friendly `code` and optional `data`.
- Concrete families mirroring how a failure is reported to the user:
    * GuestAssertion  : the guest module asserted (exit 1, "tester wasm asserted").
    * GuestExit       : the guest asked the process to exit with a status code.
    * HostFault       : the guest (or its caller) violated a host-call contract:
                        bad memory range, unresolved import, stale iterator,
                        malformed arguments, missing allocator.
    * ChainError      : bad chain handle, no selection, shut-down controller.
- Transaction-level failures are NOT in this module: they live in
  `chainsim.errors` and end up inside transaction traces.
- Safe JSON representation (`to_dict`) suitable for logs.

This module uses only stdlib to avoid boot-time dependency cycles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

# ---------------------------------------------------------------------------
# Error codes & classes
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    # Generic
    INTERNAL = "TESTER/INTERNAL"
    CONFIG = "TESTER/CONFIG"
    SERIALIZATION = "TESTER/SERIALIZATION"
    DESERIALIZATION = "TESTER/DESERIALIZATION"

    # Guest-initiated
    GUEST_ASSERTION = "GUEST/ASSERTION"
    GUEST_EXIT = "GUEST/EXIT"

    # Host-call contract violations
    HOST_FAULT = "HOST/FAULT"
    MEMORY_ACCESS = "HOST/MEMORY_ACCESS"
    UNRESOLVED_IMPORT = "HOST/UNRESOLVED_IMPORT"
    IMPORT_SIGNATURE = "HOST/IMPORT_SIGNATURE"
    DUPLICATE_FUNCTION = "HOST/DUPLICATE_FUNCTION"
    ALLOCATOR = "HOST/ALLOCATOR"
    INVALID_ITERATOR = "HOST/INVALID_ITERATOR"
    MALFORMED_ARGUMENTS = "HOST/MALFORMED_ARGUMENTS"

    # Chain handles / selection
    CHAIN = "CHAIN/ERROR"
    CHAIN_NOT_FOUND = "CHAIN/NOT_FOUND"
    CHAIN_SHUT_DOWN = "CHAIN/SHUT_DOWN"
    NO_CHAIN_SELECTED = "CHAIN/NO_SELECTION"
    HANDLES_EXHAUSTED = "CHAIN/HANDLES_EXHAUSTED"

    # Simulated execution (see chainsim.errors)
    EXECUTION = "EXEC/FAILURE"


@dataclass(eq=False)
class TesterError(Exception):
    """
    Root error for tester components.

    Attributes
    ----------
    code: str
        Machine-stable error code (see ErrorCode).
    message: str
        Human hint suitable for logs and for the process error stream.
    data: dict
        Optional machine data (handles, pointers, sizes). Must be JSON-serializable.
    cause: Optional[BaseException]
        Wrapped original exception; not included in equality comparison.
    """

    code: str
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    def __post_init__(self) -> None:
        super().__init__(f"{self.code}: {self.message}")

    # ---------------- Public API ----------------

    def with_context(self, **ctx: Any) -> "TesterError":
        """Return a *new* error with extra context merged (does not mutate)."""
        out = self._clone()
        out.data = {**self.data, **_jsonmap(ctx)}
        return out

    def with_cause(self, exc: BaseException) -> "TesterError":
        out = self._clone()
        out.cause = exc
        return out

    def _clone(self) -> "TesterError":
        # Subclasses have bespoke __init__ signatures, so bypass them.
        out = type(self).__new__(type(self))
        Exception.__init__(out, *self.args)
        out.__dict__.update(self.__dict__)
        return out

    def to_dict(self, include_cause: bool = False) -> Dict[str, Any]:
        """JSON-safe shape suitable for logs."""
        out: Dict[str, Any] = {
            "code": str(self.code.value if isinstance(self.code, Enum) else self.code),
            "message": self.message,
            "data": _coerce_json(self.data),
        }
        if include_cause and self.cause is not None:
            out["cause"] = {
                "type": type(self.cause).__name__,
                "message": str(self.cause),
            }
        return out

    def __str__(self) -> str:
        return self.message


# ----- guest-initiated -----


class GuestAssertion(TesterError):
    def __init__(self, message: str = "assertion failed", **data: Any) -> None:
        super().__init__(
            code=ErrorCode.GUEST_ASSERTION, message=message, data=_jsonmap(data)
        )


class GuestExit(TesterError):
    """Raised by `eosio_exit`; unwinds the guest with a status code."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(
            code=ErrorCode.GUEST_EXIT,
            message=f"guest exited with code {exit_code}",
            data={"exit_code": exit_code},
        )

    @property
    def exit_code(self) -> int:
        return int(self.data["exit_code"])


# ----- host faults -----


class HostFault(TesterError):
    def __init__(
        self, message: str = "host fault", code: str = ErrorCode.HOST_FAULT, **data: Any
    ) -> None:
        super().__init__(code=code, message=message, data=_jsonmap(data))


class MemoryAccessFault(HostFault):
    def __init__(self, ptr: int, size: int, memory_size: int) -> None:
        super().__init__(
            f"access violation: [{ptr}, {ptr + size}) outside linear memory of {memory_size} bytes",
            code=ErrorCode.MEMORY_ACCESS,
            ptr=ptr,
            size=size,
            memory_size=memory_size,
        )


class UnresolvedImport(HostFault):
    def __init__(self, module: str, name: str) -> None:
        super().__init__(
            f"unresolved import {module}.{name}",
            code=ErrorCode.UNRESOLVED_IMPORT,
            module=module,
            name=name,
        )


class ImportSignatureMismatch(HostFault):
    def __init__(self, module: str, name: str, expected: str, got: str) -> None:
        super().__init__(
            f"import {module}.{name} has signature {got}, host provides {expected}",
            code=ErrorCode.IMPORT_SIGNATURE,
            module=module,
            name=name,
            expected=expected,
            got=got,
        )


class DuplicateHostFunction(HostFault):
    def __init__(self, module: str, name: str) -> None:
        super().__init__(
            f"host function {module}.{name} registered twice",
            code=ErrorCode.DUPLICATE_FUNCTION,
            module=module,
            name=name,
        )


class AllocatorFault(HostFault):
    def __init__(self, message: str = "allocator callback failed", **data: Any) -> None:
        super().__init__(message, code=ErrorCode.ALLOCATOR, **data)


class InvalidIterator(HostFault):
    def __init__(self, iterator: int, reason: str = "invalid iterator") -> None:
        super().__init__(
            f"{reason}: {iterator}", code=ErrorCode.INVALID_ITERATOR, iterator=iterator
        )


class MalformedArguments(HostFault):
    def __init__(self, message: str = "malformed host-call arguments", **data: Any) -> None:
        super().__init__(message, code=ErrorCode.MALFORMED_ARGUMENTS, **data)


# ----- chain handles -----


class ChainError(TesterError):
    def __init__(
        self, message: str = "chain error", code: str = ErrorCode.CHAIN, **data: Any
    ) -> None:
        super().__init__(code=code, message=message, data=_jsonmap(data))


class ChainNotFound(ChainError):
    def __init__(self, handle: int) -> None:
        super().__init__(
            "chain does not exist or was destroyed",
            code=ErrorCode.CHAIN_NOT_FOUND,
            handle=handle,
        )


class ChainShutDown(ChainError):
    def __init__(self, handle: int) -> None:
        super().__init__(
            "chain was shut down", code=ErrorCode.CHAIN_SHUT_DOWN, handle=handle
        )


class NoChainSelected(ChainError):
    def __init__(self) -> None:
        super().__init__(
            "tester_select_chain_for_db() must be called before using multi_index",
            code=ErrorCode.NO_CHAIN_SELECTED,
        )


class HandlesExhausted(ChainError):
    def __init__(self, slot: int) -> None:
        super().__init__(
            "no more chain handles available for slot",
            code=ErrorCode.HANDLES_EXHAUSTED,
            slot=slot,
        )


# ----- generic -----


class ConfigError(TesterError):
    def __init__(self, message: str = "invalid configuration", **data: Any) -> None:
        super().__init__(code=ErrorCode.CONFIG, message=message, data=_jsonmap(data))


class SerializationError(TesterError):
    def __init__(self, message: str = "serialization failed", **data: Any) -> None:
        super().__init__(
            code=ErrorCode.SERIALIZATION, message=message, data=_jsonmap(data)
        )


class DeserializationError(TesterError):
    def __init__(self, message: str = "deserialization failed", **data: Any) -> None:
        super().__init__(
            code=ErrorCode.DESERIALIZATION, message=message, data=_jsonmap(data)
        )


class InternalError(TesterError):
    def __init__(self, message: str = "internal error", **data: Any) -> None:
        super().__init__(code=ErrorCode.INTERNAL, message=message, data=_jsonmap(data))


# ---------------------------------------------------------------------------
# Classification (used by the CLI to pick the stderr prefix)
# ---------------------------------------------------------------------------

CATEGORY_PREFIX = {
    GuestAssertion: "tester wasm asserted: ",
    GuestExit: "guest exit: ",
    HostFault: "host fault: ",
    ChainError: "chain error: ",
    InternalError: "internal error: ",
}


def category_prefix(err: BaseException) -> str:
    """Stable, human prefix for a failure surfaced at process level."""
    for cls, prefix in CATEGORY_PREFIX.items():
        if isinstance(err, cls):
            return prefix
    if isinstance(err, TesterError):
        return "tester error: "
    return "error: "


def ensure_tester_error(exc: BaseException) -> TesterError:
    """Coerce unknown exceptions to InternalError with cause attached."""
    if isinstance(exc, TesterError):
        return exc
    return InternalError(str(exc) or type(exc).__name__).with_cause(exc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _jsonmap(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: _coerce_json(v) for k, v in data.items()}


def _coerce_json(v: Any) -> Any:
    # Keep JSON primitives; hex-encode bytes; stringify the rest.
    if v is None or isinstance(v, (bool, int, float, str)):
        return v
    if isinstance(v, Enum):
        return v.value
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v).hex()
    if isinstance(v, dict):
        return {str(k): _coerce_json(x) for k, x in v.items()}
    if isinstance(v, (list, tuple)):
        return [_coerce_json(x) for x in v]
    return str(v)


__all__ = [
    "ErrorCode",
    "TesterError",
    "GuestAssertion",
    "GuestExit",
    "HostFault",
    "MemoryAccessFault",
    "UnresolvedImport",
    "ImportSignatureMismatch",
    "DuplicateHostFunction",
    "AllocatorFault",
    "InvalidIterator",
    "MalformedArguments",
    "ChainError",
    "ChainNotFound",
    "ChainShutDown",
    "NoChainSelected",
    "HandlesExhausted",
    "ConfigError",
    "SerializationError",
    "DeserializationError",
    "InternalError",
    "category_prefix",
    "ensure_tester_error",
]
