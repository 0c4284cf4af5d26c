"""
wasmtester.runner: compile, link and run one guest module.

  1) compile the module with wasmtime
  2) resolve every import against the host-call registry
  3) link the registry into a fresh `Linker` bound to a `TesterHost`
  4) instantiate and call `_start`

A failure raised inside a host call reaches us as a wasmtime trap; the host
records the original exception and it is re-raised here so callers see the
typed error. `eosio_exit(0)` ends the run successfully.
"""

from __future__ import annotations

from pathlib import Path
from typing import IO, List, Optional, Union

import wasmtime

from hostcore.config import TesterConfig
from hostcore.errors import GuestExit, HostFault
from hostcore.logging import get_logger

from .callbacks import REGISTRY
from .host import TesterHost
from .registry import CallRegistry

log = get_logger("wasmtester.runner")

ENTRY_POINT = "_start"


def compile_module(engine: wasmtime.Engine, source: Union[str, Path, bytes]) -> wasmtime.Module:
    if isinstance(source, (bytes, bytearray)):
        return wasmtime.Module(engine, source)
    try:
        return wasmtime.Module.from_file(engine, str(source))
    except FileNotFoundError as e:
        raise HostFault(f"cannot read wasm module: {source}") from e


def run_module(
    source: Union[str, Path, bytes],
    args: List[str],
    config: Optional[TesterConfig] = None,
    *,
    stdin: Optional[IO[bytes]] = None,
    stdout: Optional[IO[bytes]] = None,
    stderr: Optional[IO[bytes]] = None,
    registry: CallRegistry = REGISTRY,
) -> int:
    """Run `_start`; returns the guest's exit code (0 unless it called eosio_exit)."""
    engine = wasmtime.Engine()
    store = wasmtime.Store(engine)
    module = compile_module(engine, source)
    used = registry.resolve(module)

    with TesterHost(args, config, stdin=stdin, stdout=stdout, stderr=stderr) as host:
        linker = wasmtime.Linker(engine)
        registry.link(linker, host, used)
        try:
            instance = linker.instantiate(store, module)
            start = instance.exports(store).get(ENTRY_POINT)
            if not isinstance(start, wasmtime.Func):
                raise HostFault(f"module does not export {ENTRY_POINT}")
            start(store)
        except GuestExit as e:
            return _exit(e)
        except (wasmtime.Trap, wasmtime.WasmtimeError) as e:
            fault = host.fault
            if fault is None:
                raise
            if isinstance(fault, GuestExit):
                return _exit(fault)
            raise fault from e
    return 0


def _exit(e: GuestExit) -> int:
    log.debug("guest exit", extra={"code": e.exit_code})
    return e.exit_code


__all__ = ["ENTRY_POINT", "compile_module", "run_module"]
