#!/usr/bin/env python3
"""
wasm-tester

Run a WebAssembly test module against simulated chains.

Examples:
  wasm-tester tests.wasm
  wasm-tester -v tests.wasm --filter token

Everything after the module path is passed to the guest unchanged; the guest
sees the module path itself as argv[0].

Exit codes:
  0 on success, 1 on any failure (printed to stderr with a category prefix).
"""
from __future__ import annotations

import argparse
import sys
from typing import List, Optional, Tuple

import wasmtime

from hostcore.config import load_config
from hostcore.errors import TesterError, category_prefix, ensure_tester_error
from hostcore.logging import configure, get_logger

from .runner import run_module

log = get_logger("wasmtester.cli")

USAGE = "usage: wasm-tester [-h or --help] [-v or --verbose] file.wasm [args for wasm]"


class UsageError(Exception):
    pass


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise UsageError(message)


def build_parser() -> argparse.ArgumentParser:
    p = _Parser(prog="wasm-tester", add_help=False, usage=USAGE)
    p.add_argument("-h", "--help", action="store_true")
    p.add_argument("-v", "--verbose", action="store_true")
    p.add_argument("wasm", nargs="?")
    return p


def split_argv(argv: List[str]) -> Tuple[List[str], List[str]]:
    """Harness options end at the module path; the rest belongs to the guest."""
    for i, arg in enumerate(argv):
        if not arg.startswith("-"):
            return argv[: i + 1], argv[i + 1 :]
    return argv, []


def eprint(*a: object) -> None:
    print(*a, file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    try:
        own, guest_args = split_argv(sys.argv[1:] if argv is None else list(argv))
        ns = build_parser().parse_args(own)
    except UsageError as e:
        eprint(str(e).replace("unrecognized arguments", "unknown option"))
        eprint(USAGE)
        return 1
    if ns.help:
        eprint(USAGE)
        return 0
    if not ns.wasm:
        eprint(USAGE)
        return 1

    try:
        cfg = load_config()
        configure(level="DEBUG" if ns.verbose else cfg.log_level, stream=sys.stderr)
        code = run_module(ns.wasm, [ns.wasm, *guest_args], cfg)
    except TesterError as e:
        eprint(f"{category_prefix(e)}{e}")
        return 1
    except wasmtime.Trap as e:
        eprint(f"wasm trap: {e}")
        return 1
    except Exception as e:
        log.debug("unhandled error", exc_info=True)
        err = ensure_tester_error(e)
        eprint(f"{category_prefix(err)}{err}")
        return 1
    if code != 0:
        eprint(f"guest exit: guest exited with code {code}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
