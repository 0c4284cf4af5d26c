"""
wasmtester: run WebAssembly test modules against simulated chains.

Modules
-------
memory      bounds-checked guest memory views, allocator callback
registry    host-function registry, import resolution, wasmtime linking
files       file table behind the guest's libc
session     one simulated chain and its block lifecycle
manager     chain handles and the table-query selection
iterators   integer iterator handles over primary/secondary indices
abi_types   binary records exchanged with the guest
pipeline    push_transaction / exec_deferred
crypto_api  hashes and signing
callbacks   the `env` host calls
runner      compile, link, run `_start`
cli         `wasm-tester` entry point
"""

from __future__ import annotations

from hostcore.version import __version__

__all__ = ["__version__"]
