"""
wasmtester.callbacks: every host call a guest test module may import.

All functions live in the `env` module. Pointer and length arguments are
validated through the memory bridge before anything else happens; results
of variable size are returned through the guest's allocator callback.

Families
--------
process   tester_abort, eosio_exit, eosio_assert_message, prints_l,
          tester_get_arg_counts, tester_get_args, tester_clock_time_get,
          tester_execute
files     tester_fdstat_get, tester_open_file, tester_close_file,
          tester_write_file, tester_read_file, tester_read_whole_file
chains    tester_create_chain, tester_destroy_chain, tester_shutdown_chain,
          tester_get_chain_path, tester_replace_producer_keys,
          tester_replace_account_keys, tester_start_block,
          tester_finish_block, tester_get_head_block_info,
          tester_push_transaction, tester_exec_deferred,
          tester_select_chain_for_db
tables    db_*_i64 and db_{idx64,idx128,idx256,idx_double}_*
crypto    tester_sign, sha1, sha256, sha512, ripemd160
"""

from __future__ import annotations

import subprocess
import time
from pathlib import Path
from typing import Sequence

from chainsim.keys import PublicKey
from chainsim.state_db import SECONDARY_KINDS, SecondaryKind
from hostcore.errors import DeserializationError, GuestAssertion, GuestExit, MalformedArguments
from hostcore.logging import get_logger

from . import crypto_api, pipeline
from .abi_types import BlockInfo
from .files import Errno
from .memory import Guest, Span
from .registry import CallRegistry

log = get_logger("wasmtester.callbacks")

REGISTRY = CallRegistry()
ENV = "env"

CLOCK_REALTIME = 0
CLOCK_MONOTONIC = 1


def host_call(name: str, params: Sequence[str] = (), results: Sequence[str] = ()):
    return REGISTRY.add(ENV, name, params, results)


def _public_key(raw: bytes) -> PublicKey:
    try:
        return PublicKey.unpack(raw)
    except DeserializationError as e:
        raise MalformedArguments(f"cannot unpack public key: {e.message}") from e


# ---------------------------------------------------------------------------
# Process & console
# ---------------------------------------------------------------------------


@host_call("tester_abort")
def tester_abort(host, guest: Guest) -> None:
    raise GuestAssertion("called tester_abort")


@host_call("eosio_exit", ("i32",))
def eosio_exit(host, guest: Guest, code: int) -> None:
    raise GuestExit(code)


@host_call("eosio_assert_message", ("i32", "u32", "u32"))
def eosio_assert_message(host, guest: Guest, condition: int, ptr: int, length: int) -> None:
    msg = guest.span(ptr, length)
    if not condition:
        raise GuestAssertion(msg.text())


@host_call("prints_l", ("u32", "u32"))
def prints_l(host, guest: Guest, ptr: int, length: int) -> None:
    host.console(guest.read(ptr, length))


@host_call("tester_get_arg_counts", ("u32", "u32"), ("i32",))
def tester_get_arg_counts(host, guest: Guest, argc_ptr: int, buf_size_ptr: int) -> int:
    argc, buf_size = guest.ref(argc_ptr, "u32"), guest.ref(buf_size_ptr, "u32")
    argc.set(len(host.args))
    buf_size.set(sum(len(a.encode()) + 1 for a in host.args))
    return Errno.SUCCESS


@host_call("tester_get_args", ("u32", "u32"), ("i32",))
def tester_get_args(host, guest: Guest, argv_ptr: int, buf_ptr: int) -> int:
    encoded = [a.encode() + b"\0" for a in host.args]
    argv = guest.span(argv_ptr, 4 * len(encoded))
    buf = guest.span(buf_ptr, sum(len(a) for a in encoded))
    pointers = bytearray()
    offset = buf.ptr
    for arg in encoded:
        pointers += offset.to_bytes(4, "little")
        offset += len(arg)
    argv.write(bytes(pointers))
    buf.write(b"".join(encoded))
    return Errno.SUCCESS


@host_call("tester_clock_time_get", ("u32", "u64", "u32"), ("i32",))
def tester_clock_time_get(host, guest: Guest, clock_id: int, precision: int, time_ptr: int) -> int:
    out = guest.ref(time_ptr, "u64")
    if clock_id == CLOCK_REALTIME:
        out.set(time.time_ns())
    elif clock_id == CLOCK_MONOTONIC:
        out.set(time.monotonic_ns())
    else:
        return Errno.INVAL
    return Errno.SUCCESS


@host_call("tester_execute", ("u32", "u32"), ("i32",))
def tester_execute(host, guest: Guest, ptr: int, length: int) -> int:
    command = guest.text(ptr, length)
    log.debug("execute", extra={"command": command})
    return subprocess.run(command, shell=True).returncode


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@host_call("tester_fdstat_get", ("i32", "u32", "u32", "u32", "u32"), ("i32",))
def tester_fdstat_get(host, guest: Guest, fd: int, type_ptr: int, flags_ptr: int, base_ptr: int, inh_ptr: int) -> int:
    refs = (
        guest.ref(type_ptr, "u8"),
        guest.ref(flags_ptr, "u16"),
        guest.ref(base_ptr, "u64"),
        guest.ref(inh_ptr, "u64"),
    )
    err, st = host.files.fdstat(fd)
    if st is None:
        return err
    for ref, value in zip(refs, (st.filetype, st.flags, st.rights_base, st.rights_inheriting)):
        ref.set(int(value))
    return Errno.SUCCESS


@host_call("tester_open_file", ("u32", "u32", "u32", "u64", "u32", "u32"), ("i32",))
def tester_open_file(
    host, guest: Guest, ptr: int, length: int, oflags: int, rights: int, fdflags: int, fd_ptr: int
) -> int:
    path = guest.text(ptr, length)
    opened = guest.ref(fd_ptr, "i32")
    err, fd = host.files.open(path, oflags, rights, fdflags)
    if err == Errno.SUCCESS:
        opened.set(fd)
    return err


@host_call("tester_close_file", ("i32",), ("i32",))
def tester_close_file(host, guest: Guest, fd: int) -> int:
    return host.files.close(fd)


@host_call("tester_write_file", ("i32", "u32", "u32"), ("i32",))
def tester_write_file(host, guest: Guest, fd: int, ptr: int, length: int) -> int:
    return host.files.write(fd, guest.read(ptr, length))


@host_call("tester_read_file", ("i32", "u32", "u32", "u32"), ("i32",))
def tester_read_file(host, guest: Guest, fd: int, ptr: int, length: int, result_ptr: int) -> int:
    buf = guest.span(ptr, length)
    result = guest.ref(result_ptr, "i32")
    err, data = host.files.read(fd, len(buf))
    if err != Errno.SUCCESS:
        return err
    result.set(buf.write(data))
    return Errno.SUCCESS


@host_call("tester_read_whole_file", ("u32", "u32", "u32", "u32"), ("i32",))
def tester_read_whole_file(host, guest: Guest, ptr: int, length: int, cb_data: int, cb_alloc: int) -> int:
    data = host.files.read_whole_file(guest.text(ptr, length))
    if data is None:
        return 0
    guest.set_data(cb_data, cb_alloc, data)
    return 1


# ---------------------------------------------------------------------------
# Chains
# ---------------------------------------------------------------------------


@host_call("tester_create_chain", ("u32", "u32"), ("u32",))
def tester_create_chain(host, guest: Guest, ptr: int, length: int) -> int:
    snapshot = guest.text(ptr, length)
    return host.chains.create(Path(snapshot) if snapshot else None)


@host_call("tester_destroy_chain", ("u32",))
def tester_destroy_chain(host, guest: Guest, chain: int) -> None:
    host.chains.destroy(chain)


@host_call("tester_shutdown_chain", ("u32",))
def tester_shutdown_chain(host, guest: Guest, chain: int) -> None:
    host.chains.shutdown(chain)


@host_call("tester_get_chain_path", ("u32", "u32", "u32"), ("u32",))
def tester_get_chain_path(host, guest: Guest, chain: int, ptr: int, length: int) -> int:
    dest = guest.span(ptr, length)
    path = host.chains.get_chain_path(chain).encode()
    dest.write(path)
    return len(path)


@host_call("tester_replace_producer_keys", ("u32", "u32", "u32"))
def tester_replace_producer_keys(host, guest: Guest, chain: int, ptr: int, length: int) -> None:
    key = _public_key(guest.read(ptr, length))
    host.chains.get(chain).control.replace_producer_keys(key)


@host_call("tester_replace_account_keys", ("u32", "u64", "u64", "u32", "u32"))
def tester_replace_account_keys(
    host, guest: Guest, chain: int, account: int, permission: int, ptr: int, length: int
) -> None:
    key = _public_key(guest.read(ptr, length))
    session = host.chains.get(chain)
    session.mutating()
    session.control.replace_account_keys(account, permission, key)


@host_call("tester_start_block", ("u32", "i64"))
def tester_start_block(host, guest: Guest, chain: int, skip_ms: int) -> None:
    host.chains.get(chain).start_block(skip_ms)


@host_call("tester_finish_block", ("u32",))
def tester_finish_block(host, guest: Guest, chain: int) -> None:
    host.chains.get(chain).finish_block()


@host_call("tester_get_head_block_info", ("u32", "u32", "u32"))
def tester_get_head_block_info(host, guest: Guest, chain: int, cb_data: int, cb_alloc: int) -> None:
    num, block_id, slot = host.chains.get(chain).head_block()
    guest.set_data(cb_data, cb_alloc, BlockInfo(num, block_id, slot).to_bin())


@host_call("tester_push_transaction", ("u32", "u32", "u32", "u32", "u32"))
def tester_push_transaction(host, guest: Guest, chain: int, ptr: int, length: int, cb_data: int, cb_alloc: int) -> None:
    args = guest.read(ptr, length)
    trace = pipeline.push_transaction(host.chains.get(chain), args)
    guest.set_data(cb_data, cb_alloc, trace.to_bin())


@host_call("tester_exec_deferred", ("u32", "u32", "u32"), ("i32",))
def tester_exec_deferred(host, guest: Guest, chain: int, cb_data: int, cb_alloc: int) -> int:
    trace = pipeline.exec_deferred(host.chains.get(chain))
    if trace is None:
        return 0
    guest.set_data(cb_data, cb_alloc, trace.to_bin())
    return 1


@host_call("tester_select_chain_for_db", ("u32",))
def tester_select_chain_for_db(host, guest: Guest, chain: int) -> None:
    host.chains.select_for_queries(chain)


# ---------------------------------------------------------------------------
# Primary index
# ---------------------------------------------------------------------------

_PARTITION = ("u64", "u64", "u64")


@host_call("db_get_i64", ("i32", "u32", "u32"), ("i32",))
def db_get_i64(host, guest: Guest, it: int, ptr: int, length: int) -> int:
    buf = guest.span(ptr, length)
    value = host.read_context().primary.get(it)
    if not length:
        return len(value)
    return buf.write(value)


@host_call("db_next_i64", ("i32", "u32"), ("i32",))
def db_next_i64(host, guest: Guest, it: int, primary_ptr: int) -> int:
    out = guest.ref(primary_ptr, "u64")
    nxt, primary = host.read_context().primary.next(it)
    if primary is not None:
        out.set(primary)
    return nxt


@host_call("db_previous_i64", ("i32", "u32"), ("i32",))
def db_previous_i64(host, guest: Guest, it: int, primary_ptr: int) -> int:
    out = guest.ref(primary_ptr, "u64")
    prev, primary = host.read_context().primary.previous(it)
    if primary is not None:
        out.set(primary)
    return prev


@host_call("db_find_i64", _PARTITION + ("u64",), ("i32",))
def db_find_i64(host, guest: Guest, code: int, scope: int, table: int, primary: int) -> int:
    return host.read_context().primary.find(code, scope, table, primary)


@host_call("db_lowerbound_i64", _PARTITION + ("u64",), ("i32",))
def db_lowerbound_i64(host, guest: Guest, code: int, scope: int, table: int, primary: int) -> int:
    return host.read_context().primary.lowerbound(code, scope, table, primary)


@host_call("db_upperbound_i64", _PARTITION + ("u64",), ("i32",))
def db_upperbound_i64(host, guest: Guest, code: int, scope: int, table: int, primary: int) -> int:
    return host.read_context().primary.upperbound(code, scope, table, primary)


@host_call("db_end_i64", _PARTITION, ("i32",))
def db_end_i64(host, guest: Guest, code: int, scope: int, table: int) -> int:
    return host.read_context().primary.end(code, scope, table)


# ---------------------------------------------------------------------------
# Secondary indices
# ---------------------------------------------------------------------------


def _register_secondary(kind: SecondaryKind) -> None:
    """Register the seven db_<kind>_* calls for one secondary key family.

    idx256 keys are passed as (pointer, word count) where the count of
    128-bit words must be 2; every other family passes a bare pointer.
    """
    wide = kind.name == "idx256"
    key_params = ("u32", "u32") if wide else ("u32",)
    prefix = f"db_{kind.name}_"

    def key_span(guest: Guest, key_args: Sequence[int]) -> Span:
        if wide and key_args[1] != 2:
            raise MalformedArguments(f"{kind.name} key must be 2 words", words=key_args[1])
        return guest.span(key_args[0], kind.size)

    def load(span: Span):
        try:
            return kind.validate(kind.decode(span.read()))
        except ValueError as e:
            raise MalformedArguments(str(e)) from e

    def bridge(host):
        return host.read_context().secondary(kind.name)

    @host_call(prefix + "find_secondary", _PARTITION + key_params + ("u32",), ("i32",))
    def find_secondary(host, guest: Guest, code: int, scope: int, table: int, *rest: int) -> int:
        key = key_span(guest, rest[:-1])
        out = guest.ref(rest[-1], "u64")
        it, primary = bridge(host).find_secondary(code, scope, table, load(key))
        if primary is not None:
            out.set(primary)
        return it

    @host_call(prefix + "find_primary", _PARTITION + key_params + ("u64",), ("i32",))
    def find_primary(host, guest: Guest, code: int, scope: int, table: int, *rest: int) -> int:
        out = key_span(guest, rest[:-1])
        it, key = bridge(host).find_primary(code, scope, table, rest[-1])
        if key is not None:
            out.write(kind.encode(key))
        return it

    def bound(method: str):
        def handler(host, guest: Guest, code: int, scope: int, table: int, *rest: int) -> int:
            key = key_span(guest, rest[:-1])
            out = guest.ref(rest[-1], "u64")
            it, found, primary = getattr(bridge(host), method)(code, scope, table, load(key))
            if found is not None:
                key.write(kind.encode(found))
                out.set(primary)
            return it

        return handler

    host_call(prefix + "lowerbound", _PARTITION + key_params + ("u32",), ("i32",))(bound("lowerbound_secondary"))
    host_call(prefix + "upperbound", _PARTITION + key_params + ("u32",), ("i32",))(bound("upperbound_secondary"))

    @host_call(prefix + "end", _PARTITION, ("i32",))
    def end(host, guest: Guest, code: int, scope: int, table: int) -> int:
        return bridge(host).end_secondary(code, scope, table)

    def step(method: str):
        def handler(host, guest: Guest, it: int, primary_ptr: int) -> int:
            out = guest.ref(primary_ptr, "u64")
            nxt, primary = getattr(bridge(host), method)(it)
            if primary is not None:
                out.set(primary)
            return nxt

        return handler

    host_call(prefix + "next", ("i32", "u32"), ("i32",))(step("next_secondary"))
    host_call(prefix + "previous", ("i32", "u32"), ("i32",))(step("previous_secondary"))


for _kind in SECONDARY_KINDS.values():
    _register_secondary(_kind)


# ---------------------------------------------------------------------------
# Crypto
# ---------------------------------------------------------------------------


@host_call("tester_sign", ("u32", "u32", "u32", "u32", "u32"), ("u32",))
def tester_sign(host, guest: Guest, key_ptr: int, key_len: int, hash_ptr: int, sig_ptr: int, sig_len: int) -> int:
    key = guest.read(key_ptr, key_len)
    digest = guest.ref(hash_ptr, "bytes32")
    dest = guest.span(sig_ptr, sig_len)
    signature = crypto_api.sign(key, digest.get())
    dest.write(signature)
    return len(signature)


def _register_hash(name: str) -> None:
    fn, size = crypto_api.HASHES[name]

    def handler(host, guest: Guest, ptr: int, length: int, out_ptr: int) -> None:
        data = guest.span(ptr, length)
        out = guest.span(out_ptr, size)
        out.write(fn(data.read()))

    host_call(name, ("u32", "u32", "u32"))(handler)


for _name in crypto_api.HASHES:
    _register_hash(_name)


__all__ = ["REGISTRY", "ENV", "host_call"]
