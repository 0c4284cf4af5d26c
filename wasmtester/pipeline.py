"""
wasmtester.pipeline: turn guest-supplied bytes into executed transactions.

push_transaction:
  1) unpack `PushTransactionArgs` and the transaction it carries
  2) build the signed envelope (given signatures + context-free data)
  3) make sure the session has a pending block
  4) sign once per supplied key over the chain id
  5) recover signing keys on the controller's worker pool and wait
  6) execute with explicit CPU billing
  7) convert the trace to its v0 wire form

Execution failures (assertions, missing authority, expiration, resource
limits) are recorded in the returned trace. Only input that cannot be decoded
raises, as `MalformedArguments`.
"""

from __future__ import annotations

import time
from typing import Optional

from chainsim.types import PackedTransaction, SignedTransaction, Transaction
from hostcore.errors import DeserializationError, MalformedArguments
from hostcore.logging import get_logger

from .abi_types import PushTransactionArgs, TransactionTraceV0
from .session import ChainSession

log = get_logger("wasmtester.pipeline")


def unpack_arguments(data: bytes) -> tuple:
    try:
        args = PushTransactionArgs.from_bin(data)
        trx = Transaction.unpack(args.transaction)
    except DeserializationError as e:
        raise MalformedArguments(f"cannot unpack push_transaction arguments: {e.message}") from e
    return args, trx


def push_transaction(session: ChainSession, data: bytes) -> TransactionTraceV0:
    args, trx = unpack_arguments(data)
    signed = SignedTransaction(trx, list(args.signatures), list(args.context_free_data))

    session.start_if_needed()
    control = session.control
    for key in args.keys:
        signed.sign(key, control.chain_id)
    packed = PackedTransaction.from_signed(signed)

    started = time.perf_counter_ns()
    try:
        keys = control.start_recover_keys(packed).result()
    except DeserializationError as e:
        raise MalformedArguments(f"cannot recover signing keys: {e.message}") from e
    trace = control.push_transaction(packed, keys, session.config.billed_cpu_time_us, True)
    session.mutating()
    log.info(
        "transaction took %d us",
        (time.perf_counter_ns() - started) // 1000,
        extra={"chain": session.handle, "trx": trace.id.hex(), "status": str(trace.status)},
    )
    return TransactionTraceV0.from_trace(trace)


def exec_deferred(session: ChainSession) -> Optional[TransactionTraceV0]:
    """Execute the earliest due scheduled transaction, if any."""
    session.start_if_needed()
    control = session.control
    due = control.earliest_due()
    if due is None:
        return None
    trace = control.push_scheduled_transaction(due.trx_id, session.config.billed_cpu_time_us, True)
    session.mutating()
    log.info("deferred transaction executed", extra={"chain": session.handle, "trx": trace.id.hex()})
    return TransactionTraceV0.from_trace(trace)


__all__ = ["unpack_arguments", "push_transaction", "exec_deferred"]
