from __future__ import annotations

import pytest

from chainsim.names import string_to_name
from chainsim.types import Action, PermissionLevel, TransactionStatus
from chainsim.wire import Writer
from hostcore.errors import MalformedArguments
from wasmtester.abi_types import PushTransactionArgs
from wasmtester.pipeline import exec_deferred, push_transaction, unpack_arguments


def test_push_executes_and_invalidates_reads(session, chain_helpers) -> None:
    name = chain_helpers.deploy(session)
    before = session.read_context
    args = chain_helpers.push_args(session, [chain_helpers.put_action("tester", 1, 10, 100)])
    trace = push_transaction(session, args)
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert trace.cpu_usage_us == session.config.billed_cpu_time_us
    assert trace.action_traces[0].console == "stored 1"
    assert session.read_context is not before
    assert session.read_context.primary.find(name, name, chain_helpers.ROWS, 1) >= 0


def test_push_without_keys_fails_authorization(session, chain_helpers) -> None:
    chain_helpers.deploy(session)
    args = chain_helpers.push_args(session, [chain_helpers.put_action("tester", 1, 1, 1)], keys=[])
    trace = push_transaction(session, args)
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "unsatisfied_authorization" in trace.except_


def test_assertion_is_reported_in_trace(session, chain_helpers) -> None:
    chain_helpers.deploy(session)
    act = Action.of("tester", "fail", [PermissionLevel.of("tester")], Writer().string("nope").getvalue())
    trace = push_transaction(session, chain_helpers.push_args(session, [act]))
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "assertion failure with message: nope" in trace.except_
    assert trace.action_traces[0].except_ is not None


def test_push_starts_block_when_none_pending(session, chain_helpers) -> None:
    chain_helpers.deploy(session)
    session.finish_block()
    assert not session.control.is_building_block
    trace = push_transaction(session, chain_helpers.push_args(session, [chain_helpers.put_action("tester", 2, 2, 2)]))
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert session.control.is_building_block


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"\x01",
        PushTransactionArgs(transaction=b"\x00\x01").to_bin(),
        PushTransactionArgs(transaction=b"").to_bin() + b"\x00",
    ],
)
def test_malformed_arguments(session, data: bytes) -> None:
    with pytest.raises(MalformedArguments):
        push_transaction(session, data)


def test_unpack_arguments(session, chain_helpers) -> None:
    args, trx = unpack_arguments(chain_helpers.push_args(session, [chain_helpers.put_action("tester", 1, 1, 1)]))
    assert len(args.keys) == 1
    assert trx.actions[0].account == string_to_name("tester")


def test_exec_deferred(session, chain_helpers) -> None:
    name = chain_helpers.deploy(session)
    assert exec_deferred(session) is None

    args = chain_helpers.push_args(session, [chain_helpers.put_action("tester", 9, 9, 9)], delay_sec=1)
    delayed = push_transaction(session, args)
    assert delayed.status == TransactionStatus.DELAYED
    assert exec_deferred(session) is None

    session.start_block(skip_ms=1000)
    trace = exec_deferred(session)
    assert trace is not None
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert trace.scheduled
    assert trace.id == delayed.id
    assert session.read_context.primary.find(name, name, chain_helpers.ROWS, 9) >= 0
    assert exec_deferred(session) is None
