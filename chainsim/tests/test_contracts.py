from __future__ import annotations

import pytest

from chainsim.contracts import (
    ApplyContext,
    Contract,
    SystemContract,
    action,
    load_contract_spec,
    on_notify,
)
from chainsim.names import name_to_string, string_to_name
from chainsim.state_db import IDX64, IDX128
from chainsim.types import Action, Authority, PermissionLevel, TransactionStatus
from chainsim.wire import Writer
from hostcore.errors import ConfigError

TESTER = string_to_name("tester")


class Pinger(Contract):
    @action("ping")
    def ping(self, ctx: ApplyContext) -> None:
        ctx.require_recipient("listener")
        ctx.send_inline(Action.of(ctx.receiver, "pong", [PermissionLevel.of(ctx.receiver)]))

    @action("pong")
    def pong(self, ctx: ApplyContext) -> None:
        ctx.print("pong")


class Listener(Contract):
    @on_notify("pinger", "ping")
    def heard(self, ctx: ApplyContext) -> None:
        ctx.print("heard ", name_to_string(ctx.code))


@pytest.fixture
def chain(controller, chain_helpers):
    auth = chain_helpers.dev_authority()
    for name, contract in (("tester", chain_helpers.TableContract()), ("pinger", Pinger()), ("listener", Listener())):
        controller.db.create_account(string_to_name(name), controller.pending_block_time, auth, auth)
        controller.deploy(name, contract)
    return controller


def _rows(ctrl, code=TESTER):
    table = ctrl.db.find_table((code, code, string_to_name("rows")))
    return [] if table is None else list(table.keys)


def test_put_stores_row_and_indices(chain, chain_helpers) -> None:
    trace = chain_helpers.push_direct(chain, [chain_helpers.put_action("tester", 1, 10, 100)])
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert _rows(chain) == [1]
    at = trace.action_traces[0]
    assert at.console == "stored 1"
    assert at.account_ram_deltas[0].account == TESTER
    assert at.account_ram_deltas[0].delta > 0
    tid = (TESTER, TESTER, string_to_name("rows"))
    assert chain.db.find_secondary_table(IDX64, tid).entries == [(10, 1)]
    assert chain.db.find_secondary_table(IDX128, tid).entries == [(100, 1)]


def test_failure_reverts_whole_transaction(chain, chain_helpers) -> None:
    put = chain_helpers.put_action
    trace = chain_helpers.push_direct(chain, [put("tester", 1, 1, 1), put("tester", 1, 2, 2)])
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "already exists" in trace.except_
    assert _rows(chain) == []


def test_check_failure_message(chain, chain_helpers) -> None:
    act = Action.of("tester", "fail", [PermissionLevel.of("tester")], Writer().string("boom").getvalue())
    trace = chain_helpers.push_direct(chain, [act])
    assert "eosio_assert_message_exception" in trace.except_
    assert "assertion failure with message: boom" in trace.except_


def test_unknown_action(chain, chain_helpers) -> None:
    trace = chain_helpers.push_direct(chain, [Action.of("tester", "nope", [PermissionLevel.of("tester")])])
    assert "action_not_found_exception" in trace.except_


def test_require_auth(chain, chain_helpers) -> None:
    data = chain_helpers.put_data(1, 1, 1, b"")
    act = Action.of("tester", "put", [PermissionLevel.of("eosio")], data)
    trace = chain_helpers.push_direct(chain, [act])
    assert "missing_auth_exception" in trace.except_
    assert "missing authority of tester" in trace.except_


def test_truncated_action_data(chain, chain_helpers) -> None:
    act = Action.of("tester", "put", [PermissionLevel.of("tester")], b"\x01\x02")
    trace = chain_helpers.push_direct(chain, [act])
    assert "parse_error_exception" in trace.except_


def test_notification_and_inline_ordering(chain, chain_helpers) -> None:
    trace = chain_helpers.push_direct(chain, [Action.of("pinger", "ping", [PermissionLevel.of("pinger")])])
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    summary = [
        (a.action_ordinal, a.creator_action_ordinal, name_to_string(a.receiver), name_to_string(a.act.name))
        for a in trace.action_traces
    ]
    assert summary == [
        (1, 0, "pinger", "ping"),
        (2, 1, "listener", "ping"),
        (3, 1, "pinger", "pong"),
    ]
    assert trace.action_traces[1].console == "heard pinger"
    assert trace.action_traces[2].console == "pong"
    assert trace.action_traces[2].closest_unnotified_ancestor_action_ordinal == 1


def test_send_deferred(chain, chain_helpers) -> None:
    data = Writer().u64(7).u32(0).u64(42).getvalue()
    act = Action.of("tester", "later", [PermissionLevel.of("tester")], data)
    trace = chain_helpers.push_direct(chain, [act])
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    (gtrx,) = chain.db.generated.values()
    assert gtrx.sender == TESTER
    assert gtrx.sender_id == 7
    assert chain.earliest_due() is not None

    again = chain_helpers.push_direct(chain, [act], max_net_usage_words=1000)
    assert "same sender_id" in again.except_

    done = chain.push_scheduled_transaction(gtrx.trx_id, 2000)
    assert done.status == TransactionStatus.EXECUTED, done.except_
    assert _rows(chain) == [42]


def test_updateauth_and_deleteauth(chain, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    w = Writer().name("tester").name("custom").name("active")
    auth.write(w)
    update = Action.of("eosio", "updateauth", [PermissionLevel.of("tester")], w.getvalue())
    assert chain_helpers.push_direct(chain, [update]).status == TransactionStatus.EXECUTED
    perms = chain.db.accounts[TESTER].permissions
    assert string_to_name("custom") in perms

    delete = Action.of(
        "eosio", "deleteauth", [PermissionLevel.of("tester")], Writer().name("tester").name("custom").getvalue()
    )
    assert chain_helpers.push_direct(chain, [delete]).status == TransactionStatus.EXECUTED
    assert string_to_name("custom") not in perms


def test_invalid_authority_rejected(chain, chain_helpers) -> None:
    w = Writer().name("tester").name("custom").name("active")
    Authority(threshold=2, keys=chain_helpers.dev_authority().keys).write(w)
    update = Action.of("eosio", "updateauth", [PermissionLevel.of("tester")], w.getvalue())
    assert "invalid authority" in chain_helpers.push_direct(chain, [update]).except_


def test_load_contract_spec() -> None:
    account, contract = load_contract_spec("alice=chainsim.contracts:SystemContract")
    assert account == string_to_name("alice")
    assert isinstance(contract, SystemContract)


@pytest.mark.parametrize(
    "spec",
    ["nothing", "alice=chainsim.contracts", "alice=no.such.module:X", "alice=chainsim.contracts:ApplyContext"],
)
def test_load_contract_spec_errors(spec: str) -> None:
    with pytest.raises(ConfigError):
        load_contract_spec(spec)
