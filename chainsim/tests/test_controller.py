from __future__ import annotations

import pytest

from chainsim.contracts import newaccount_action
from chainsim.controller import SYSTEM_ACCOUNT, Controller, read_blocks_log
from chainsim.errors import BlockValidateException
from chainsim.keys import PrivateKey
from chainsim.names import string_to_name
from chainsim.types import Action, PermissionLevel, TransactionStatus
from hostcore.errors import InternalError

BOB = string_to_name("bob")


def _create_bob(ctrl, helpers):
    auth = helpers.dev_authority()
    return helpers.push_direct(ctrl, [newaccount_action("eosio", "bob", auth, auth)])


def test_genesis(controller: Controller) -> None:
    assert controller.head_block_num == 1
    assert SYSTEM_ACCOUNT in controller.db.accounts
    assert controller.pending.block_num == 2
    assert len(controller.chain_id) == 32


def test_chain_id_is_deterministic(config, tmp_path, dev_key) -> None:
    a = Controller(config, tmp_path / "a", dev_key.public_key())
    b = Controller(config, tmp_path / "b", dev_key.public_key())
    try:
        assert a.chain_id == b.chain_id
        assert a.head_block_id == b.head_block_id
    finally:
        a.close()
        b.close()


def test_block_time_must_advance(controller: Controller) -> None:
    with pytest.raises(BlockValidateException):
        controller.start_block(controller.head_block_time + 500_000)
    controller.abort_block()
    with pytest.raises(BlockValidateException):
        controller.start_block(controller.head_block_time)


def test_commit_requires_finalize(controller: Controller) -> None:
    with pytest.raises(InternalError):
        controller.commit_block()


def test_finalize_commit_advances_head(controller: Controller, dev_key) -> None:
    before = controller.head_block_time
    controller.finalize_block(dev_key)
    header = controller.commit_block()
    assert controller.head_block_num == 2
    assert header.block_num == 2
    assert controller.head_block_time == before + 500_000
    assert controller.head_block_id[:4] == (2).to_bytes(4, "big")
    assert not controller.is_building_block

    records = list(read_blocks_log(controller.blocks_dir / "blocks.log"))
    assert [r["block_num"] for r in records] == [1, 2]
    assert records[1]["producer_signature"] is not None


def test_newaccount(controller: Controller, chain_helpers) -> None:
    trace = _create_bob(controller, chain_helpers)
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert BOB in controller.db.accounts
    assert trace.action_traces[0].receipt is not None
    assert trace.receipt.cpu_usage_us == 2000


def test_duplicate_transaction(controller: Controller, chain_helpers) -> None:
    assert _create_bob(controller, chain_helpers).status == TransactionStatus.EXECUTED
    again = _create_bob(controller, chain_helpers)
    assert again.status == TransactionStatus.HARD_FAIL
    assert "tx_duplicate" in again.except_


def test_account_name_taken(controller: Controller, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(controller, [newaccount_action("eosio", "eosio", auth, auth)])
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "account_name_exists_exception" in trace.except_


def test_missing_signature(controller: Controller, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(controller, [newaccount_action("eosio", "bob", auth, auth)], keys=[])
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "unsatisfied_authorization" in trace.except_
    assert BOB not in controller.db.accounts


def test_wrong_signer(controller: Controller, chain_helpers) -> None:
    other = PrivateKey(b"\x01" * 32)
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(controller, [newaccount_action("eosio", "bob", auth, auth)], keys=[other])
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "unsatisfied_authorization" in trace.except_


def test_expired_transaction(controller: Controller, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(
        controller,
        [newaccount_action("eosio", "bob", auth, auth)],
        expiration=controller.pending_block_time // 1_000_000 - 1,
    )
    assert "expired_tx_exception" in trace.except_


def test_expiration_too_far(controller: Controller, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(
        controller,
        [newaccount_action("eosio", "bob", auth, auth)],
        expiration=controller.pending_block_time // 1_000_000 + 7200,
    )
    assert "tx_exp_too_far_exception" in trace.except_


def test_no_actions(controller: Controller, chain_helpers) -> None:
    trace = chain_helpers.push_direct(controller, [])
    assert "tx_no_action" in trace.except_


def test_cpu_limit(controller: Controller, chain_helpers) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(
        controller, [newaccount_action("eosio", "bob", auth, auth)], max_cpu_usage_ms=1
    )
    assert "tx_cpu_usage_exceeded" in trace.except_
    assert BOB not in controller.db.accounts


def test_unknown_receiver(controller: Controller, chain_helpers) -> None:
    act = Action.of("nobody", "hi", [PermissionLevel.of("eosio")])
    trace = chain_helpers.push_direct(controller, [act])
    assert trace.status == TransactionStatus.HARD_FAIL
    assert "unknown_account_exception" in trace.except_
    assert trace.action_traces[0].except_ is not None


def test_account_without_contract_accepts_actions(controller: Controller, chain_helpers) -> None:
    _create_bob(controller, chain_helpers)
    trace = chain_helpers.push_direct(controller, [Action.of("bob", "anything", [PermissionLevel.of("bob")])])
    assert trace.status == TransactionStatus.EXECUTED, trace.except_
    assert trace.action_traces[0].receipt.recv_sequence == 1


def test_abort_block_discards_pending_state(controller: Controller, chain_helpers) -> None:
    _create_bob(controller, chain_helpers)
    controller.abort_block()
    assert BOB not in controller.db.accounts
    assert controller.head_block_num == 1


def test_delayed_transaction(controller: Controller, chain_helpers, dev_key) -> None:
    auth = chain_helpers.dev_authority()
    trace = chain_helpers.push_direct(controller, [newaccount_action("eosio", "bob", auth, auth)], delay_sec=1)
    assert trace.status == TransactionStatus.DELAYED
    assert controller.earliest_due() is None

    controller.finalize_block(dev_key)
    controller.commit_block()
    controller.start_block(controller.head_block_time + 1_000_000)
    due = controller.earliest_due()
    assert due is not None and due.trx_id == trace.id
    done = controller.push_scheduled_transaction(due.trx_id, 2000)
    assert done.status == TransactionStatus.EXECUTED, done.except_
    assert done.scheduled
    assert BOB in controller.db.accounts
    assert controller.db.generated == {}


def test_scheduled_transaction_expires(config, tmp_path, dev_key, chain_helpers) -> None:
    cfg = config.with_overrides(deferred_expiration_window_s=1)
    ctrl = Controller(cfg, tmp_path / "c", dev_key.public_key())
    try:
        ctrl.start_block(ctrl.head_block_time + 500_000)
        auth = chain_helpers.dev_authority()
        chain_helpers.push_direct(ctrl, [newaccount_action("eosio", "bob", auth, auth)], delay_sec=1)
        ctrl.finalize_block(dev_key)
        ctrl.commit_block()
        ctrl.start_block(ctrl.head_block_time + 5_000_000)
        due = ctrl.earliest_due()
        trace = ctrl.push_scheduled_transaction(due.trx_id, 2000)
        assert trace.status == TransactionStatus.EXPIRED
        assert BOB not in ctrl.db.accounts
    finally:
        ctrl.close()


def test_replace_account_keys(controller: Controller, chain_helpers) -> None:
    _create_bob(controller, chain_helpers)
    other = PrivateKey(b"\x02" * 32)
    controller.replace_account_keys("bob", "active", other.public_key())
    act = Action.of("bob", "anything", [PermissionLevel.of("bob")])
    assert chain_helpers.push_direct(controller, [act]).status == TransactionStatus.HARD_FAIL
    assert chain_helpers.push_direct(controller, [act], keys=[other]).status == TransactionStatus.EXECUTED


def test_close_writes_state_and_is_idempotent(config, tmp_path, dev_key) -> None:
    ctrl = Controller(config, tmp_path / "c", dev_key.public_key())
    ctrl.close()
    ctrl.close()
    assert (tmp_path / "c" / "state" / "state.cbor").exists()
    with pytest.raises(InternalError):
        ctrl.start_block(ctrl.head_block_time + 500_000)


def test_plugin_contracts_are_deployed(config, tmp_path, dev_key) -> None:
    cfg = config.with_overrides(contracts=("alice=chainsim.contracts:SystemContract",))
    ctrl = Controller(cfg, tmp_path / "p", dev_key.public_key(), contracts=["carol=chainsim.contracts:SystemContract"])
    try:
        assert string_to_name("alice") in ctrl.contracts
        assert string_to_name("carol") in ctrl.contracts
    finally:
        ctrl.close()
