from __future__ import annotations

import logging

import pytest

from chainsim.contracts import ApplyContext, Contract, action
from chainsim.controller import Controller
from chainsim.keys import PrivateKey
from chainsim.names import string_to_name
from chainsim.types import Action, Authority, PackedTransaction, PermissionLevel, SignedTransaction, Transaction
from chainsim.wire import Writer
from hostcore.config import DEV_PRODUCER_KEY, build_config
from wasmtester.abi_types import PushTransactionArgs
from wasmtester.manager import ChainManager
from wasmtester.session import ChainSession

ROWS = string_to_name("rows")


class TableContract(Contract):
    """Small contract used across the test suites.

    put(primary u64, by64 u64, by128 u128, value bytes)
    erase(primary u64)
    fail(message string)
    later(sender_id u64, delay u32, primary u64)   schedules a deferred put
    """

    @action("put")
    def put(self, ctx: ApplyContext) -> None:
        r = ctx.reader()
        primary, by64, by128, value = r.u64(), r.u64(), r.u128(), r.bytes_()
        ctx.require_auth(ctx.receiver)
        ctx.db_store(ctx.receiver, ROWS, primary, value)
        ctx.idx_store("idx64", ctx.receiver, ROWS, primary, by64)
        ctx.idx_store("idx128", ctx.receiver, ROWS, primary, by128)
        ctx.print("stored ", primary)

    @action("erase")
    def erase(self, ctx: ApplyContext) -> None:
        primary = ctx.reader().u64()
        ctx.require_auth(ctx.receiver)
        ctx.db_remove(ctx.receiver, ROWS, primary)
        ctx.idx_remove("idx64", ctx.receiver, ROWS, primary)
        ctx.idx_remove("idx128", ctx.receiver, ROWS, primary)

    @action("fail")
    def fail(self, ctx: ApplyContext) -> None:
        ctx.check(False, ctx.reader().string())

    @action("later")
    def later(self, ctx: ApplyContext) -> None:
        r = ctx.reader()
        sender_id, delay, primary = r.u64(), r.u32(), r.u64()
        act = put_action(ctx.receiver, primary, primary, primary, b"deferred")
        trx = Transaction(
            expiration=ctx.current_time // 1_000_000 + 60,
            delay_sec=delay,
            actions=[act],
        )
        ctx.send_deferred(sender_id, trx)


def put_data(primary: int, by64: int, by128: int, value: bytes) -> bytes:
    return Writer().u64(primary).u64(by64).u128(by128).bytes_(value).getvalue()


def put_action(account, primary: int, by64: int, by128: int, value: bytes = b"v") -> Action:
    return Action.of(account, "put", [PermissionLevel.of(account)], put_data(primary, by64, by128, value))


def dev_authority() -> Authority:
    return Authority.from_key(PrivateKey.from_string(DEV_PRODUCER_KEY).public_key())


def deploy_table_contract(session: ChainSession, account: str = "tester") -> int:
    """Create `account` (controlled by the dev key) and deploy TableContract on it."""
    control = session.control
    session.start_if_needed()
    name = string_to_name(account)
    control.db.create_account(name, control.pending_block_time, dev_authority(), dev_authority())
    control.deploy(name, TableContract())
    session.mutating()
    return name


def push_args(session: ChainSession, actions, keys=None, delay_sec: int = 0) -> bytes:
    control = session.control
    trx = Transaction(
        expiration=control.head_block_time // 1_000_000 + 60,
        delay_sec=delay_sec,
        actions=list(actions),
    )
    if keys is None:
        keys = [PrivateKey.from_string(DEV_PRODUCER_KEY)]
    return PushTransactionArgs(transaction=trx.pack(), keys=list(keys)).to_bin()


def push_direct(control: Controller, actions, keys=None, **fields):
    """Sign and push straight into a controller with a pending block."""
    fields.setdefault("expiration", control.pending_block_time // 1_000_000 + 60)
    signed = SignedTransaction(Transaction(actions=list(actions), **fields))
    if keys is None:
        keys = [PrivateKey.from_string(DEV_PRODUCER_KEY)]
    for key in keys:
        signed.sign(key, control.chain_id)
    packed = PackedTransaction.from_signed(signed)
    recovered = control.start_recover_keys(packed).result()
    return control.push_transaction(packed, recovered, 2000, True)


@pytest.fixture
def config(tmp_path):
    return build_config(temp_root=tmp_path)


@pytest.fixture
def dev_key() -> PrivateKey:
    return PrivateKey.from_string(DEV_PRODUCER_KEY)


@pytest.fixture
def controller(config, tmp_path, dev_key):
    """A controller with block 2 pending."""
    ctrl = Controller(config, tmp_path / "chain", dev_key.public_key())
    ctrl.start_block(ctrl.head_block_time + 500_000)
    yield ctrl
    ctrl.close()


@pytest.fixture
def session(config):
    s = ChainSession(config, handle=0)
    yield s
    s.destroy()


@pytest.fixture
def manager(config):
    m = ChainManager(config)
    yield m
    m.teardown()


@pytest.fixture
def chain_helpers():
    """Access to the shared contract and transaction builders."""

    class _Helpers:
        TableContract = TableContract
        ROWS = ROWS
        put_data = staticmethod(put_data)
        put_action = staticmethod(put_action)
        dev_authority = staticmethod(dev_authority)
        deploy = staticmethod(deploy_table_contract)
        push_args = staticmethod(push_args)
        push_direct = staticmethod(push_direct)

    return _Helpers


@pytest.fixture
def isolated_logging():
    """Undo `hostcore.logging.configure` calls made by the code under test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
        if h not in handlers:
            h.close()
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
