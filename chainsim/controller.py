"""
chainsim.controller: deterministic single-producer blockchain controller.

This is the collaborator the tester drives. It offers exactly what the harness
asks for and keeps consensus/fee/validation internals thin:

  * genesis from (timestamp, producer key) → deterministic chain id
  * block lifecycle: start_block → push_* → finalize_block → commit_block
    (or abort_block), one undo checkpoint per pending block
  * push_transaction with expiration/duplicate/net/CPU/authorization checks;
    failures never raise, they are recorded in the returned trace
  * deferred (generated) transactions and push_scheduled_transaction
  * a worker pool for signature recovery (`start_recover_keys`)
  * blocks log (`blocks/blocks.log`, one CBOR record per block) and a state
    dump (`state/state.cbor`) written when the controller is closed
  * snapshots via `chainsim.snapshot`

Time units: microseconds for time points, block_timestamp slots in headers.
"""

from __future__ import annotations

import hashlib
import json
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Tuple

import cbor2

from hostcore.config import TesterConfig
from hostcore.errors import DeserializationError, InternalError
from hostcore.logging import get_logger

from .contracts import ApplyContext, Contract, SystemContract, load_contract_spec
from .errors import (
    BlockValidateException,
    ChainException,
    ChainIdMismatch,
    CpuUsageExceeded,
    DuplicateTransaction,
    ExpiredTransaction,
    NetUsageExceeded,
    NoActions,
    ParseError,
    TransactionExpirationTooFar,
    UnknownAccount,
    UnknownPermission,
    UnsatisfiedAuthorization,
)
from .keys import PrivateKey, PublicKey, Signature
from .names import NameLike, as_name, name_to_string
from .snapshot import SnapshotContents, read_snapshot, write_snapshot
from .state_db import StateDB
from .types import (
    ZERO_CHECKSUM,
    AccountDelta,
    Action,
    ActionReceipt,
    ActionTrace,
    Authority,
    BlockHeader,
    GeneratedTransaction,
    GenesisState,
    PackedTransaction,
    PermissionLevel,
    Transaction,
    TransactionReceiptHeader,
    TransactionStatus,
    TransactionTrace,
    format_time_point,
    from_block_slot,
    merkle,
    parse_time_point,
    to_block_slot,
)
from .wire import Writer

log = get_logger("chainsim.controller")

SYSTEM_ACCOUNT = as_name("eosio")
MAX_AUTHORITY_DEPTH = 6


# ---------------------------------------------------------------------------
# Block & transaction bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class PendingBlock:
    block_num: int
    timestamp: int  # slot
    time_us: int
    previous: bytes
    checkpoint: int
    receipt_digests: List[bytes] = field(default_factory=list)
    action_digests: List[bytes] = field(default_factory=list)
    transactions: List[Tuple[int, int, int, bytes]] = field(default_factory=list)
    header: Optional[BlockHeader] = None
    signature: Optional[Signature] = None


@dataclass
class TransactionContext:
    trace: TransactionTrace
    action_digests: List[bytes] = field(default_factory=list)

    def schedule(
        self,
        act: Action,
        receiver: int,
        creator: int,
        closest_unnotified: int,
        *,
        context_free: bool = False,
    ) -> int:
        ordinal = len(self.trace.action_traces) + 1
        self.trace.action_traces.append(
            ActionTrace(
                action_ordinal=ordinal,
                creator_action_ordinal=creator,
                closest_unnotified_ancestor_action_ordinal=closest_unnotified,
                receiver=receiver,
                act=act,
                context_free=context_free,
            )
        )
        return ordinal


def receipt_digest(status: TransactionStatus, cpu_us: int, net_words: int, trx_id: bytes) -> bytes:
    w = Writer().u8(int(status)).u32(cpu_us).varuint32(net_words).checksum256(trx_id)
    return hashlib.sha256(w.getvalue()).digest()


def _ram_deltas(before: Dict[int, int], after: Dict[int, int]) -> List[AccountDelta]:
    out = []
    for account in sorted(set(before) | set(after)):
        delta = after.get(account, 0) - before.get(account, 0)
        if delta:
            out.append(AccountDelta(account, delta))
    return out


def _level_json(level: PermissionLevel) -> str:
    return json.dumps(
        {"actor": name_to_string(level.actor), "permission": name_to_string(level.permission)},
        separators=(",", ":"),
    )


def read_blocks_log(path: Path) -> Iterator[dict]:
    """Yield the CBOR records of a blocks log in append order."""
    with open(path, "rb") as fh:
        while True:
            try:
                yield cbor2.load(fh)
            except cbor2.CBORDecodeEOF:
                return


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class Controller:
    def __init__(
        self,
        config: TesterConfig,
        data_dir: Path,
        producer_key: PublicKey,
        *,
        snapshot: Optional[Path] = None,
        expected_chain_id: Optional[bytes] = None,
        contracts: Iterable[str] = (),
    ) -> None:
        self.config = config
        self.data_dir = Path(data_dir)
        self.blocks_dir = self.data_dir / "blocks"
        self.state_dir = self.data_dir / "state"
        self.blocks_dir.mkdir(parents=True, exist_ok=True)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        self.contracts: Dict[int, Contract] = {SYSTEM_ACCOUNT: SystemContract()}
        self.pending: Optional[PendingBlock] = None
        self.closed = False
        self._pool = ThreadPoolExecutor(
            max_workers=config.recovery_threads, thread_name_prefix="chainsim-recover"
        )

        if snapshot is not None:
            self._init_from_snapshot(read_snapshot(snapshot), expected_chain_id)
        else:
            self._init_from_genesis(producer_key)
        self.producer_public_key = producer_key

        for spec in list(config.contracts) + list(contracts):
            account, contract = load_contract_spec(spec)
            self.deploy(account, contract)

    # ---- construction ----

    def _init_from_genesis(self, key: PublicKey) -> None:
        self.genesis = GenesisState(
            initial_timestamp=self.config.genesis_timestamp,
            initial_key=key,
            max_transaction_cpu_usage=self.config.max_transaction_cpu_us,
            max_transaction_lifetime=self.config.max_transaction_lifetime_s,
            deferred_trx_expiration_window=self.config.deferred_expiration_window_s,
        )
        self.chain_id = self.genesis.chain_id()
        slot = to_block_slot(parse_time_point(self.config.genesis_timestamp))
        header = BlockHeader(timestamp=slot, producer=SYSTEM_ACCOUNT, previous=ZERO_CHECKSUM)
        self.head_block_num = header.block_num
        self.head_block_id = header.id()
        self.head_block_time = from_block_slot(slot)

        self.db = StateDB()
        auth = Authority.from_key(key)
        self.db.create_account(SYSTEM_ACCOUNT, self.head_block_time, auth, auth, privileged=True)
        self._append_block_log(header, None, [])
        log.debug("genesis", extra={"chain_id": self.chain_id.hex()})

    def _init_from_snapshot(self, snap: SnapshotContents, expected: Optional[bytes]) -> None:
        if expected is not None and snap.chain_id != expected:
            raise ChainIdMismatch(
                f"snapshot chain id {snap.chain_id.hex()} does not match {expected.hex()}"
            )
        self.genesis = GenesisState(initial_timestamp=snap.genesis_timestamp, initial_key=snap.genesis_key)
        self.chain_id = snap.chain_id
        self.head_block_num = snap.head_num
        self.head_block_id = snap.head_id
        self.head_block_time = snap.head_time
        self.db = snap.state
        log.debug("loaded snapshot", extra={"chain_id": self.chain_id.hex(), "head": snap.head_num})

    def deploy(self, account: NameLike, contract: Contract) -> None:
        name = as_name(account)
        self.contracts[name] = contract
        if name in self.db.accounts:
            self.db.bump_account(name, "code_sequence")

    # ---- head / pending ----

    @property
    def head_block_timestamp(self) -> int:
        return to_block_slot(self.head_block_time)

    @property
    def is_building_block(self) -> bool:
        return self.pending is not None

    @property
    def pending_block_time(self) -> int:
        if self.pending is None:
            raise InternalError("no pending block")
        return self.pending.time_us

    def _require_open(self) -> None:
        if self.closed:
            raise InternalError("controller is closed")

    # ---- block lifecycle ----

    def start_block(self, when_us: int) -> None:
        self._require_open()
        if self.pending is not None:
            raise BlockValidateException("a block is already pending")
        slot = to_block_slot(when_us)
        if slot <= self.head_block_timestamp:
            raise BlockValidateException(
                f"block timestamp {format_time_point(when_us)} does not advance past head"
            )
        self.pending = PendingBlock(
            block_num=self.head_block_num + 1,
            timestamp=slot,
            time_us=from_block_slot(slot),
            previous=self.head_block_id,
            checkpoint=self.db.checkpoint(),
        )

    def abort_block(self) -> None:
        if self.pending is not None:
            self.db.revert(self.pending.checkpoint)
            self.pending = None

    def finalize_block(self, signer: PrivateKey) -> BlockHeader:
        if self.pending is None:
            raise InternalError("no pending block to finalize")
        p = self.pending
        p.header = BlockHeader(
            timestamp=p.timestamp,
            producer=SYSTEM_ACCOUNT,
            previous=p.previous,
            transaction_mroot=merkle(p.receipt_digests),
            action_mroot=merkle(p.action_digests),
        )
        p.signature = signer.sign(p.header.digest())
        return p.header

    def commit_block(self) -> BlockHeader:
        p = self.pending
        if p is None or p.header is None:
            raise InternalError("block must be finalized before commit")
        self.db.commit(p.checkpoint)
        self.head_block_num = p.block_num
        self.head_block_id = p.header.id()
        self.head_block_time = p.time_us
        self.pending = None
        self.db.prune_transactions(self.head_block_time // 1_000_000)
        self._append_block_log(p.header, p.signature, p.transactions)
        log.debug(
            "block committed",
            extra={"block": p.block_num, "trxs": len(p.transactions), "time": format_time_point(p.time_us)},
        )
        return p.header

    def _append_block_log(
        self, header: BlockHeader, signature: Optional[Signature], trxs: List[Tuple[int, int, int, bytes]]
    ) -> None:
        record = {
            "block_num": header.block_num,
            "id": header.id(),
            "header": header.pack(),
            "producer_signature": signature.data if signature else None,
            "transactions": [list(t) for t in trxs],
        }
        with open(self.blocks_dir / "blocks.log", "ab") as fh:
            cbor2.dump(record, fh, canonical=True)

    def _record_receipt(self, status: TransactionStatus, cpu_us: int, net_words: int, trx_id: bytes) -> TransactionReceiptHeader:
        assert self.pending is not None
        self.pending.receipt_digests.append(receipt_digest(status, cpu_us, net_words, trx_id))
        self.pending.transactions.append((int(status), cpu_us, net_words, trx_id))
        return TransactionReceiptHeader(status, cpu_us, net_words)

    # ---- signature recovery ----

    def start_recover_keys(self, packed: PackedTransaction) -> "Future[FrozenSet[PublicKey]]":
        digest = packed.digest(self.chain_id)
        sigs = tuple(packed.signatures)
        return self._pool.submit(lambda: frozenset(s.recover(digest) for s in sigs))

    # ---- authorization ----

    def _satisfies(self, auth: Authority, keys: FrozenSet[PublicKey], depth: int) -> bool:
        weight = sum(k.weight for k in auth.keys if k.key in keys)
        if weight >= auth.threshold:
            return True
        if depth < MAX_AUTHORITY_DEPTH:
            for pw in auth.accounts:
                acct = self.db.accounts.get(pw.permission.actor)
                perm = None if acct is None else acct.permissions.get(pw.permission.permission)
                if perm is not None and self._satisfies(perm.auth, keys, depth + 1):
                    weight += pw.weight
                    if weight >= auth.threshold:
                        return True
        return False

    def check_authorization(self, actions: Iterable[Action], keys: FrozenSet[PublicKey]) -> None:
        for act in actions:
            for level in act.authorization:
                acct = self.db.accounts.get(level.actor)
                if acct is None:
                    raise UnknownAccount(f"authorizing actor '{name_to_string(level.actor)}' does not exist")
                perm = acct.permissions.get(level.permission)
                if perm is None:
                    raise UnknownPermission(f"permission '{level}' does not exist")
                if not self._satisfies(perm.auth, keys, 0):
                    raise UnsatisfiedAuthorization(
                        f"transaction declares authority '{_level_json(level)}', "
                        "but does not have signatures for it."
                    )

    # ---- action execution ----

    def _execute(self, tctx: TransactionContext, ordinal: int, depth: int) -> None:
        at = tctx.trace.action_traces[ordinal - 1]
        ctx = ApplyContext(
            self, tctx, at.receiver, at.act, ordinal, depth=depth, context_free=at.context_free
        )
        ram_before = dict(self.db.ram_usage)
        started = time.perf_counter_ns()
        try:
            if at.receiver not in self.db.accounts:
                raise UnknownAccount(f"account '{name_to_string(at.receiver)}' does not exist")
            contract = self.contracts.get(at.receiver)
            if contract is not None:
                contract.apply(ctx)
        except DeserializationError as e:
            err = ParseError(f"unable to unpack action data: {e.message}")
            at.except_ = err.to_trace_string()
            raise err from e
        except ChainException as e:
            at.except_ = e.to_trace_string()
            at.error_code = e.error_code
            raise
        finally:
            at.elapsed = (time.perf_counter_ns() - started) // 1000
            at.console = ctx.console

        if not at.context_free:
            db = self.db
            receipt = ActionReceipt(
                receiver=at.receiver,
                act_digest=at.act.digest(),
                global_sequence=db.next_sequence("global_action_sequence"),
                recv_sequence=db.bump_account(at.receiver, "recv_sequence"),
                auth_sequence=[
                    (level.actor, db.bump_account(level.actor, "auth_sequence"))
                    for level in at.act.authorization
                    if level.actor in db.accounts
                ],
                code_sequence=db.accounts[at.receiver].code_sequence,
                abi_sequence=db.accounts[at.receiver].abi_sequence,
            )
            at.receipt = receipt
            tctx.action_digests.append(receipt.digest())
        at.account_ram_deltas = _ram_deltas(ram_before, self.db.ram_usage)

        closest = at.action_ordinal if at.receiver == at.act.account else at.closest_unnotified_ancestor_action_ordinal
        notify = [
            tctx.schedule(at.act, recipient, ordinal, at.closest_unnotified_ancestor_action_ordinal)
            for recipient in ctx.notified[1:]
        ]
        inline = [tctx.schedule(act, act.account, ordinal, closest) for act in ctx.inline_actions]
        for child in notify:
            self._execute(tctx, child, depth)
        for child in inline:
            self._execute(tctx, child, depth + 1)

    def _run_actions(self, tctx: TransactionContext, trx: Transaction) -> None:
        for act in trx.context_free_actions:
            ordinal = tctx.schedule(act, act.account, 0, 0, context_free=True)
            self._execute(tctx, ordinal, 0)
        for act in trx.actions:
            ordinal = tctx.schedule(act, act.account, 0, 0)
            self._execute(tctx, ordinal, 0)

    def _bill(self, trx: Transaction, billed_cpu_us: int, explicit: bool, measured_us: int) -> int:
        billed = billed_cpu_us if explicit else max(measured_us, 1)
        limit = self.config.max_transaction_cpu_us
        if trx.max_cpu_usage_ms:
            limit = min(limit, trx.max_cpu_usage_ms * 1000)
        if billed > limit:
            raise CpuUsageExceeded(
                f"billed CPU time ({billed} us) is greater than the maximum billable CPU time "
                f"for the transaction ({limit} us)"
            )
        return billed

    # ---- transactions ----

    def push_transaction(
        self,
        packed: PackedTransaction,
        recovered_keys: FrozenSet[PublicKey],
        billed_cpu_time_us: int,
        explicit_billed_cpu_time: bool = True,
    ) -> TransactionTrace:
        self._require_open()
        p = self.pending
        if p is None:
            raise InternalError("push_transaction requires a pending block")
        trace = TransactionTrace(id=packed.id, block_num=p.block_num, block_time=p.timestamp)
        started = time.perf_counter_ns()
        cp = self.db.checkpoint()
        tctx = TransactionContext(trace)
        try:
            try:
                trx = packed.transaction()
            except DeserializationError as e:
                raise ParseError(f"unable to unpack transaction: {e.message}") from e
            net_words = packed.net_usage_words
            trace.net_usage = net_words * 8
            self._validate(trx, packed.id, net_words)
            self.db.record_transaction(packed.id, trx.expiration)
            self.check_authorization(trx.actions, recovered_keys)

            if trx.delay_sec:
                self._schedule_delayed(trx, packed)
                measured = (time.perf_counter_ns() - started) // 1000
                billed = self._bill(trx, billed_cpu_time_us, explicit_billed_cpu_time, measured)
                trace.receipt = self._record_receipt(TransactionStatus.DELAYED, billed, net_words, packed.id)
            else:
                self._run_actions(tctx, trx)
                measured = (time.perf_counter_ns() - started) // 1000
                billed = self._bill(trx, billed_cpu_time_us, explicit_billed_cpu_time, measured)
                trace.receipt = self._record_receipt(TransactionStatus.EXECUTED, billed, net_words, packed.id)
                p.action_digests.extend(tctx.action_digests)
            self.db.commit(cp)
        except ChainException as e:
            self.db.revert(cp)
            trace.receipt = None
            trace.except_ = e.to_trace_string()
            trace.error_code = e.error_code
        trace.elapsed = (time.perf_counter_ns() - started) // 1000
        return trace

    def _validate(self, trx: Transaction, trx_id: bytes, net_words: int) -> None:
        assert self.pending is not None
        now = self.pending.time_us
        if not trx.actions:
            raise NoActions("transaction must have at least one action")
        expiration_us = trx.expiration * 1_000_000
        if expiration_us <= now:
            raise ExpiredTransaction(
                f"expired transaction {trx_id.hex()}, expiration {format_time_point(expiration_us)}, "
                f"block time {format_time_point(now)}"
            )
        if expiration_us > now + self.config.max_transaction_lifetime_s * 1_000_000:
            raise TransactionExpirationTooFar(
                f"Transaction expiration is too far in the future relative to the reference time of "
                f"{format_time_point(now)}, expiration {format_time_point(expiration_us)}"
            )
        if self.db.is_known_transaction(trx_id):
            raise DuplicateTransaction(f"duplicate transaction {trx_id.hex()}")
        if trx.max_net_usage_words and net_words > trx.max_net_usage_words:
            raise NetUsageExceeded(
                f"transaction net usage is too high: {net_words * 8} > {trx.max_net_usage_words * 8}"
            )

    def _schedule_delayed(self, trx: Transaction, packed: PackedTransaction) -> None:
        assert self.pending is not None
        now = self.pending.time_us
        delay_until = now + trx.delay_sec * 1_000_000
        self.db.schedule(
            GeneratedTransaction(
                trx_id=packed.id,
                sender=0,
                sender_id=int.from_bytes(packed.id[:16], "little"),
                payer=trx.first_authorizer(),
                delay_until=delay_until,
                expiration=delay_until + self.config.deferred_expiration_window_s * 1_000_000,
                published=now,
                packed_trx=packed.packed_trx,
            )
        )

    def scheduled_transactions(self) -> List[GeneratedTransaction]:
        return sorted(self.db.generated.values(), key=GeneratedTransaction.sort_key)

    def earliest_due(self) -> Optional[GeneratedTransaction]:
        """The first scheduled transaction if it is due in the pending block."""
        if self.pending is None:
            raise InternalError("no pending block")
        first = self.db.earliest_generated()
        if first is None or first.delay_until > self.pending.time_us:
            return None
        return first

    def push_scheduled_transaction(
        self, trx_id: bytes, billed_cpu_time_us: int, explicit_billed_cpu_time: bool = True
    ) -> TransactionTrace:
        self._require_open()
        p = self.pending
        if p is None:
            raise InternalError("push_scheduled_transaction requires a pending block")
        gtrx = self.db.generated.get(trx_id)
        if gtrx is None:
            raise InternalError("unknown scheduled transaction", trx_id=trx_id)
        trace = TransactionTrace(id=trx_id, block_num=p.block_num, block_time=p.timestamp, scheduled=True)
        started = time.perf_counter_ns()
        ram_before = self.db.ram_usage.get(gtrx.payer, 0)
        self.db.remove_generated(trx_id)
        trace.account_ram_delta = AccountDelta(gtrx.payer, self.db.ram_usage.get(gtrx.payer, 0) - ram_before)

        if gtrx.expiration < p.time_us:
            trace.receipt = self._record_receipt(TransactionStatus.EXPIRED, 0, 0, trx_id)
            trace.elapsed = (time.perf_counter_ns() - started) // 1000
            return trace

        cp = self.db.checkpoint()
        tctx = TransactionContext(trace)
        billed = billed_cpu_time_us
        try:
            try:
                trx = Transaction.unpack(gtrx.packed_trx)
            except DeserializationError as e:
                raise ParseError(f"unable to unpack scheduled transaction: {e.message}") from e
            self._run_actions(tctx, trx)
            measured = (time.perf_counter_ns() - started) // 1000
            billed = self._bill(trx, billed_cpu_time_us, explicit_billed_cpu_time, measured)
            self.db.commit(cp)
            trace.receipt = self._record_receipt(TransactionStatus.EXECUTED, billed, 0, trx_id)
            p.action_digests.extend(tctx.action_digests)
        except ChainException as e:
            self.db.revert(cp)
            trace.except_ = e.to_trace_string()
            trace.error_code = e.error_code
            trace.receipt = self._record_receipt(TransactionStatus.HARD_FAIL, billed, 0, trx_id)
        trace.elapsed = (time.perf_counter_ns() - started) // 1000
        return trace

    # ---- key management ----

    def replace_producer_keys(self, key: PublicKey) -> None:
        self.producer_public_key = key
        log.debug("producer key replaced", extra={"key": key.to_string()})

    def replace_account_keys(self, account: NameLike, permission: NameLike, key: PublicKey) -> None:
        name, perm = as_name(account), as_name(permission)
        acct = self.db.accounts.get(name)
        if acct is None:
            raise UnknownAccount(f"account '{name_to_string(name)}' does not exist")
        existing = acct.permissions.get(perm)
        if existing is None:
            raise UnknownPermission(f"permission {name_to_string(perm)} does not exist")
        self.db.set_permission(name, perm, existing.parent, Authority.from_key(key))

    # ---- snapshots & shutdown ----

    def _snapshot_contents(self) -> SnapshotContents:
        return SnapshotContents(
            chain_id=self.chain_id,
            genesis_timestamp=self.genesis.initial_timestamp,
            genesis_key=self.genesis.initial_key,
            head_num=self.head_block_num,
            head_id=self.head_block_id,
            head_time=self.head_block_time,
            state=self.db,
        )

    def write_snapshot(self, path: Path) -> None:
        if self.pending is not None:
            raise BlockValidateException("cannot write a snapshot while a block is pending")
        write_snapshot(path, self._snapshot_contents())

    def close(self) -> None:
        if self.closed:
            return
        self.abort_block()
        write_snapshot(self.state_dir / "state.cbor", self._snapshot_contents())
        self._pool.shutdown(wait=True)
        self.closed = True
        log.debug("controller closed", extra={"head": self.head_block_num})


__all__ = [
    "SYSTEM_ACCOUNT",
    "PendingBlock",
    "TransactionContext",
    "Controller",
    "receipt_digest",
    "read_blocks_log",
]
