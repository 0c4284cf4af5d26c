"""
wasmtester.abi_types: binary structures exchanged with the guest.

Guest-side test libraries deserialize these with their own ABI code, so the
layouts are fixed:

  BlockInfo              u32 block_num, checksum256 id, u32 timestamp (slot)
  PushTransactionArgs    bytes transaction, vector<bytes> context_free_data,
                         vector<signature> signatures, vector<private_key> keys
  TransactionTraceV0     state-history `transaction_trace` variant, index 0

Variants are written as a varuint32 index followed by the alternative; only
the v0 alternatives exist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from chainsim.keys import PrivateKey, Signature
from chainsim.types import AccountDelta, Action, ActionReceipt, ActionTrace, TransactionStatus, TransactionTrace
from chainsim.wire import Reader, Writer
from hostcore.errors import DeserializationError


def _expect_variant(r: Reader, what: str) -> None:
    index = r.varuint32()
    if index != 0:
        raise DeserializationError(f"unknown {what} variant {index}", index=index)


# ---------------------------------------------------------------------------
# Host-call argument/result records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BlockInfo:
    block_num: int
    block_id: bytes
    timestamp: int

    def to_bin(self) -> bytes:
        return Writer().u32(self.block_num).checksum256(self.block_id).u32(self.timestamp).getvalue()

    @classmethod
    def from_bin(cls, data: bytes) -> "BlockInfo":
        r = Reader(data)
        out = cls(r.u32(), r.checksum256(), r.u32())
        r.expect_end("block_info")
        return out


@dataclass
class PushTransactionArgs:
    transaction: bytes
    context_free_data: List[bytes] = field(default_factory=list)
    signatures: List[Signature] = field(default_factory=list)
    keys: List[PrivateKey] = field(default_factory=list)

    def to_bin(self) -> bytes:
        w = Writer().bytes_(self.transaction)
        w.vector(self.context_free_data, Writer.bytes_)
        w.vector(self.signatures, lambda w_, s: s.write(w_))
        w.vector(self.keys, lambda w_, k: k.write(w_))
        return w.getvalue()

    @classmethod
    def from_bin(cls, data: bytes) -> "PushTransactionArgs":
        r = Reader(data)
        out = cls(
            transaction=r.bytes_(),
            context_free_data=r.vector(Reader.bytes_),
            signatures=r.vector(Signature.read),
            keys=r.vector(PrivateKey.read),
        )
        r.expect_end("push_transaction arguments")
        return out


# ---------------------------------------------------------------------------
# Trace v0
# ---------------------------------------------------------------------------


def _write_delta(w: Writer, d: AccountDelta) -> None:
    w.name(d.account).i64(d.delta)


def _read_delta(r: Reader) -> AccountDelta:
    return AccountDelta(r.name(), r.i64())


@dataclass
class ActionReceiptV0:
    receiver: int
    act_digest: bytes
    global_sequence: int
    recv_sequence: int
    auth_sequence: List[Tuple[int, int]] = field(default_factory=list)
    code_sequence: int = 0
    abi_sequence: int = 0

    @classmethod
    def from_receipt(cls, rc: ActionReceipt) -> "ActionReceiptV0":
        return cls(
            rc.receiver, rc.act_digest, rc.global_sequence, rc.recv_sequence,
            list(rc.auth_sequence), rc.code_sequence, rc.abi_sequence,
        )

    def write(self, w: Writer) -> None:
        w.varuint32(0)
        w.name(self.receiver).checksum256(self.act_digest)
        w.u64(self.global_sequence).u64(self.recv_sequence)
        w.vector(self.auth_sequence, lambda w_, a: w_.name(a[0]).u64(a[1]))
        w.varuint32(self.code_sequence).varuint32(self.abi_sequence)

    @classmethod
    def read(cls, r: Reader) -> "ActionReceiptV0":
        _expect_variant(r, "action_receipt")
        return cls(
            receiver=r.name(),
            act_digest=r.checksum256(),
            global_sequence=r.u64(),
            recv_sequence=r.u64(),
            auth_sequence=r.vector(lambda r_: (r_.name(), r_.u64())),
            code_sequence=r.varuint32(),
            abi_sequence=r.varuint32(),
        )


@dataclass
class ActionTraceV0:
    action_ordinal: int
    creator_action_ordinal: int
    receipt: Optional[ActionReceiptV0]
    receiver: int
    act: Action
    context_free: bool = False
    elapsed: int = 0
    console: str = ""
    account_ram_deltas: List[AccountDelta] = field(default_factory=list)
    except_: Optional[str] = None
    error_code: Optional[int] = None

    @classmethod
    def from_trace(cls, at: ActionTrace) -> "ActionTraceV0":
        return cls(
            action_ordinal=at.action_ordinal,
            creator_action_ordinal=at.creator_action_ordinal,
            receipt=ActionReceiptV0.from_receipt(at.receipt) if at.receipt else None,
            receiver=at.receiver,
            act=at.act,
            context_free=at.context_free,
            elapsed=at.elapsed,
            console=at.console,
            account_ram_deltas=list(at.account_ram_deltas),
            except_=at.except_,
            error_code=at.error_code,
        )

    def write(self, w: Writer) -> None:
        w.varuint32(0)
        w.varuint32(self.action_ordinal).varuint32(self.creator_action_ordinal)
        w.optional(self.receipt, lambda w_, rc: rc.write(w_))
        w.name(self.receiver)
        self.act.write(w)
        w.boolean(self.context_free).i64(self.elapsed).string(self.console)
        w.vector(self.account_ram_deltas, _write_delta)
        w.optional(self.except_, Writer.string)
        w.optional(self.error_code, Writer.u64)

    @classmethod
    def read(cls, r: Reader) -> "ActionTraceV0":
        _expect_variant(r, "action_trace")
        return cls(
            action_ordinal=r.varuint32(),
            creator_action_ordinal=r.varuint32(),
            receipt=r.optional(ActionReceiptV0.read),
            receiver=r.name(),
            act=Action.read(r),
            context_free=r.boolean(),
            elapsed=r.i64(),
            console=r.string(),
            account_ram_deltas=r.vector(_read_delta),
            except_=r.optional(Reader.string),
            error_code=r.optional(Reader.u64),
        )


@dataclass
class TransactionTraceV0:
    id: bytes
    status: TransactionStatus
    cpu_usage_us: int = 0
    net_usage_words: int = 0
    elapsed: int = 0
    net_usage: int = 0
    scheduled: bool = False
    action_traces: List[ActionTraceV0] = field(default_factory=list)
    account_ram_delta: Optional[AccountDelta] = None
    except_: Optional[str] = None
    error_code: Optional[int] = None
    failed_dtrx_trace: List["TransactionTraceV0"] = field(default_factory=list)

    @classmethod
    def from_trace(cls, t: TransactionTrace) -> "TransactionTraceV0":
        receipt = t.receipt
        return cls(
            id=t.id,
            status=t.status,
            cpu_usage_us=receipt.cpu_usage_us if receipt else 0,
            net_usage_words=receipt.net_usage_words if receipt else 0,
            elapsed=t.elapsed,
            net_usage=t.net_usage,
            scheduled=t.scheduled,
            action_traces=[ActionTraceV0.from_trace(a) for a in t.action_traces],
            account_ram_delta=t.account_ram_delta,
            except_=t.except_,
            error_code=t.error_code,
            failed_dtrx_trace=[cls.from_trace(t.failed_dtrx_trace)] if t.failed_dtrx_trace else [],
        )

    def write(self, w: Writer) -> None:
        w.varuint32(0)
        w.checksum256(self.id).u8(int(self.status)).u32(self.cpu_usage_us)
        w.varuint32(self.net_usage_words).i64(self.elapsed).u64(self.net_usage)
        w.boolean(self.scheduled)
        w.vector(self.action_traces, lambda w_, a: a.write(w_))
        w.optional(self.account_ram_delta, _write_delta)
        w.optional(self.except_, Writer.string)
        w.optional(self.error_code, Writer.u64)
        w.vector(self.failed_dtrx_trace, lambda w_, t: t.write(w_))

    @classmethod
    def read(cls, r: Reader) -> "TransactionTraceV0":
        _expect_variant(r, "transaction_trace")
        trx_id = r.checksum256()
        try:
            status = TransactionStatus(r.u8())
        except ValueError as e:
            raise DeserializationError(f"bad transaction status: {e}") from e
        return cls(
            id=trx_id,
            status=status,
            cpu_usage_us=r.u32(),
            net_usage_words=r.varuint32(),
            elapsed=r.i64(),
            net_usage=r.u64(),
            scheduled=r.boolean(),
            action_traces=r.vector(ActionTraceV0.read),
            account_ram_delta=r.optional(_read_delta),
            except_=r.optional(Reader.string),
            error_code=r.optional(Reader.u64),
            failed_dtrx_trace=r.vector(cls.read),
        )

    def to_bin(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @classmethod
    def from_bin(cls, data: bytes) -> "TransactionTraceV0":
        r = Reader(data)
        out = cls.read(r)
        r.expect_end("transaction_trace")
        return out


__all__ = [
    "BlockInfo",
    "PushTransactionArgs",
    "ActionReceiptV0",
    "ActionTraceV0",
    "TransactionTraceV0",
]
