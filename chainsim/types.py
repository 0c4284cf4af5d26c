"""
chainsim.types: transactions, authorities, blocks, receipts and traces.

Every wire type exposes `write(Writer)` / `read(Reader)` plus `pack()` /
`unpack(bytes)` convenience wrappers. Times are kept as integers:

  * time_point      : microseconds since the Unix epoch
  * time_point_sec  : seconds since the Unix epoch (transaction expiration)
  * block_timestamp : 500 ms slots since 2000-01-01T00:00:00Z

Traces here are the controller's *internal* shape; the guest-facing wire form
(`*_v0` variants) lives in `wasmtester.abi_types`.
"""

from __future__ import annotations

import datetime as _dt
import hashlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Tuple

from hostcore.errors import DeserializationError

from .keys import PrivateKey, PublicKey, Signature
from .names import NameLike, as_name, name_to_string
from .wire import Reader, Writer

ZERO_CHECKSUM = b"\x00" * 32

BLOCK_TIMESTAMP_EPOCH_MS = 946_684_800_000
BLOCK_INTERVAL_MS = 500

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def parse_time_point(text: str) -> int:
    """"2020-01-01T00:00:00.000" (UTC, no zone suffix) → microseconds."""
    try:
        dt = _dt.datetime.fromisoformat(text.rstrip("Z"))
    except ValueError as e:
        raise DeserializationError("invalid ISO timestamp", value=text) from e
    dt = dt.replace(tzinfo=_dt.timezone.utc)
    return (dt - _EPOCH) // _dt.timedelta(microseconds=1)


def format_time_point(us: int) -> str:
    dt = _dt.datetime.fromtimestamp(us / 1_000_000, tz=_dt.timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{(us // 1000) % 1000:03d}"


def to_block_slot(us: int) -> int:
    return (us // 1000 - BLOCK_TIMESTAMP_EPOCH_MS) // BLOCK_INTERVAL_MS


def from_block_slot(slot: int) -> int:
    return (slot * BLOCK_INTERVAL_MS + BLOCK_TIMESTAMP_EPOCH_MS) * 1000


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TransactionStatus(IntEnum):
    EXECUTED = 0  # succeed, no error handler executed
    SOFT_FAIL = 1  # objectively failed (not executed), error handler executed
    HARD_FAIL = 2  # objectively failed and error handler objectively failed
    DELAYED = 3  # transaction delayed/deferred/scheduled for future execution
    EXPIRED = 4  # transaction expired and storage space refunded to user

    def __str__(self) -> str:
        return self.name.lower()

    @classmethod
    def from_str(cls, s: str) -> "TransactionStatus":
        key = s.strip().lower().replace("-", "_")
        for member in cls:
            if member.name.lower() == key:
                return member
        raise ValueError(f"unknown transaction status: {s!r}")


# ---------------------------------------------------------------------------
# Actions & transactions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionLevel:
    actor: int
    permission: int

    @classmethod
    def of(cls, actor: NameLike, permission: NameLike = "active") -> "PermissionLevel":
        return cls(as_name(actor), as_name(permission))

    def write(self, w: Writer) -> None:
        w.name(self.actor).name(self.permission)

    @classmethod
    def read(cls, r: Reader) -> "PermissionLevel":
        return cls(r.name(), r.name())

    def __str__(self) -> str:
        return f"{name_to_string(self.actor)}@{name_to_string(self.permission)}"


@dataclass(frozen=True)
class Action:
    account: int
    name: int
    authorization: Tuple[PermissionLevel, ...] = ()
    data: bytes = b""

    @classmethod
    def of(
        cls,
        account: NameLike,
        name: NameLike,
        authorization: List[PermissionLevel] | Tuple[PermissionLevel, ...] = (),
        data: bytes = b"",
    ) -> "Action":
        return cls(as_name(account), as_name(name), tuple(authorization), bytes(data))

    def write(self, w: Writer) -> None:
        w.name(self.account).name(self.name)
        w.vector(self.authorization, lambda w_, p: p.write(w_))
        w.bytes_(self.data)

    @classmethod
    def read(cls, r: Reader) -> "Action":
        account, name = r.name(), r.name()
        auth = tuple(r.vector(PermissionLevel.read))
        return cls(account, name, auth, r.bytes_())

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    def digest(self) -> bytes:
        return hashlib.sha256(self.pack()).digest()


@dataclass
class Transaction:
    expiration: int = 0  # time_point_sec
    ref_block_num: int = 0
    ref_block_prefix: int = 0
    max_net_usage_words: int = 0
    max_cpu_usage_ms: int = 0
    delay_sec: int = 0
    context_free_actions: List[Action] = field(default_factory=list)
    actions: List[Action] = field(default_factory=list)
    transaction_extensions: List[Tuple[int, bytes]] = field(default_factory=list)

    def write(self, w: Writer) -> None:
        w.u32(self.expiration).u16(self.ref_block_num).u32(self.ref_block_prefix)
        w.varuint32(self.max_net_usage_words).u8(self.max_cpu_usage_ms).varuint32(self.delay_sec)
        w.vector(self.context_free_actions, lambda w_, a: a.write(w_))
        w.vector(self.actions, lambda w_, a: a.write(w_))
        w.vector(self.transaction_extensions, lambda w_, e: w_.u16(e[0]).bytes_(e[1]))

    @classmethod
    def read(cls, r: Reader) -> "Transaction":
        return cls(
            expiration=r.u32(),
            ref_block_num=r.u16(),
            ref_block_prefix=r.u32(),
            max_net_usage_words=r.varuint32(),
            max_cpu_usage_ms=r.u8(),
            delay_sec=r.varuint32(),
            context_free_actions=r.vector(Action.read),
            actions=r.vector(Action.read),
            transaction_extensions=r.vector(lambda r_: (r_.u16(), r_.bytes_())),
        )

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "Transaction":
        r = Reader(data)
        out = cls.read(r)
        r.expect_end("transaction")
        return out

    def id(self) -> bytes:
        return hashlib.sha256(self.pack()).digest()

    def first_authorizer(self) -> int:
        for act in self.actions:
            for auth in act.authorization:
                return auth.actor
        return 0


def context_free_digest(context_free_data: List[bytes]) -> bytes:
    if not context_free_data:
        return ZERO_CHECKSUM
    w = Writer()
    w.vector(context_free_data, lambda w_, b: w_.bytes_(b))
    return hashlib.sha256(w.getvalue()).digest()


def signing_digest(chain_id: bytes, packed_trx: bytes, context_free_data: List[bytes]) -> bytes:
    return hashlib.sha256(chain_id + packed_trx + context_free_digest(context_free_data)).digest()


@dataclass
class SignedTransaction:
    transaction: Transaction
    signatures: List[Signature] = field(default_factory=list)
    context_free_data: List[bytes] = field(default_factory=list)

    def digest(self, chain_id: bytes) -> bytes:
        return signing_digest(chain_id, self.transaction.pack(), self.context_free_data)

    def sign(self, key: PrivateKey, chain_id: bytes) -> Signature:
        sig = key.sign(self.digest(chain_id))
        self.signatures.append(sig)
        return sig


@dataclass(frozen=True)
class PackedTransaction:
    """A signed transaction frozen into its wire bytes (no compression)."""

    signatures: Tuple[Signature, ...]
    context_free_data: Tuple[bytes, ...]
    packed_trx: bytes

    @classmethod
    def from_signed(cls, signed: SignedTransaction) -> "PackedTransaction":
        return cls(
            tuple(signed.signatures),
            tuple(signed.context_free_data),
            signed.transaction.pack(),
        )

    @property
    def id(self) -> bytes:
        return hashlib.sha256(self.packed_trx).digest()

    def transaction(self) -> Transaction:
        return Transaction.unpack(self.packed_trx)

    def digest(self, chain_id: bytes) -> bytes:
        return signing_digest(chain_id, self.packed_trx, list(self.context_free_data))

    def write(self, w: Writer) -> None:
        w.vector(self.signatures, lambda w_, s: s.write(w_))
        w.u8(0)  # compression: none
        w.vector(self.context_free_data, lambda w_, b: w_.bytes_(b))
        w.bytes_(self.packed_trx)

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @property
    def net_usage_words(self) -> int:
        return (len(self.pack()) + 7) // 8


# ---------------------------------------------------------------------------
# Authorities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyWeight:
    key: PublicKey
    weight: int


@dataclass(frozen=True)
class PermissionLevelWeight:
    permission: PermissionLevel
    weight: int


@dataclass(frozen=True)
class WaitWeight:
    wait_sec: int
    weight: int


@dataclass(frozen=True)
class Authority:
    threshold: int
    keys: Tuple[KeyWeight, ...] = ()
    accounts: Tuple[PermissionLevelWeight, ...] = ()
    waits: Tuple[WaitWeight, ...] = ()

    @classmethod
    def from_key(cls, key: PublicKey) -> "Authority":
        return cls(1, (KeyWeight(key, 1),))

    @classmethod
    def from_permission(cls, level: PermissionLevel) -> "Authority":
        return cls(1, (), (PermissionLevelWeight(level, 1),))

    def write(self, w: Writer) -> None:
        w.u32(self.threshold)
        w.vector(self.keys, lambda w_, k: (k.key.write(w_), w_.u16(k.weight)))
        w.vector(self.accounts, lambda w_, a: (a.permission.write(w_), w_.u16(a.weight)))
        w.vector(self.waits, lambda w_, x: w_.u32(x.wait_sec).u16(x.weight))

    @classmethod
    def read(cls, r: Reader) -> "Authority":
        threshold = r.u32()
        keys = tuple(r.vector(lambda r_: KeyWeight(PublicKey.read(r_), r_.u16())))
        accounts = tuple(
            r.vector(lambda r_: PermissionLevelWeight(PermissionLevel.read(r_), r_.u16()))
        )
        waits = tuple(r.vector(lambda r_: WaitWeight(r_.u32(), r_.u16())))
        return cls(threshold, keys, accounts, waits)


# ---------------------------------------------------------------------------
# Receipts & traces (controller-internal)
# ---------------------------------------------------------------------------


@dataclass
class ActionReceipt:
    receiver: int
    act_digest: bytes
    global_sequence: int
    recv_sequence: int
    auth_sequence: List[Tuple[int, int]] = field(default_factory=list)
    code_sequence: int = 0
    abi_sequence: int = 0

    def digest(self) -> bytes:
        w = Writer()
        w.name(self.receiver).checksum256(self.act_digest)
        w.u64(self.global_sequence).u64(self.recv_sequence)
        w.vector(self.auth_sequence, lambda w_, a: w_.name(a[0]).u64(a[1]))
        w.varuint32(self.code_sequence).varuint32(self.abi_sequence)
        return hashlib.sha256(w.getvalue()).digest()


@dataclass
class AccountDelta:
    account: int
    delta: int


@dataclass
class ActionTrace:
    action_ordinal: int
    creator_action_ordinal: int
    closest_unnotified_ancestor_action_ordinal: int
    receiver: int
    act: Action
    context_free: bool = False
    receipt: Optional[ActionReceipt] = None
    elapsed: int = 0
    console: str = ""
    account_ram_deltas: List[AccountDelta] = field(default_factory=list)
    except_: Optional[str] = None
    error_code: Optional[int] = None


@dataclass
class TransactionReceiptHeader:
    status: TransactionStatus
    cpu_usage_us: int
    net_usage_words: int


@dataclass
class TransactionTrace:
    id: bytes
    block_num: int = 0
    block_time: int = 0  # block_timestamp slot
    producer_block_id: Optional[bytes] = None
    receipt: Optional[TransactionReceiptHeader] = None
    elapsed: int = 0
    net_usage: int = 0
    scheduled: bool = False
    action_traces: List[ActionTrace] = field(default_factory=list)
    account_ram_delta: Optional[AccountDelta] = None
    except_: Optional[str] = None
    error_code: Optional[int] = None
    failed_dtrx_trace: Optional["TransactionTrace"] = None

    @property
    def status(self) -> TransactionStatus:
        return self.receipt.status if self.receipt else TransactionStatus.HARD_FAIL


@dataclass
class GeneratedTransaction:
    trx_id: bytes
    sender: int
    sender_id: int  # u128
    payer: int
    delay_until: int  # time_point
    expiration: int  # time_point
    published: int  # time_point
    packed_trx: bytes

    def sort_key(self) -> Tuple[int, bytes]:
        return (self.delay_until, self.trx_id)


# ---------------------------------------------------------------------------
# Genesis & blocks
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenesisState:
    initial_timestamp: str
    initial_key: PublicKey
    max_block_cpu_usage: int = 200_000
    max_transaction_cpu_usage: int = 150_000
    max_transaction_lifetime: int = 3600
    deferred_trx_expiration_window: int = 600

    def pack(self) -> bytes:
        w = Writer()
        w.u32(to_block_slot(parse_time_point(self.initial_timestamp)))
        self.initial_key.write(w)
        w.u32(self.max_block_cpu_usage).u32(self.max_transaction_cpu_usage)
        w.u32(self.max_transaction_lifetime).u32(self.deferred_trx_expiration_window)
        return w.getvalue()

    def chain_id(self) -> bytes:
        return hashlib.sha256(self.pack()).digest()


def block_num_from_id(block_id: bytes) -> int:
    return int.from_bytes(block_id[:4], "big")


@dataclass(frozen=True)
class BlockHeader:
    timestamp: int  # slot
    producer: int
    previous: bytes
    transaction_mroot: bytes = ZERO_CHECKSUM
    action_mroot: bytes = ZERO_CHECKSUM
    confirmed: int = 0
    schedule_version: int = 0

    @property
    def block_num(self) -> int:
        return block_num_from_id(self.previous) + 1

    def pack(self) -> bytes:
        w = Writer()
        w.u32(self.timestamp).name(self.producer).u16(self.confirmed)
        w.checksum256(self.previous).checksum256(self.transaction_mroot)
        w.checksum256(self.action_mroot).u32(self.schedule_version)
        w.u8(0)  # new_producers: none
        w.varuint32(0)  # header_extensions
        return w.getvalue()

    def digest(self) -> bytes:
        return hashlib.sha256(self.pack()).digest()

    def id(self) -> bytes:
        return self.block_num.to_bytes(4, "big") + self.digest()[4:]


def merkle(digests: List[bytes]) -> bytes:
    """Legacy canonical-pair merkle root (left leaf high bit clear, right set)."""
    if not digests:
        return ZERO_CHECKSUM
    layer = list(digests)
    while len(layer) > 1:
        if len(layer) % 2:
            layer.append(layer[-1])
        nxt = []
        for a, b in zip(layer[0::2], layer[1::2]):
            left = bytes([a[0] & 0x7F]) + a[1:]
            right = bytes([b[0] | 0x80]) + b[1:]
            nxt.append(hashlib.sha256(left + right).digest())
        layer = nxt
    return layer[0]


__all__ = [
    "ZERO_CHECKSUM",
    "parse_time_point",
    "format_time_point",
    "to_block_slot",
    "from_block_slot",
    "TransactionStatus",
    "PermissionLevel",
    "Action",
    "Transaction",
    "SignedTransaction",
    "PackedTransaction",
    "context_free_digest",
    "signing_digest",
    "KeyWeight",
    "PermissionLevelWeight",
    "WaitWeight",
    "Authority",
    "ActionReceipt",
    "AccountDelta",
    "ActionTrace",
    "TransactionReceiptHeader",
    "TransactionTrace",
    "GeneratedTransaction",
    "GenesisState",
    "BlockHeader",
    "block_num_from_id",
    "merkle",
]
