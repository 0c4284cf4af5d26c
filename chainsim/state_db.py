"""
chainsim.state_db: in-memory chain state with an undo journal.

Holds accounts/permissions, contract tables (primary rows plus typed
secondary indices), the generated (deferred) transaction queue, global
counters and per-account RAM usage.

Journal
-------
Every mutation records its inverse on the innermost open checkpoint:

    cp = db.checkpoint()     # open a level (block, transaction, action...)
    ... mutate ...
    db.revert(cp)            # undo every change since cp (and nested levels)
    db.commit(cp)            # fold the level into its parent

With no checkpoint open, mutations are permanent.

Ordering
--------
Primary rows are kept in a sorted key list; secondary entries in a sorted list
of (secondary, primary) pairs, so iteration is ascending by secondary key with
ties broken by ascending primary key. Lookups use `bisect`.

A table (primary or secondary) exists only while it holds at least one row.
"""

from __future__ import annotations

import bisect
import math
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from hostcore.errors import DeserializationError

from .names import name_to_string, string_to_name
from .types import Authority, GeneratedTransaction
from .wire import Reader, Writer

TableId = Tuple[int, int, int]  # (code, scope, table)
SecondaryKey = Union[int, float]

ROW_OVERHEAD = 112
TABLE_OVERHEAD = 112
GENERATED_OVERHEAD = 96

_U64_LIMIT = 1 << 64


# ---------------------------------------------------------------------------
# Secondary key kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SecondaryKind:
    name: str
    size: int  # bytes in guest memory
    is_float: bool = False

    @property
    def billable_size(self) -> int:
        return ROW_OVERHEAD + self.size

    def validate(self, key: SecondaryKey) -> SecondaryKey:
        if self.is_float:
            key = float(key)
            if math.isnan(key):
                raise ValueError("NaN is not allowed as a secondary key")
            return key + 0.0  # folds -0.0 into 0.0
        key = int(key)
        if not 0 <= key < (1 << (8 * self.size)):
            raise ValueError(f"{self.name} key out of range")
        return key

    def encode(self, key: SecondaryKey) -> bytes:
        if self.is_float:
            return struct.pack("<d", key)
        if self.name == "idx256":
            hi, lo = divmod(int(key), 1 << 128)
            return hi.to_bytes(16, "little") + lo.to_bytes(16, "little")
        return int(key).to_bytes(self.size, "little")

    def decode(self, raw: bytes) -> SecondaryKey:
        if len(raw) != self.size:
            raise DeserializationError(f"{self.name} key must be {self.size} bytes", size=len(raw))
        if self.is_float:
            return struct.unpack("<d", raw)[0]
        if self.name == "idx256":
            return (int.from_bytes(raw[:16], "little") << 128) | int.from_bytes(raw[16:], "little")
        return int.from_bytes(raw, "little")


IDX64 = SecondaryKind("idx64", 8)
IDX128 = SecondaryKind("idx128", 16)
IDX256 = SecondaryKind("idx256", 32)
IDX_DOUBLE = SecondaryKind("idx_double", 8, is_float=True)

SECONDARY_KINDS: Dict[str, SecondaryKind] = {
    k.name: k for k in (IDX64, IDX128, IDX256, IDX_DOUBLE)
}


# ---------------------------------------------------------------------------
# Rows & tables
# ---------------------------------------------------------------------------


@dataclass
class Row:
    primary: int
    payer: int
    value: bytes


class PrimaryTable:
    def __init__(self, tid: TableId, payer: int) -> None:
        self.tid = tid
        self.payer = payer
        self.rows: Dict[int, Row] = {}
        self.keys: List[int] = []

    def __len__(self) -> int:
        return len(self.keys)

    def get(self, primary: int) -> Optional[Row]:
        return self.rows.get(primary)

    def at(self, pos: int) -> Row:
        return self.rows[self.keys[pos]]

    def position(self, primary: int) -> int:
        pos = bisect.bisect_left(self.keys, primary)
        if pos >= len(self.keys) or self.keys[pos] != primary:
            raise KeyError(primary)
        return pos

    def lower_bound(self, primary: int) -> int:
        return bisect.bisect_left(self.keys, primary)

    def upper_bound(self, primary: int) -> int:
        return bisect.bisect_right(self.keys, primary)

    def _insert(self, row: Row) -> None:
        bisect.insort(self.keys, row.primary)
        self.rows[row.primary] = row

    def _remove(self, primary: int) -> Row:
        self.keys.pop(self.position(primary))
        return self.rows.pop(primary)


class SecondaryTable:
    def __init__(self, kind: SecondaryKind, tid: TableId, payer: int) -> None:
        self.kind = kind
        self.tid = tid
        self.payer = payer
        self.entries: List[Tuple[SecondaryKey, int]] = []
        self.by_primary: Dict[int, Tuple[SecondaryKey, int]] = {}  # primary -> (key, payer)

    def __len__(self) -> int:
        return len(self.entries)

    def secondary_of(self, primary: int) -> Optional[SecondaryKey]:
        hit = self.by_primary.get(primary)
        return None if hit is None else hit[0]

    def position(self, key: SecondaryKey, primary: int) -> int:
        pos = bisect.bisect_left(self.entries, (key, primary))
        if pos >= len(self.entries) or self.entries[pos] != (key, primary):
            raise KeyError((key, primary))
        return pos

    def lower_bound(self, key: SecondaryKey) -> int:
        return bisect.bisect_left(self.entries, (key, -1))

    def upper_bound(self, key: SecondaryKey) -> int:
        return bisect.bisect_left(self.entries, (key, _U64_LIMIT))

    def _insert(self, key: SecondaryKey, primary: int, payer: int) -> None:
        bisect.insort(self.entries, (key, primary))
        self.by_primary[primary] = (key, payer)

    def _remove(self, primary: int) -> Tuple[SecondaryKey, int]:
        key, payer = self.by_primary.pop(primary)
        self.entries.pop(self.position(key, primary))
        return key, payer


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@dataclass
class Permission:
    name: int
    parent: int
    auth: Authority


@dataclass
class Account:
    name: int
    creation_date: int
    privileged: bool = False
    permissions: Dict[int, Permission] = field(default_factory=dict)
    recv_sequence: int = 0
    auth_sequence: int = 0
    code_sequence: int = 0
    abi_sequence: int = 0

    def __repr__(self) -> str:
        return f"Account({name_to_string(self.name)})"


# ---------------------------------------------------------------------------
# State database
# ---------------------------------------------------------------------------


class StateDB:
    def __init__(self) -> None:
        self.accounts: Dict[int, Account] = {}
        self.tables: Dict[TableId, PrimaryTable] = {}
        self.secondary: Dict[Tuple[str, TableId], SecondaryTable] = {}
        self.generated: Dict[bytes, GeneratedTransaction] = {}
        self.counters: Dict[str, int] = {}
        self.transaction_ids: Dict[bytes, int] = {}  # id -> expiration (seconds)
        self.ram_usage: Dict[int, int] = {}
        self._undo: List[List[Callable[[], None]]] = []

    # ----- journal -----

    @property
    def depth(self) -> int:
        return len(self._undo)

    def checkpoint(self) -> int:
        self._undo.append([])
        return len(self._undo)

    def revert(self, cp: int) -> None:
        while len(self._undo) >= cp:
            for op in reversed(self._undo.pop()):
                op()

    def commit(self, cp: int) -> None:
        if len(self._undo) != cp:
            raise RuntimeError(f"commit of checkpoint {cp} at depth {len(self._undo)}")
        ops = self._undo.pop()
        if self._undo:
            self._undo[-1].extend(ops)

    def _on_undo(self, fn: Callable[[], None]) -> None:
        if self._undo:
            self._undo[-1].append(fn)

    def _set(self, d: Dict[Any, Any], key: Any, value: Any) -> None:
        had, old = key in d, d.get(key)
        d[key] = value
        if had:
            self._on_undo(lambda: d.__setitem__(key, old))
        else:
            self._on_undo(lambda: d.pop(key, None))

    def _pop(self, d: Dict[Any, Any], key: Any) -> Any:
        old = d.pop(key)
        self._on_undo(lambda: d.__setitem__(key, old))
        return old

    def _setattr(self, obj: Any, attr: str, value: Any) -> None:
        old = getattr(obj, attr)
        setattr(obj, attr, value)
        self._on_undo(lambda: setattr(obj, attr, old))

    # ----- counters & RAM -----

    def next_sequence(self, counter: str) -> int:
        value = self.counters.get(counter, 0) + 1
        self._set(self.counters, counter, value)
        return value

    def add_ram(self, account: int, delta: int) -> None:
        if delta:
            self._set(self.ram_usage, account, self.ram_usage.get(account, 0) + delta)

    # ----- accounts -----

    def create_account(
        self,
        name: int,
        creation_date: int,
        owner: Authority,
        active: Authority,
        *,
        privileged: bool = False,
    ) -> Account:
        owner_name, active_name = string_to_name("owner"), string_to_name("active")
        acct = Account(name=name, creation_date=creation_date, privileged=privileged)
        acct.permissions[owner_name] = Permission(owner_name, 0, owner)
        acct.permissions[active_name] = Permission(active_name, owner_name, active)
        self._set(self.accounts, name, acct)
        return acct

    def set_permission(self, account: int, permission: int, parent: int, auth: Authority) -> None:
        acct = self.accounts[account]
        self._set(acct.permissions, permission, Permission(permission, parent, auth))

    def delete_permission(self, account: int, permission: int) -> None:
        self._pop(self.accounts[account].permissions, permission)

    def bump_account(self, account: int, attr: str) -> int:
        acct = self.accounts[account]
        value = getattr(acct, attr) + 1
        self._setattr(acct, attr, value)
        return value

    # ----- primary rows -----

    def find_table(self, tid: TableId) -> Optional[PrimaryTable]:
        return self.tables.get(tid)

    def store_row(self, tid: TableId, primary: int, payer: int, value: bytes) -> None:
        table = self.tables.get(tid)
        if table is None:
            table = PrimaryTable(tid, payer)
            self._set(self.tables, tid, table)
            self.add_ram(payer, TABLE_OVERHEAD)
        table._insert(Row(primary, payer, bytes(value)))
        self._on_undo(lambda: table._remove(primary))
        self.add_ram(payer, ROW_OVERHEAD + len(value))

    def update_row(self, tid: TableId, primary: int, payer: int, value: bytes) -> None:
        table = self.tables[tid]
        old = table.rows[primary]
        table.rows[primary] = Row(primary, payer, bytes(value))
        self._on_undo(lambda: table.rows.__setitem__(primary, old))
        self.add_ram(old.payer, -(ROW_OVERHEAD + len(old.value)))
        self.add_ram(payer, ROW_OVERHEAD + len(value))

    def remove_row(self, tid: TableId, primary: int) -> None:
        table = self.tables[tid]
        row = table._remove(primary)
        self._on_undo(lambda: table._insert(row))
        self.add_ram(row.payer, -(ROW_OVERHEAD + len(row.value)))
        if not table:
            self._pop(self.tables, tid)
            self.add_ram(table.payer, -TABLE_OVERHEAD)

    # ----- secondary indices -----

    def find_secondary_table(self, kind: SecondaryKind, tid: TableId) -> Optional[SecondaryTable]:
        return self.secondary.get((kind.name, tid))

    def store_secondary(
        self, kind: SecondaryKind, tid: TableId, primary: int, key: SecondaryKey, payer: int
    ) -> None:
        key = kind.validate(key)
        sk = (kind.name, tid)
        table = self.secondary.get(sk)
        if table is None:
            table = SecondaryTable(kind, tid, payer)
            self._set(self.secondary, sk, table)
            self.add_ram(payer, TABLE_OVERHEAD)
        table._insert(key, primary, payer)
        self._on_undo(lambda: table._remove(primary))
        self.add_ram(payer, kind.billable_size)

    def update_secondary(
        self, kind: SecondaryKind, tid: TableId, primary: int, key: SecondaryKey, payer: int
    ) -> None:
        key = kind.validate(key)
        table = self.secondary[(kind.name, tid)]
        old_key, old_payer = table._remove(primary)
        table._insert(key, primary, payer)

        def undo() -> None:
            table._remove(primary)
            table._insert(old_key, primary, old_payer)

        self._on_undo(undo)
        if old_payer != payer:
            self.add_ram(old_payer, -kind.billable_size)
            self.add_ram(payer, kind.billable_size)

    def remove_secondary(self, kind: SecondaryKind, tid: TableId, primary: int) -> None:
        sk = (kind.name, tid)
        table = self.secondary[sk]
        key, payer = table._remove(primary)
        self._on_undo(lambda: table._insert(key, primary, payer))
        self.add_ram(payer, -kind.billable_size)
        if not table:
            self._pop(self.secondary, sk)
            self.add_ram(table.payer, -TABLE_OVERHEAD)

    # ----- generated transactions -----

    def schedule(self, gtrx: GeneratedTransaction) -> None:
        self._set(self.generated, gtrx.trx_id, gtrx)
        self.add_ram(gtrx.payer, generated_billable_size(gtrx))

    def find_generated(self, sender: int, sender_id: int) -> Optional[GeneratedTransaction]:
        for g in self.generated.values():
            if g.sender == sender and g.sender_id == sender_id:
                return g
        return None

    def remove_generated(self, trx_id: bytes) -> GeneratedTransaction:
        gtrx = self._pop(self.generated, trx_id)
        self.add_ram(gtrx.payer, -generated_billable_size(gtrx))
        return gtrx

    # ----- transaction dedup -----

    def record_transaction(self, trx_id: bytes, expiration: int) -> None:
        self._set(self.transaction_ids, trx_id, expiration)

    def is_known_transaction(self, trx_id: bytes) -> bool:
        return trx_id in self.transaction_ids

    def prune_transactions(self, now_sec: int) -> None:
        for trx_id in [k for k, exp in self.transaction_ids.items() if exp < now_sec]:
            self._pop(self.transaction_ids, trx_id)

    def earliest_generated(self) -> Optional[GeneratedTransaction]:
        if not self.generated:
            return None
        return min(self.generated.values(), key=GeneratedTransaction.sort_key)

    # ----- snapshot form -----

    def to_snapshot(self) -> Dict[str, Any]:
        """CBOR-friendly dump (ints, bytes, lists, dicts only)."""
        return {
            "accounts": [_account_to_dict(a) for a in self.accounts.values()],
            "tables": [
                {
                    "tid": list(t.tid),
                    "payer": t.payer,
                    "rows": [[r.primary, r.payer, r.value] for r in (t.rows[k] for k in t.keys)],
                }
                for t in self.tables.values()
            ],
            "secondary": [
                {
                    "kind": t.kind.name,
                    "tid": list(t.tid),
                    "payer": t.payer,
                    "entries": [[p, t.kind.encode(k), payer] for p, (k, payer) in sorted(t.by_primary.items())],
                }
                for t in self.secondary.values()
            ],
            "generated": [
                [g.trx_id, g.sender, g.sender_id.to_bytes(16, "little"), g.payer,
                 g.delay_until, g.expiration, g.published, g.packed_trx]
                for g in self.generated.values()
            ],
            "counters": dict(self.counters),
            "transaction_ids": [[k, v] for k, v in self.transaction_ids.items()],
            "ram_usage": [[k, v] for k, v in self.ram_usage.items()],
        }

    @classmethod
    def from_snapshot(cls, doc: Dict[str, Any]) -> "StateDB":
        db = cls()
        try:
            for a in doc["accounts"]:
                acct = _account_from_dict(a)
                db.accounts[acct.name] = acct
            for t in doc["tables"]:
                tid = tuple(t["tid"])
                table = PrimaryTable(tid, t["payer"])  # type: ignore[arg-type]
                for primary, payer, value in t["rows"]:
                    table._insert(Row(primary, payer, bytes(value)))
                db.tables[table.tid] = table
            for s in doc["secondary"]:
                kind = SECONDARY_KINDS[s["kind"]]
                stable = SecondaryTable(kind, tuple(s["tid"]), s["payer"])  # type: ignore[arg-type]
                for primary, raw, payer in s["entries"]:
                    stable._insert(kind.decode(bytes(raw)), primary, payer)
                db.secondary[(kind.name, stable.tid)] = stable
            for trx_id, sender, sender_id, payer, delay_until, expiration, published, packed in doc["generated"]:
                db.generated[bytes(trx_id)] = GeneratedTransaction(
                    trx_id=bytes(trx_id),
                    sender=sender,
                    sender_id=int.from_bytes(bytes(sender_id), "little"),
                    payer=payer,
                    delay_until=delay_until,
                    expiration=expiration,
                    published=published,
                    packed_trx=bytes(packed),
                )
            db.counters.update(doc["counters"])
            db.transaction_ids.update({bytes(k): v for k, v in doc["transaction_ids"]})
            db.ram_usage.update({k: v for k, v in doc["ram_usage"]})
        except (KeyError, TypeError, ValueError) as e:
            raise DeserializationError("malformed state snapshot section") from e
        return db


def generated_billable_size(gtrx: GeneratedTransaction) -> int:
    return GENERATED_OVERHEAD + len(gtrx.packed_trx)


def _pack_authority(auth: Authority) -> bytes:
    w = Writer()
    auth.write(w)
    return w.getvalue()


def _account_to_dict(a: Account) -> Dict[str, Any]:
    return {
        "name": a.name,
        "creation_date": a.creation_date,
        "privileged": a.privileged,
        "sequences": [a.recv_sequence, a.auth_sequence, a.code_sequence, a.abi_sequence],
        "permissions": [
            [p.name, p.parent, _pack_authority(p.auth)] for p in a.permissions.values()
        ],
    }


def _account_from_dict(d: Dict[str, Any]) -> Account:
    acct = Account(name=d["name"], creation_date=d["creation_date"], privileged=d["privileged"])
    acct.recv_sequence, acct.auth_sequence, acct.code_sequence, acct.abi_sequence = d["sequences"]
    for name, parent, raw in d["permissions"]:
        r = Reader(bytes(raw))
        acct.permissions[name] = Permission(name, parent, Authority.read(r))
    return acct


__all__ = [
    "TableId",
    "SecondaryKey",
    "SecondaryKind",
    "IDX64",
    "IDX128",
    "IDX256",
    "IDX_DOUBLE",
    "SECONDARY_KINDS",
    "Row",
    "PrimaryTable",
    "SecondaryTable",
    "Permission",
    "Account",
    "StateDB",
    "generated_billable_size",
]
