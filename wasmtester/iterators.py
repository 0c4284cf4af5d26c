"""
wasmtester.iterators: integer iterator handles over simulated tables.

Guest code walks contract tables through small integers:

    >= 0    a row handle (one row of one index of one partition)
    -1      "no such table" / stepped before the first row
    <= -2   end sentinel of one partition (code, scope, table)

Handles live in a `ReadContext`. The session discards its context on every
mutation (block start/finish, transaction push), so a handle obtained before
a mutation is unknown afterwards and dereferencing it raises
`InvalidIterator` instead of returning rows from a different moment.

Row handles and end sentinels are drawn from counters owned by the session,
not by the context, so a stale handle can never collide with a fresh one.
Each index family (primary, idx64, idx128, ...) keeps its own handle map;
a handle from one family is invalid in another.

Rows are looked up in the live state database on dereference. That is
consistent because the context itself never outlives a mutation.
"""

from __future__ import annotations

import itertools
from typing import Any, Dict, Hashable, Iterator, Optional, Tuple

from chainsim.state_db import SECONDARY_KINDS, SecondaryKey, SecondaryKind, StateDB, TableId
from hostcore.errors import InvalidIterator

END_OF_RANGE = -1


class HandleCounters:
    """Session-wide handle sources shared by all of its read contexts."""

    def __init__(self) -> None:
        self._rows = itertools.count()
        self._tables = itertools.count(2)

    def next_row(self) -> int:
        return next(self._rows)

    def next_end(self) -> int:
        return -next(self._tables)


class _IteratorCache:
    def __init__(self, counters: HandleCounters) -> None:
        self._counters = counters
        self._end_of: Dict[TableId, int] = {}
        self._table_of_end: Dict[int, TableId] = {}
        self._objects: Dict[int, Hashable] = {}
        self._handles: Dict[Hashable, int] = {}

    def cache_table(self, tid: TableId) -> int:
        end = self._end_of.get(tid)
        if end is None:
            end = self._counters.next_end()
            self._end_of[tid] = end
            self._table_of_end[end] = tid
        return end

    def end_of(self, tid: TableId) -> int:
        return self._end_of[tid]

    def table_of_end(self, it: int) -> TableId:
        try:
            return self._table_of_end[it]
        except KeyError:
            raise InvalidIterator(it, "not a valid end iterator") from None

    def add(self, obj: Hashable) -> int:
        it = self._handles.get(obj)
        if it is None:
            it = self._counters.next_row()
            self._handles[obj] = it
            self._objects[it] = obj
        return it

    def get(self, it: int) -> Any:
        if it == END_OF_RANGE:
            raise InvalidIterator(it, "invalid iterator")
        if it < END_OF_RANGE:
            raise InvalidIterator(it, "dereference of end iterator")
        try:
            return self._objects[it]
        except KeyError:
            raise InvalidIterator(it, "iterator out of range") from None


# ---------------------------------------------------------------------------
# Primary index
# ---------------------------------------------------------------------------


class PrimaryIndexBridge:
    def __init__(self, db: StateDB, counters: HandleCounters) -> None:
        self._db = db
        self._cache = _IteratorCache(counters)

    def _locate(self, code: int, scope: int, table: int, pick) -> int:
        tid = (code, scope, table)
        tab = self._db.find_table(tid)
        if tab is None:
            return END_OF_RANGE
        end = self._cache.cache_table(tid)
        pos = pick(tab)
        if pos is None or pos >= len(tab):
            return end
        return self._cache.add((tid, tab.keys[pos]))

    def find(self, code: int, scope: int, table: int, primary: int) -> int:
        def exact(tab):
            pos = tab.lower_bound(primary)
            return pos if pos < len(tab) and tab.keys[pos] == primary else None

        return self._locate(code, scope, table, exact)

    def lowerbound(self, code: int, scope: int, table: int, primary: int) -> int:
        return self._locate(code, scope, table, lambda tab: tab.lower_bound(primary))

    def upperbound(self, code: int, scope: int, table: int, primary: int) -> int:
        return self._locate(code, scope, table, lambda tab: tab.upper_bound(primary))

    def end(self, code: int, scope: int, table: int) -> int:
        tid = (code, scope, table)
        if self._db.find_table(tid) is None:
            return END_OF_RANGE
        return self._cache.cache_table(tid)

    def _row(self, it: int):
        tid, primary = self._cache.get(it)
        tab = self._db.find_table(tid)
        if tab is None or tab.get(primary) is None:
            raise InvalidIterator(it, "dereference of deleted row")
        return tid, tab, tab.position(primary)

    def get(self, it: int) -> bytes:
        tid, tab, pos = self._row(it)
        return tab.at(pos).value

    def next(self, it: int) -> Tuple[int, Optional[int]]:
        if it < END_OF_RANGE:
            self._cache.table_of_end(it)
            return END_OF_RANGE, None
        tid, tab, pos = self._row(it)
        if pos + 1 >= len(tab):
            return self._cache.end_of(tid), None
        primary = tab.keys[pos + 1]
        return self._cache.add((tid, primary)), primary

    def previous(self, it: int) -> Tuple[int, Optional[int]]:
        if it < END_OF_RANGE:
            tid = self._cache.table_of_end(it)
            tab = self._db.find_table(tid)
            if tab is None or not len(tab):
                return END_OF_RANGE, None
            pos = len(tab)
        else:
            tid, tab, pos = self._row(it)
        if pos == 0:
            return END_OF_RANGE, None
        primary = tab.keys[pos - 1]
        return self._cache.add((tid, primary)), primary


# ---------------------------------------------------------------------------
# Secondary indices
# ---------------------------------------------------------------------------


class SecondaryIndexBridge:
    """One secondary key family (idx64, idx128, idx256, idx_double)."""

    def __init__(self, kind: SecondaryKind, db: StateDB, counters: HandleCounters) -> None:
        self.kind = kind
        self._db = db
        self._cache = _IteratorCache(counters)

    def _table(self, code: int, scope: int, table: int):
        tid = (code, scope, table)
        return tid, self._db.find_secondary_table(self.kind, tid)

    def _add(self, tid: TableId, entry: Tuple[SecondaryKey, int]) -> int:
        key, primary = entry
        return self._cache.add((tid, key, primary))

    def find_secondary(
        self, code: int, scope: int, table: int, key: SecondaryKey
    ) -> Tuple[int, Optional[int]]:
        tid, tab = self._table(code, scope, table)
        if tab is None:
            return END_OF_RANGE, None
        end = self._cache.cache_table(tid)
        pos = tab.lower_bound(key)
        if pos >= len(tab) or tab.entries[pos][0] != key:
            return end, None
        return self._add(tid, tab.entries[pos]), tab.entries[pos][1]

    def find_primary(
        self, code: int, scope: int, table: int, primary: int
    ) -> Tuple[int, Optional[SecondaryKey]]:
        tid, tab = self._table(code, scope, table)
        if tab is None:
            return END_OF_RANGE, None
        end = self._cache.cache_table(tid)
        key = tab.secondary_of(primary)
        if key is None:
            return end, None
        return self._add(tid, (key, primary)), key

    def _bound(self, code: int, scope: int, table: int, pick) -> Tuple[int, Optional[SecondaryKey], Optional[int]]:
        tid, tab = self._table(code, scope, table)
        if tab is None:
            return END_OF_RANGE, None, None
        end = self._cache.cache_table(tid)
        pos = pick(tab)
        if pos >= len(tab):
            return end, None, None
        key, primary = tab.entries[pos]
        return self._add(tid, (key, primary)), key, primary

    def lowerbound_secondary(self, code: int, scope: int, table: int, key: SecondaryKey):
        """Returns (handle, found secondary, found primary)."""
        return self._bound(code, scope, table, lambda tab: tab.lower_bound(key))

    def upperbound_secondary(self, code: int, scope: int, table: int, key: SecondaryKey):
        return self._bound(code, scope, table, lambda tab: tab.upper_bound(key))

    def end_secondary(self, code: int, scope: int, table: int) -> int:
        tid, tab = self._table(code, scope, table)
        if tab is None:
            return END_OF_RANGE
        return self._cache.cache_table(tid)

    def _entry(self, it: int):
        tid, key, primary = self._cache.get(it)
        tab = self._db.find_secondary_table(self.kind, tid)
        if tab is None or tab.secondary_of(primary) != key:
            raise InvalidIterator(it, "dereference of deleted row")
        return tid, tab, tab.position(key, primary)

    def next_secondary(self, it: int) -> Tuple[int, Optional[int]]:
        if it < END_OF_RANGE:
            self._cache.table_of_end(it)
            return END_OF_RANGE, None
        tid, tab, pos = self._entry(it)
        if pos + 1 >= len(tab):
            return self._cache.end_of(tid), None
        entry = tab.entries[pos + 1]
        return self._add(tid, entry), entry[1]

    def previous_secondary(self, it: int) -> Tuple[int, Optional[int]]:
        if it < END_OF_RANGE:
            tid = self._cache.table_of_end(it)
            tab = self._db.find_secondary_table(self.kind, tid)
            if tab is None or not len(tab):
                return END_OF_RANGE, None
            pos = len(tab)
        else:
            tid, tab, pos = self._entry(it)
        if pos == 0:
            return END_OF_RANGE, None
        entry = tab.entries[pos - 1]
        return self._add(tid, entry), entry[1]


# ---------------------------------------------------------------------------
# Read context
# ---------------------------------------------------------------------------


class ReadContext:
    """Iterator scope for one stable view of a session's state."""

    def __init__(self, db: StateDB, counters: HandleCounters) -> None:
        self.db = db
        self.primary = PrimaryIndexBridge(db, counters)
        self._secondary = {name: SecondaryIndexBridge(kind, db, counters) for name, kind in SECONDARY_KINDS.items()}

    def secondary(self, kind: str) -> SecondaryIndexBridge:
        return self._secondary[kind]

    def __iter__(self) -> Iterator[SecondaryIndexBridge]:
        return iter(self._secondary.values())


__all__ = [
    "END_OF_RANGE",
    "HandleCounters",
    "PrimaryIndexBridge",
    "SecondaryIndexBridge",
    "ReadContext",
]
