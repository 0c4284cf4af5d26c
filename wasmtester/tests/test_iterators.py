from __future__ import annotations

import pytest

from chainsim.names import string_to_name
from chainsim.state_db import IDX64, IDX256, StateDB
from hostcore.errors import InvalidIterator
from wasmtester.iterators import END_OF_RANGE, HandleCounters, ReadContext

ALICE = string_to_name("alice")
ROWS = string_to_name("rows")
PART = (ALICE, ALICE, ROWS)


def _context(*keys: int, counters=None):
    db = StateDB()
    for k in keys:
        db.store_row(PART, k, ALICE, b"row%d" % k)
        db.store_secondary(IDX64, PART, k, 100 - k, ALICE)
    return db, ReadContext(db, counters or HandleCounters())


# ---- primary ----


def test_walk_forward_from_lowerbound() -> None:
    _, ctx = _context(3, 1, 2)
    idx = ctx.primary
    it = idx.lowerbound(*PART, 2)
    assert idx.get(it) == b"row2"
    it, primary = idx.next(it)
    assert primary == 3
    end, primary = idx.next(it)
    assert primary is None
    assert end == idx.end(*PART)
    assert end < END_OF_RANGE


def test_walk_backward_from_end() -> None:
    _, ctx = _context(1, 2)
    idx = ctx.primary
    it, primary = idx.previous(idx.end(*PART))
    assert primary == 2
    it, primary = idx.previous(it)
    assert primary == 1
    assert idx.previous(it) == (END_OF_RANGE, None)


def test_same_row_gets_same_handle() -> None:
    _, ctx = _context(5)
    idx = ctx.primary
    assert idx.find(*PART, 5) == idx.lowerbound(*PART, 0) >= 0


def test_missing_rows_and_tables() -> None:
    _, ctx = _context(1)
    idx = ctx.primary
    end = idx.end(*PART)
    assert idx.find(*PART, 9) == end
    assert idx.upperbound(*PART, 1) == end
    other = (ALICE, ALICE, string_to_name("other"))
    assert idx.find(*other, 1) == END_OF_RANGE
    assert idx.end(*other) == END_OF_RANGE


def test_end_sentinels_are_distinct_per_partition() -> None:
    db, ctx = _context(1)
    scope2 = (ALICE, string_to_name("bob"), ROWS)
    db.store_row(scope2, 1, ALICE, b"")
    assert ctx.primary.end(*PART) != ctx.primary.end(*scope2)


@pytest.mark.parametrize("bad", [END_OF_RANGE, -7, 12345])
def test_dereferencing_invalid_handles(bad: int) -> None:
    _, ctx = _context(1)
    ctx.primary.end(*PART)
    with pytest.raises(InvalidIterator):
        ctx.primary.get(bad)


def test_next_of_end_is_end_of_range() -> None:
    _, ctx = _context(1)
    assert ctx.primary.next(ctx.primary.end(*PART)) == (END_OF_RANGE, None)


def test_next_of_stale_end_is_rejected() -> None:
    counters = HandleCounters()
    db, old = _context(1, counters=counters)
    end = old.primary.end(*PART)
    fresh = ReadContext(db, counters)
    with pytest.raises(InvalidIterator):
        fresh.primary.next(end)
    with pytest.raises(InvalidIterator):
        fresh.secondary("idx64").next_secondary(end)


def test_next_of_end_from_another_family_is_rejected() -> None:
    _, ctx = _context(1)
    end = ctx.primary.end(*PART)
    with pytest.raises(InvalidIterator):
        ctx.secondary("idx64").next_secondary(end)
    sec_end = ctx.secondary("idx64").end_secondary(*PART)
    with pytest.raises(InvalidIterator):
        ctx.primary.next(sec_end)


def test_deleted_row() -> None:
    db, ctx = _context(1, 2)
    it = ctx.primary.find(*PART, 1)
    db.remove_row(PART, 1)
    with pytest.raises(InvalidIterator) as ei:
        ctx.primary.get(it)
    assert "deleted" in ei.value.message


def test_handles_from_a_previous_context_are_unknown() -> None:
    counters = HandleCounters()
    db, old = _context(1, counters=counters)
    stale = old.primary.find(*PART, 1)
    fresh = ReadContext(db, counters)
    with pytest.raises(InvalidIterator):
        fresh.primary.get(stale)
    assert fresh.primary.find(*PART, 1) != stale


def test_families_do_not_share_handles() -> None:
    _, ctx = _context(1)
    it = ctx.primary.find(*PART, 1)
    with pytest.raises(InvalidIterator):
        ctx.secondary("idx64").next_secondary(it)


# ---- secondary ----


def test_secondary_order_and_lookup() -> None:
    _, ctx = _context(1, 2, 3)
    idx = ctx.secondary("idx64")
    it, primary = idx.find_secondary(*PART, 98)
    assert primary == 2
    it, primary = idx.next_secondary(it)
    assert primary == 1
    end, primary = idx.next_secondary(it)
    assert (end, primary) == (idx.end_secondary(*PART), None)
    it, primary = idx.previous_secondary(end)
    assert primary == 1


def test_secondary_bounds() -> None:
    _, ctx = _context(1, 2, 3)
    idx = ctx.secondary("idx64")
    it, key, primary = idx.lowerbound_secondary(*PART, 0)
    assert (key, primary) == (97, 3)
    it, key, primary = idx.upperbound_secondary(*PART, 98)
    assert (key, primary) == (99, 1)
    end, key, primary = idx.upperbound_secondary(*PART, 99)
    assert (key, primary) == (None, None)
    assert end == idx.end_secondary(*PART)


def test_find_primary() -> None:
    _, ctx = _context(4)
    idx = ctx.secondary("idx64")
    it, key = idx.find_primary(*PART, 4)
    assert key == 96
    end, key = idx.find_primary(*PART, 5)
    assert key is None
    assert end == idx.end_secondary(*PART)


def test_secondary_partition_without_index_table() -> None:
    _, ctx = _context(1)
    assert ctx.secondary("idx128").find_secondary(*PART, 1) == (END_OF_RANGE, None)
    assert ctx.secondary("idx128").end_secondary(*PART) == END_OF_RANGE


def test_wide_keys() -> None:
    db = StateDB()
    db.store_secondary(IDX256, PART, 1, 1 << 200, ALICE)
    db.store_secondary(IDX256, PART, 2, 5, ALICE)
    ctx = ReadContext(db, HandleCounters())
    _, key, primary = ctx.secondary("idx256").lowerbound_secondary(*PART, 6)
    assert (key, primary) == (1 << 200, 1)


def test_context_lists_every_family() -> None:
    _, ctx = _context()
    assert sorted(b.kind.name for b in ctx) == ["idx128", "idx256", "idx64", "idx_double"]


def test_secondary_walk_reaches_end_once() -> None:
    db = StateDB()
    for primary, key in ((10, 3), (11, 1), (12, 2)):
        db.store_secondary(IDX64, PART, primary, key, ALICE)
    idx = ReadContext(db, HandleCounters()).secondary("idx64")
    it, key, primary = idx.lowerbound_secondary(*PART, 2)
    seen = [key]
    while True:
        it, primary = idx.next_secondary(it)
        if primary is None:
            break
        seen.append(db.find_secondary_table(IDX64, PART).secondary_of(primary))
    assert seen == [2, 3]
    assert it == idx.end_secondary(*PART)
    assert idx.next_secondary(it) == (END_OF_RANGE, None)
