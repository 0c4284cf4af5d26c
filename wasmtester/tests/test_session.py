from __future__ import annotations

from pathlib import Path

import pytest

from hostcore.errors import InternalError, InvalidIterator
from wasmtester.session import ChainSession, SessionRef


def test_new_session_has_pending_block(session: ChainSession) -> None:
    assert session.control.is_building_block
    assert session.control.head_block_num == 1
    assert Path(session.path).is_dir()


def test_finish_and_start_block(session: ChainSession) -> None:
    before = session.control.head_block_time
    session.finish_block()
    assert session.control.head_block_num == 2
    assert not session.control.is_building_block
    assert session.control.head_block_time == before + 500_000

    session.start_block(skip_ms=1000)
    assert session.control.pending_block_time == session.control.head_block_time + 1_500_000


def test_start_block_finishes_pending(session: ChainSession) -> None:
    session.start_block()
    assert session.control.head_block_num == 2
    assert session.control.is_building_block


def test_finish_block_without_pending_starts_one(session: ChainSession) -> None:
    session.finish_block()
    session.finish_block()
    assert session.control.head_block_num == 3


def test_head_block(session: ChainSession) -> None:
    session.finish_block()
    num, block_id, slot = session.head_block()
    assert num == 2
    assert block_id == session.control.head_block_id
    assert slot == session.control.head_block_timestamp


def test_mutation_invalidates_iterators(session: ChainSession, chain_helpers) -> None:
    name = chain_helpers.deploy(session)
    session.control.db.store_row((name, name, chain_helpers.ROWS), 1, name, b"x")
    ctx = session.read_context
    it = ctx.primary.find(name, name, chain_helpers.ROWS, 1)
    assert ctx.primary.get(it) == b"x"
    assert session.read_context is ctx

    session.start_block()
    with pytest.raises(InvalidIterator):
        session.read_context.primary.get(it)


def test_destroy_nulls_refs_and_removes_directory(config) -> None:
    s = ChainSession(config, handle=5)
    path = Path(s.path)
    ref = SessionRef(s)
    copy = ref.copy()
    assert ref and copy
    s.destroy()
    assert ref.session is None and copy.session is None
    assert not ref
    assert not path.exists()
    with pytest.raises(InternalError):
        s.control
    s.destroy()
    assert not SessionRef(s)


def test_keep_temp_dirs(config) -> None:
    s = ChainSession(config.with_overrides(keep_temp_dirs=True))
    s.destroy()
    assert Path(s.path).is_dir()


def test_shutdown_keeps_directory(session: ChainSession) -> None:
    session.shutdown()
    assert session.controller is None
    assert Path(session.path).is_dir()
    assert (Path(session.path) / "state" / "state.cbor").exists()


def test_ref_release() -> None:
    ref = SessionRef()
    assert not ref
    ref.release()
    assert ref.session is None
