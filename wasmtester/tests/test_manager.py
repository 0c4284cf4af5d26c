from __future__ import annotations

import pytest

from hostcore.errors import ChainNotFound, ChainShutDown, NoChainSelected
from wasmtester.manager import SLOT_BITS, ChainManager, decode_handle, encode_handle


def test_handle_packing() -> None:
    assert encode_handle(0, 0) == 0
    assert encode_handle(3, 1) == (1 << SLOT_BITS) | 3
    assert decode_handle(encode_handle(7, 9)) == (7, 9)


def test_first_chain_is_handle_zero_and_selected(manager: ChainManager) -> None:
    assert manager.create() == 0
    assert manager.selected == 0
    second = manager.create()
    assert second == 1
    assert manager.selected == 0
    assert sorted(manager.handles()) == [0, 1]


def test_destroyed_handles_are_never_reissued(manager: ChainManager) -> None:
    first = manager.create()
    manager.destroy(first)
    with pytest.raises(ChainNotFound):
        manager.get(first)
    again = manager.create()
    assert again == 1 << SLOT_BITS
    with pytest.raises(ChainNotFound):
        manager.get(first)
    assert manager.get(again).handle == again


def test_unknown_handle(manager: ChainManager) -> None:
    with pytest.raises(ChainNotFound):
        manager.get(3)
    with pytest.raises(ChainNotFound):
        manager.destroy(3)


def test_shutdown_chain(manager: ChainManager) -> None:
    h = manager.create()
    path = manager.get_chain_path(h)
    manager.shutdown(h)
    with pytest.raises(ChainShutDown):
        manager.get(h)
    assert manager.get_chain_path(h) == path
    with pytest.raises(NoChainSelected):
        manager.read_context()
    manager.destroy(h)


def test_selection(manager: ChainManager) -> None:
    with pytest.raises(NoChainSelected):
        manager.selected_session()
    a = manager.create()
    b = manager.create()
    manager.select_for_queries(b)
    assert manager.selected_session() is manager.get(b)
    manager.destroy(b)
    assert manager.selected is None
    with pytest.raises(NoChainSelected):
        manager.read_context()
    with pytest.raises(ChainNotFound):
        manager.select_for_queries(b)
    manager.select_for_queries(a)
    assert manager.read_context() is manager.get(a).read_context


def test_teardown_destroys_everything(manager: ChainManager) -> None:
    sessions = [manager.get(manager.create()) for _ in range(3)]
    manager.teardown()
    assert len(manager) == 0
    assert all(s.destroyed for s in sessions)
    assert manager.selected is None
