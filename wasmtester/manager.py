"""
wasmtester.manager: the set of chains a guest module has created.

Chains are addressed by u32 handles. A handle packs a slot index with the
slot's generation:

    handle = (generation << SLOT_BITS) | slot

Destroying a chain empties its slot and bumps the slot's generation, so the
handle is never issued again even after the slot is reused. The first chain
keeps handle 0, matching guests that assume it.

The manager also owns the single "selected" chain that table queries
(`db_*` host calls) implicitly target. Host calls run one at a time on the
guest's thread, so the selection needs no locking.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from hostcore.config import TesterConfig, load_config
from hostcore.errors import ChainNotFound, ChainShutDown, HandlesExhausted, NoChainSelected
from hostcore.logging import get_logger

from .iterators import ReadContext
from .session import ChainSession

log = get_logger("wasmtester.manager")

SLOT_BITS = 12
MAX_SLOTS = 1 << SLOT_BITS
MAX_GENERATION = (1 << (32 - SLOT_BITS)) - 1


def encode_handle(slot: int, generation: int) -> int:
    return (generation << SLOT_BITS) | slot


def decode_handle(handle: int) -> Tuple[int, int]:
    handle &= 0xFFFFFFFF
    return handle & (MAX_SLOTS - 1), handle >> SLOT_BITS


class ChainManager:
    def __init__(self, config: Optional[TesterConfig] = None) -> None:
        self.config = config or load_config()
        self._slots: List[Optional[ChainSession]] = []
        self._generations: List[int] = []
        self.selected: Optional[int] = None

    def __len__(self) -> int:
        return len(self._slots)

    def handles(self) -> Iterator[int]:
        for slot, session in enumerate(self._slots):
            if session is not None:
                yield encode_handle(slot, self._generations[slot])

    # ---- lifecycle ----

    def create(self, snapshot: Optional[Path] = None) -> int:
        slot = len(self._slots)
        if slot >= MAX_SLOTS:
            raise HandlesExhausted(slot)
        if slot == len(self._generations):
            self._generations.append(0)
        generation = self._generations[slot]
        if generation > MAX_GENERATION:
            raise HandlesExhausted(slot)
        handle = encode_handle(slot, generation)

        session = ChainSession(self.config, snapshot=snapshot, handle=handle)
        self._slots.append(session)
        if len(self._slots) == 1:
            self.selected = handle
        log.info("chain created", extra={"chain": handle, "path": session.path, "snapshot": str(snapshot or "")})
        return handle

    def get(self, handle: int, require_control: bool = True) -> ChainSession:
        slot, generation = decode_handle(handle)
        if slot >= len(self._slots) or self._generations[slot] != generation:
            raise ChainNotFound(handle)
        session = self._slots[slot]
        if session is None:
            raise ChainNotFound(handle)
        if require_control and session.controller is None:
            raise ChainShutDown(handle)
        return session

    def destroy(self, handle: int) -> None:
        session = self.get(handle, require_control=False)
        slot, _ = decode_handle(handle)
        if self.selected == handle:
            self.selected = None
        self._slots[slot] = None
        self._generations[slot] += 1
        while self._slots and self._slots[-1] is None:
            self._slots.pop()
        session.destroy()
        log.info("chain destroyed", extra={"chain": handle})

    def shutdown(self, handle: int) -> None:
        self.get(handle).shutdown()
        log.info("chain shut down", extra={"chain": handle})

    def get_chain_path(self, handle: int) -> str:
        return self.get(handle, require_control=False).path

    def teardown(self) -> None:
        for handle in list(self.handles()):
            self.destroy(handle)
        self.selected = None

    # ---- table-query selection ----

    def select_for_queries(self, handle: int) -> None:
        self.get(handle)
        self.selected = handle

    def selected_session(self) -> ChainSession:
        if self.selected is None:
            raise NoChainSelected()
        try:
            return self.get(self.selected)
        except (ChainNotFound, ChainShutDown) as e:
            raise NoChainSelected() from e

    def read_context(self) -> ReadContext:
        return self.selected_session().read_context


__all__ = [
    "SLOT_BITS",
    "ChainManager",
    "encode_handle",
    "decode_handle",
]
