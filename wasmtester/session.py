"""
wasmtester.session: one simulated chain owned by the harness.

A `ChainSession` owns a controller, the temporary directory it writes into,
and the producer key that signs its blocks. Its block production is a
two-state machine:

    no pending block  --start_block / start_if_needed-->  pending block
    pending block     --finish_block-->                   no pending block
    pending block     --start_block-->   (finish, then)   pending block

Every mutating entry point drops the session's `ReadContext`, so iterator
handles never span a mutation. A new context is built lazily by the next
table query.

`SessionRef` is a non-owning handle into a session. The session keeps every
live ref and nulls them when it is destroyed, so holders observe
`ref.session is None` instead of a dangling controller.
"""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Optional, Set

from chainsim.controller import Controller
from chainsim.keys import PrivateKey
from chainsim.snapshot import extract_chain_id
from hostcore.config import TesterConfig
from hostcore.errors import InternalError
from hostcore.logging import get_logger

from .iterators import HandleCounters, ReadContext

log = get_logger("wasmtester.session")


class ChainSession:
    def __init__(
        self,
        config: TesterConfig,
        *,
        snapshot: Optional[Path] = None,
        handle: Optional[int] = None,
    ) -> None:
        self.config = config
        self.handle = handle
        self.producer_key = PrivateKey.from_string(config.producer_key)
        root = str(config.temp_root) if config.temp_root is not None else None
        self.temp_dir = Path(tempfile.mkdtemp(prefix="wasm-tester-", dir=root))
        self._refs: Set["SessionRef"] = set()
        self._counters = HandleCounters()
        self._read_context: Optional[ReadContext] = None
        self.destroyed = False

        try:
            expected = extract_chain_id(snapshot) if snapshot is not None else None
            self.controller: Optional[Controller] = Controller(
                config,
                self.temp_dir,
                self.producer_key.public_key(),
                snapshot=snapshot,
                expected_chain_id=expected,
            )
        except BaseException:
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            raise
        if snapshot is None:
            self.start_block()

    @property
    def path(self) -> str:
        return str(self.temp_dir)

    @property
    def control(self) -> Controller:
        if self.controller is None:
            raise InternalError("chain was shut down", handle=self.handle)
        return self.controller

    # ---- read context ----

    def mutating(self) -> None:
        self._read_context = None

    @property
    def read_context(self) -> ReadContext:
        if self._read_context is None:
            self.start_if_needed()
            self._read_context = ReadContext(self.control.db, self._counters)
        return self._read_context

    # ---- block lifecycle ----

    def start_block(self, skip_ms: int = 0) -> None:
        self.mutating()
        control = self.control
        if control.is_building_block:
            self.finish_block()
        when = control.head_block_time + (self.config.block_interval_ms + skip_ms) * 1000
        control.start_block(when)

    def start_if_needed(self) -> None:
        self.mutating()
        if not self.control.is_building_block:
            self.start_block()

    def finish_block(self) -> None:
        self.start_if_needed()
        control = self.control
        log.info("finish block", extra={"chain": self.handle, "block": control.pending.block_num})
        control.finalize_block(self.producer_key)
        control.commit_block()

    def head_block(self):
        """(block_num, block_id, timestamp slot) of the current head."""
        control = self.control
        return control.head_block_num, control.head_block_id, control.head_block_timestamp

    # ---- teardown ----

    def shutdown(self) -> None:
        self.mutating()
        if self.controller is not None:
            self.controller.close()
            self.controller = None

    def destroy(self) -> None:
        if self.destroyed:
            return
        self.shutdown()
        for ref in list(self._refs):
            ref.session = None
        self._refs.clear()
        self.destroyed = True
        if not self.config.keep_temp_dirs:
            shutil.rmtree(self.temp_dir, ignore_errors=True)


class SessionRef:
    def __init__(self, session: Optional[ChainSession] = None) -> None:
        self.session: Optional[ChainSession] = None
        self.assign(session)

    def assign(self, session: Optional[ChainSession]) -> None:
        self.release()
        if session is not None and not session.destroyed:
            session._refs.add(self)
            self.session = session

    def copy(self) -> "SessionRef":
        return SessionRef(self.session)

    def release(self) -> None:
        if self.session is not None:
            self.session._refs.discard(self)
            self.session = None

    def __bool__(self) -> bool:
        return self.session is not None


__all__ = ["ChainSession", "SessionRef"]
