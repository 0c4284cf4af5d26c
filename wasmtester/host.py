"""
wasmtester.host: per-run state shared by all host-call handlers.
"""

from __future__ import annotations

import sys
from typing import IO, Any, List, Optional

from hostcore.config import TesterConfig, load_config

from .files import FileTable
from .iterators import ReadContext
from .manager import ChainManager


class TesterHost:
    def __init__(
        self,
        args: List[str],
        config: Optional[TesterConfig] = None,
        *,
        stdin: Optional[IO[bytes]] = None,
        stdout: Optional[IO[bytes]] = None,
        stderr: Optional[IO[bytes]] = None,
    ) -> None:
        self.config = config or load_config()
        self.args = list(args)
        self.stderr: IO[bytes] = stderr if stderr is not None else sys.stderr.buffer
        self.files = FileTable(stdin, stdout, self.stderr)
        self.chains = ChainManager(self.config)
        # first failure raised inside a host call; wasmtime surfaces it as a trap
        self.fault: Optional[BaseException] = None

    def read_context(self) -> ReadContext:
        return self.chains.read_context()

    def console(self, data: bytes) -> None:
        self.stderr.write(data)
        self.stderr.flush()

    def close(self) -> None:
        self.files.close_all()
        self.chains.teardown()

    def __enter__(self) -> "TesterHost":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


__all__ = ["TesterHost"]
