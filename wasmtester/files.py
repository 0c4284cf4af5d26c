"""
wasmtester.files: WASI-flavoured file table backing the guest's libc.

The guest sees small integer descriptors:

    0  stdin     (not owned, read-only)
    1  stdout    (append, write-only)
    2  stderr    (append, write-only)
    3  preopened root directory "/"
    4+ files opened through `open`

Status codes follow WASI errno numbering so the guest's libc can report them
unchanged. Closed descriptors become tombstones and are never reused.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from enum import IntEnum
from typing import IO, Any, List, Optional, Tuple

from hostcore.logging import get_logger

log = get_logger("wasmtester.files")


class Errno(IntEnum):
    SUCCESS = 0
    BADF = 8
    INVAL = 28
    IO = 29
    NOENT = 44


class FileType(IntEnum):
    UNKNOWN = 0
    CHARACTER_DEVICE = 2
    DIRECTORY = 3
    REGULAR_FILE = 4


# rights
RIGHT_FD_READ = 1 << 1
RIGHT_FD_WRITE = 1 << 6

# oflags
OFLAG_CREAT = 1 << 0
OFLAG_DIRECTORY = 1 << 1
OFLAG_EXCL = 1 << 2
OFLAG_TRUNC = 1 << 3

# fdflags
FDFLAG_APPEND = 1 << 0
FDFLAG_NONBLOCK = 1 << 2

ROOT_FD = 3
FIRST_USER_FD = 4


@dataclass
class FdStat:
    filetype: FileType
    flags: int
    rights_base: int
    rights_inheriting: int


@dataclass
class FileSlot:
    handle: Optional[IO[Any]]
    owned: bool = True
    readable: bool = False
    writable: bool = False


def open_mode(oflags: int, rights: int, fdflags: int) -> Optional[str]:
    """
    Map WASI open flags onto a C stdio mode string, or None if unsupported.

    Exclusive create keeps its truncate or append partner ("wx", "a+x", ...);
    exclusive create on its own is rejected.
    """
    if oflags & OFLAG_DIRECTORY or fdflags & FDFLAG_NONBLOCK:
        return None
    read = bool(rights & RIGHT_FD_READ)
    write = bool(rights & RIGHT_FD_WRITE)
    create = bool(oflags & OFLAG_CREAT)
    excl = bool(oflags & OFLAG_EXCL)
    trunc = bool(oflags & OFLAG_TRUNC)
    append = bool(fdflags & FDFLAG_APPEND)
    plus = "+" if read else ""

    if read and not (create or excl or trunc or append):
        return "r+" if write else "r"
    if not (write and create) or trunc == append:
        return None
    mode = ("w" if trunc else "a") + plus
    return mode + "x" if excl else mode


def _open_native(path: str, mode: str) -> IO[bytes]:
    if "x" not in mode:
        return open(path, mode + "b")
    # Python's open() has no "ax", so exclusive modes go through os.open
    flags = os.O_CREAT | os.O_EXCL | (os.O_RDWR if "+" in mode else os.O_WRONLY)
    if mode[0] == "a":
        flags |= os.O_APPEND
    fd = os.open(path, flags, 0o666)
    return os.fdopen(fd, mode.replace("x", "") + "b")


class FileTable:
    def __init__(
        self,
        stdin: Optional[IO[Any]] = None,
        stdout: Optional[IO[Any]] = None,
        stderr: Optional[IO[Any]] = None,
    ) -> None:
        self._slots: List[Optional[FileSlot]] = [
            FileSlot(stdin if stdin is not None else sys.stdin.buffer, owned=False, readable=True),
            FileSlot(stdout if stdout is not None else sys.stdout.buffer, owned=False, writable=True),
            FileSlot(stderr if stderr is not None else sys.stderr.buffer, owned=False, writable=True),
            FileSlot(None, owned=False),
        ]

    def __len__(self) -> int:
        return len(self._slots)

    def _slot(self, fd: int) -> Optional[FileSlot]:
        if fd < 0 or fd >= len(self._slots):
            return None
        return self._slots[fd]

    # ---- descriptors ----

    def open(self, path: str, oflags: int, rights: int, fdflags: int) -> Tuple[Errno, int]:
        mode = open_mode(oflags, rights, fdflags)
        if mode is None:
            return Errno.INVAL, -1
        try:
            fh = _open_native(path, mode)
        except OSError as e:
            log.debug("open failed", extra={"path": path, "mode": mode, "error": str(e)})
            return Errno.NOENT, -1
        fd = len(self._slots)
        self._slots.append(
            FileSlot(fh, owned=True, readable="r" in mode or "+" in mode, writable=mode[0] in "wa" or "+" in mode)
        )
        return Errno.SUCCESS, fd

    def close(self, fd: int) -> Errno:
        slot = self._slot(fd)
        if fd < FIRST_USER_FD or slot is None:
            return Errno.BADF
        self._slots[fd] = None
        if slot.handle is not None:
            slot.handle.close()
        return Errno.SUCCESS

    def write(self, fd: int, data: bytes) -> Errno:
        slot = self._slot(fd)
        if slot is None or slot.handle is None:
            return Errno.BADF
        if not slot.writable:
            return Errno.IO
        try:
            slot.handle.write(data)
            slot.handle.flush()
        except (OSError, ValueError):
            return Errno.IO
        return Errno.SUCCESS

    def read(self, fd: int, size: int) -> Tuple[Errno, bytes]:
        slot = self._slot(fd)
        if slot is None or slot.handle is None:
            return Errno.BADF, b""
        if not slot.readable:
            return Errno.IO, b""
        try:
            data = slot.handle.read(size)
        except (OSError, ValueError):
            return Errno.IO, b""
        return Errno.SUCCESS, data or b""

    def fdstat(self, fd: int) -> Tuple[Errno, Optional[FdStat]]:
        if fd == 0:
            return Errno.SUCCESS, FdStat(FileType.CHARACTER_DEVICE, 0, RIGHT_FD_READ, 0)
        if fd in (1, 2):
            return Errno.SUCCESS, FdStat(FileType.CHARACTER_DEVICE, FDFLAG_APPEND, RIGHT_FD_WRITE, 0)
        if fd == ROOT_FD:
            return Errno.SUCCESS, FdStat(FileType.DIRECTORY, 0, 0, RIGHT_FD_READ | RIGHT_FD_WRITE)
        slot = self._slot(fd)
        if slot is None:
            return Errno.BADF, None
        return Errno.SUCCESS, FdStat(FileType.REGULAR_FILE, 0, RIGHT_FD_READ | RIGHT_FD_WRITE, 0)

    # ---- helpers ----

    @staticmethod
    def read_whole_file(path: str) -> Optional[bytes]:
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError:
            return None

    def close_all(self) -> None:
        for fd, slot in enumerate(self._slots):
            if slot is not None and slot.owned and slot.handle is not None:
                slot.handle.close()
                self._slots[fd] = None


__all__ = [
    "Errno",
    "FileType",
    "FdStat",
    "FileSlot",
    "FileTable",
    "open_mode",
    "RIGHT_FD_READ",
    "RIGHT_FD_WRITE",
    "OFLAG_CREAT",
    "OFLAG_DIRECTORY",
    "OFLAG_EXCL",
    "OFLAG_TRUNC",
    "FDFLAG_APPEND",
    "FDFLAG_NONBLOCK",
    "ROOT_FD",
]
