from __future__ import annotations

import io

import pytest

from wasmtester.files import (
    FDFLAG_APPEND,
    FDFLAG_NONBLOCK,
    OFLAG_CREAT,
    OFLAG_DIRECTORY,
    OFLAG_EXCL,
    OFLAG_TRUNC,
    RIGHT_FD_READ,
    RIGHT_FD_WRITE,
    ROOT_FD,
    Errno,
    FileTable,
    FileType,
    open_mode,
)

R, W = RIGHT_FD_READ, RIGHT_FD_WRITE


def _table():
    return FileTable(io.BytesIO(b"input"), io.BytesIO(), io.BytesIO())


@pytest.mark.parametrize(
    "oflags,rights,fdflags,mode",
    [
        (0, R, 0, "r"),
        (0, R | W, 0, "r+"),
        (OFLAG_CREAT | OFLAG_TRUNC, W, 0, "w"),
        (OFLAG_CREAT | OFLAG_TRUNC, R | W, 0, "w+"),
        (OFLAG_CREAT | OFLAG_TRUNC | OFLAG_EXCL, W, 0, "wx"),
        (OFLAG_CREAT | OFLAG_TRUNC | OFLAG_EXCL, R | W, 0, "w+x"),
        (OFLAG_CREAT, W, FDFLAG_APPEND, "a"),
        (OFLAG_CREAT, R | W, FDFLAG_APPEND, "a+"),
        (OFLAG_CREAT | OFLAG_EXCL, W, FDFLAG_APPEND, "ax"),
        (OFLAG_CREAT | OFLAG_EXCL, R | W, FDFLAG_APPEND, "a+x"),
        (OFLAG_CREAT | OFLAG_EXCL, W, 0, None),
        (OFLAG_CREAT, W, 0, None),
        (OFLAG_CREAT | OFLAG_TRUNC | OFLAG_EXCL, R | W, FDFLAG_APPEND, None),
        (OFLAG_CREAT | OFLAG_TRUNC, W, FDFLAG_APPEND, None),
        (OFLAG_DIRECTORY, R, 0, None),
        (0, R, FDFLAG_NONBLOCK, None),
        (OFLAG_CREAT, R, 0, None),
        (0, W, 0, None),
    ],
)
def test_open_mode(oflags: int, rights: int, fdflags: int, mode) -> None:
    assert open_mode(oflags, rights, fdflags) == mode


def test_write_then_read_back(tmp_path) -> None:
    files = _table()
    path = str(tmp_path / "out.txt")
    err, fd = files.open(path, OFLAG_CREAT | OFLAG_TRUNC, W, 0)
    assert (err, fd) == (Errno.SUCCESS, 4)
    assert files.write(fd, b"hello") == Errno.SUCCESS
    assert files.read(fd, 5)[0] == Errno.IO
    assert files.close(fd) == Errno.SUCCESS

    err, fd = files.open(path, 0, R, 0)
    assert fd == 5
    assert files.read(fd, 100) == (Errno.SUCCESS, b"hello")
    assert files.read(fd, 100) == (Errno.SUCCESS, b"")
    assert files.write(fd, b"x") == Errno.IO
    assert FileTable.read_whole_file(path) == b"hello"


def test_append_keeps_existing_content(tmp_path) -> None:
    path = tmp_path / "log.txt"
    path.write_bytes(b"a")
    files = _table()
    _, fd = files.open(str(path), OFLAG_CREAT, W, FDFLAG_APPEND)
    files.write(fd, b"b")
    files.close_all()
    assert path.read_bytes() == b"ab"


def test_exclusive_append_creates_new_file(tmp_path) -> None:
    path = tmp_path / "fresh.txt"
    files = _table()
    err, fd = files.open(str(path), OFLAG_CREAT | OFLAG_EXCL, R | W, FDFLAG_APPEND)
    assert err == Errno.SUCCESS
    assert files.write(fd, b"one") == Errno.SUCCESS
    assert files.write(fd, b"two") == Errno.SUCCESS
    assert files.read(fd, 10) == (Errno.SUCCESS, b"")
    files.close(fd)
    assert path.read_bytes() == b"onetwo"


def test_exclusive_without_truncate_or_append_is_invalid(tmp_path) -> None:
    path = tmp_path / "never.txt"
    assert _table().open(str(path), OFLAG_CREAT | OFLAG_EXCL, W, 0) == (Errno.INVAL, -1)
    assert not path.exists()


def test_open_failures(tmp_path) -> None:
    files = _table()
    assert files.open(str(tmp_path / "missing"), 0, R, 0) == (Errno.NOENT, -1)
    existing = tmp_path / "e"
    existing.write_bytes(b"")
    assert files.open(str(existing), OFLAG_CREAT | OFLAG_EXCL, W, FDFLAG_APPEND) == (Errno.NOENT, -1)
    assert files.open(str(existing), OFLAG_CREAT | OFLAG_TRUNC, W, FDFLAG_APPEND) == (Errno.INVAL, -1)


def test_closed_descriptors_are_not_reused(tmp_path) -> None:
    files = _table()
    path = str(tmp_path / "f")
    _, first = files.open(path, OFLAG_CREAT | OFLAG_TRUNC, W, 0)
    files.close(first)
    assert files.close(first) == Errno.BADF
    assert files.write(first, b"x") == Errno.BADF
    _, second = files.open(path, 0, R, 0)
    assert second == first + 1


@pytest.mark.parametrize("fd", [0, 1, 2, ROOT_FD, 42, -1])
def test_builtin_and_unknown_descriptors_cannot_be_closed(fd: int) -> None:
    assert _table().close(fd) == Errno.BADF


def test_console_streams() -> None:
    stdin, stdout, stderr = io.BytesIO(b"input"), io.BytesIO(), io.BytesIO()
    files = FileTable(stdin, stdout, stderr)
    assert files.write(1, b"out") == Errno.SUCCESS
    assert files.write(2, b"err") == Errno.SUCCESS
    assert stdout.getvalue() == b"out"
    assert stderr.getvalue() == b"err"
    assert files.read(0, 2) == (Errno.SUCCESS, b"in")
    assert files.write(0, b"x") == Errno.IO
    assert files.write(ROOT_FD, b"x") == Errno.BADF


def test_fdstat() -> None:
    files = _table()
    assert files.fdstat(0)[1].filetype == FileType.CHARACTER_DEVICE
    assert files.fdstat(1)[1].flags == FDFLAG_APPEND
    assert files.fdstat(ROOT_FD)[1].filetype == FileType.DIRECTORY
    assert files.fdstat(9) == (Errno.BADF, None)


def test_read_whole_file_missing(tmp_path) -> None:
    assert FileTable.read_whole_file(str(tmp_path / "nope")) is None
