"""
hostcore.logging
----------------

Logging for the tester process, built on the stdlib `logging` module.

- Two line formats: JSON (one object per line) or text (optionally colored).
- Fields bound with `bind()` / `scope()` live in a `ContextVar` and are
  attached to every record: the chain handle, the block number, the
  transaction id and the host call currently being served.
- Values are made JSON-safe on the way in (bytes become hex, paths become
  strings, dataclasses become dicts).

Usage
-----
    from hostcore import logging as hlog

    hlog.configure(level="DEBUG")     # the CLI does this once
    log = hlog.get_logger(__name__)

    with hlog.scope(chain=0, call="tester_push_transaction"):
        log.info("transaction pushed", extra={"elapsed_us": 120})

Nothing below WARNING is shown unless `wasm-tester -v` is given, which turns
on block finalization and per-transaction timing messages.

WASM_TESTER_LOG_FORMAT=json|text picks the format; otherwise text is used on
a terminal and JSON everywhere else.
"""

from __future__ import annotations

import datetime as _dt
import io
import json
import logging
import os
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

FORMAT_ENV = "WASM_TESTER_LOG_FORMAT"

# Order in which bound fields appear in text lines.
CONTEXT_FIELDS = ("chain", "block", "trx", "call", "component")

_fields: ContextVar[Dict[str, Any]] = ContextVar("wasm_tester_log_fields", default={})

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


# ---- bound fields ----


def context() -> Dict[str, Any]:
    """Copy of the fields bound in the current context."""
    return dict(_fields.get())


def bind(**fields: Any) -> None:
    _fields.set({**_fields.get(), **{k: _jsonable(v) for k, v in fields.items()}})


def unbind(*keys: str) -> None:
    _fields.set({k: v for k, v in _fields.get().items() if k not in keys})


def clear_context() -> None:
    _fields.set({})


@contextmanager
def scope(**fields: Any) -> Iterator[None]:
    """Bind `fields` inside the block only."""
    token = _fields.set({**_fields.get(), **{k: _jsonable(v) for k, v in fields.items()}})
    try:
        yield
    finally:
        _fields.reset(token)


# ---- value coercion ----


def _jsonable(v: Any) -> Any:
    if v is None or isinstance(v, (bool, int, float, str, list, dict)):
        return v
    if isinstance(v, (bytes, bytearray, memoryview)):
        return bytes(v).hex()
    if isinstance(v, Path):
        return str(v)
    if is_dataclass(v) and not isinstance(v, type):
        return asdict(v)
    return str(v)


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        k: _jsonable(v)
        for k, v in vars(record).items()
        if k not in _RECORD_ATTRS and not k.startswith("_")
    }


def _timestamp() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat(timespec="milliseconds")


def _exception_text(record: logging.LogRecord) -> str:
    return "".join(traceback.format_exception(*record.exc_info)).rstrip()


# ---- formatters ----


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        out: Dict[str, Any] = {
            "ts": _timestamp(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **context(),
        }
        for k, v in _record_extras(record).items():
            out.setdefault(k, v)
        if record.exc_info:
            out["err"] = _exception_text(record)
        return json.dumps(out, default=str, separators=(",", ":"))


_COLORS = {
    logging.DEBUG: "90",
    logging.INFO: "32",
    logging.WARNING: "33",
    logging.ERROR: "31",
    logging.CRITICAL: "1;35",
}


def _paint(text: str, code: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m"


class TextFormatter(logging.Formatter):
    """
    One line per record:

      2026-01-05T12:34:56.789+00:00 | DEBUG | wasmtester.session | chain=0 block=3 | finish block
    """

    def __init__(self, stream: Any):
        super().__init__()
        self._color = _is_terminal(stream) and os.environ.get("NO_COLOR") is None

    def format(self, record: logging.LogRecord) -> str:
        bound = context()
        pairs = [f"{k}={bound[k]}" for k in CONTEXT_FIELDS if bound.get(k) is not None]
        pairs += [f"{k}={v}" for k, v in _record_extras(record).items() if k not in bound]

        level, name = f"{record.levelname:<5}", record.name
        if self._color:
            level = _paint(level, _COLORS.get(record.levelno, "37"))
            name = _paint(name, "36")

        parts = [_timestamp(), level, name]
        if pairs:
            parts.append(" ".join(pairs))
        parts.append(record.getMessage())
        line = " | ".join(parts)
        if record.exc_info:
            line += "\n" + _exception_text(record)
        return line


# ---- setup ----


def configure(
    *,
    json: Optional[bool] = None,
    level: str | int = "WARNING",
    stream: Optional[io.TextIOBase] = None,
    file_path: Optional[Path | str] = None,
) -> None:
    """
    Install fresh root handlers.

    Parameters
    ----------
    json : bool | None
        Force JSON (True) or text (False); None consults WASM_TESTER_LOG_FORMAT
        and then whether `stream` is a terminal.
    level : str | int
        Minimum level for the root logger and its handlers.
    stream : TextIO | None
        Console stream; stderr when omitted.
    file_path : Path | str | None
        Additionally write JSON lines to this file.
    """
    stream = stream if stream is not None else sys.stderr
    lvl = coerce_level(level)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(lvl)

    console = logging.StreamHandler(stream)
    console.setFormatter(JSONFormatter() if _wants_json(json, stream) else TextFormatter(stream))
    handlers: list = [console]

    if file_path:
        target = Path(file_path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(target, encoding="utf-8")
        fh.setFormatter(JSONFormatter())
        handlers.append(fh)

    for h in handlers:
        h.setLevel(lvl)
        root.addHandler(h)

    # wasmtime and the recovery pool are chatty at DEBUG
    for noisy in ("wasmtime", "concurrent.futures"):
        logging.getLogger(noisy).setLevel(max(lvl, logging.WARNING))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or "wasmtester")


def coerce_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    return logging.getLevelNamesMapping().get(level.strip().upper(), logging.WARNING)


def _is_terminal(stream: Any) -> bool:
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError, OSError):
        return False


def _wants_json(flag: Optional[bool], stream: Any) -> bool:
    if flag is not None:
        return flag
    choice = os.environ.get(FORMAT_ENV, "").strip().lower()
    if choice in ("json", "text"):
        return choice == "json"
    return not _is_terminal(stream)


__all__ = [
    "FORMAT_ENV",
    "CONTEXT_FIELDS",
    "context",
    "bind",
    "unbind",
    "clear_context",
    "scope",
    "JSONFormatter",
    "TextFormatter",
    "configure",
    "get_logger",
    "coerce_level",
]
