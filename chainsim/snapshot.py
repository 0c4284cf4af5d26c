"""
chainsim.snapshot: CBOR snapshot files for simulated chains.

A snapshot is one canonical-CBOR map:

    {
      "version":  1,
      "chain_id": <32 bytes>,
      "genesis":  {"timestamp": str, "key": <packed public key>},
      "head":     {"num": int, "id": <32 bytes>, "time": int (µs)},
      "state":    StateDB.to_snapshot(),
    }

`extract_chain_id` reads only what it needs to validate the header, so the
manager can check a snapshot's identity before building a controller on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Union

import cbor2

from hostcore.errors import DeserializationError

from .errors import SnapshotException
from .keys import PublicKey
from .state_db import StateDB

SNAPSHOT_VERSION = 1

PathLike = Union[str, Path]


@dataclass
class SnapshotContents:
    chain_id: bytes
    genesis_timestamp: str
    genesis_key: PublicKey
    head_num: int
    head_id: bytes
    head_time: int
    state: StateDB


def _read_doc(path: PathLike) -> Dict[str, Any]:
    try:
        with open(path, "rb") as fh:
            doc = cbor2.load(fh)
    except FileNotFoundError as e:
        raise SnapshotException(f"snapshot file not found: {path}") from e
    except (cbor2.CBORDecodeError, OSError) as e:
        raise SnapshotException(f"cannot decode snapshot {path}: {e}") from e
    if not isinstance(doc, dict) or doc.get("version") != SNAPSHOT_VERSION:
        raise SnapshotException(f"unsupported snapshot format in {path}")
    chain_id = doc.get("chain_id")
    if not isinstance(chain_id, bytes) or len(chain_id) != 32:
        raise SnapshotException(f"snapshot {path} has no valid chain id")
    return doc


def extract_chain_id(path: PathLike) -> bytes:
    return _read_doc(path)["chain_id"]


def write_snapshot(path: PathLike, contents: SnapshotContents) -> None:
    doc = {
        "version": SNAPSHOT_VERSION,
        "chain_id": contents.chain_id,
        "genesis": {
            "timestamp": contents.genesis_timestamp,
            "key": contents.genesis_key.data,
        },
        "head": {"num": contents.head_num, "id": contents.head_id, "time": contents.head_time},
        "state": contents.state.to_snapshot(),
    }
    target = Path(path)
    tmp = target.with_suffix(target.suffix + ".tmp")
    with open(tmp, "wb") as fh:
        cbor2.dump(doc, fh, canonical=True)
    tmp.replace(target)


def read_snapshot(path: PathLike) -> SnapshotContents:
    doc = _read_doc(path)
    try:
        genesis, head = doc["genesis"], doc["head"]
        return SnapshotContents(
            chain_id=doc["chain_id"],
            genesis_timestamp=genesis["timestamp"],
            genesis_key=PublicKey(genesis["key"]),
            head_num=head["num"],
            head_id=head["id"],
            head_time=head["time"],
            state=StateDB.from_snapshot(doc["state"]),
        )
    except (KeyError, TypeError) as e:
        raise SnapshotException(f"snapshot {path} is missing a section: {e}") from e
    except DeserializationError as e:
        raise SnapshotException(f"snapshot {path} is corrupt: {e.message}") from e


__all__ = [
    "SNAPSHOT_VERSION",
    "SnapshotContents",
    "extract_chain_id",
    "read_snapshot",
    "write_snapshot",
]
