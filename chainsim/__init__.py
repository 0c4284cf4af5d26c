"""
chainsim: deterministic in-memory blockchain controller used by the tester.

Modules
-------
names       64-bit account/table names
wire        little-endian binary codec (Writer/Reader)
keys        secp256k1 keys and recoverable signatures
types       transactions, authorities, blocks, receipts, traces
state_db    accounts, tables with secondary indices, undo journal
contracts   native Python contracts and the system contract
controller  block production and transaction execution
snapshot    CBOR snapshot files
errors      execution failures reported inside traces
"""

from __future__ import annotations

from .controller import Controller
from .names import name_to_string, string_to_name

__all__ = ["Controller", "name_to_string", "string_to_name"]
