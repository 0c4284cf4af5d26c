"""
wasmtester.crypto_api: hashing and signing offered directly to the guest.

Strictly bytes-in, bytes-out. RIPEMD-160 comes from pycryptodome because
OpenSSL builds increasingly omit it from `hashlib`.
"""

from __future__ import annotations

import hashlib
from typing import Callable, Dict, Tuple

from Crypto.Hash import RIPEMD160

from chainsim.keys import PrivateKey
from hostcore.errors import DeserializationError, MalformedArguments


def sha1(data: bytes) -> bytes:
    return hashlib.sha1(data).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha512(data: bytes) -> bytes:
    return hashlib.sha512(data).digest()


def ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


# name -> (function, digest size)
HASHES: Dict[str, Tuple[Callable[[bytes], bytes], int]] = {
    "sha1": (sha1, 20),
    "sha256": (sha256, 32),
    "sha512": (sha512, 64),
    "ripemd160": (ripemd160, 20),
}


def sign(private_key: bytes, digest: bytes) -> bytes:
    """Sign a 32-byte digest with a packed private key; returns the packed signature."""
    if len(digest) != 32:
        raise MalformedArguments("digest must be 32 bytes", size=len(digest))
    try:
        key = PrivateKey.unpack(private_key)
    except DeserializationError as e:
        raise MalformedArguments(f"cannot unpack private key: {e.message}") from e
    return key.sign(digest).pack()


__all__ = ["sha1", "sha256", "sha512", "ripemd160", "HASHES", "sign"]
