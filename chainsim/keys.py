"""
chainsim.keys: secp256k1 ("K1") keys and recoverable signatures.

Wire forms (all prefixed by a varuint32 key-type index, 0 = K1):
  * PublicKey   : 33-byte compressed SEC1 point
  * PrivateKey  : 32-byte big-endian scalar
  * Signature   : 65 bytes = recovery header (27 + 4 + recid) || r || s

Text forms:
  * private keys: legacy WIF ("5...") or "PVT_K1_..."
  * public keys : legacy "EOS..." or "PUB_K1_..."

Signing is deterministic (RFC6979 nonce via py_ecc) and produces low-s
signatures; recovery uses the header byte to pick the candidate point.
Point validation and (de)compression go through `cryptography`.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Tuple

from Crypto.Hash import RIPEMD160
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from py_ecc.secp256k1 import ecdsa_raw_recover, ecdsa_raw_sign, privtopub

from hostcore.errors import DeserializationError, SerializationError

from .wire import Reader, Writer

K1 = 0

_SECP256K1_N = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
_B58 = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


# ----------------------------- base58 helpers --------------------------------


def b58encode(data: bytes) -> str:
    value = int.from_bytes(data, "big")
    encoded = ""
    while value > 0:
        value, mod = divmod(value, 58)
        encoded = _B58[mod] + encoded
    padding = len(data) - len(data.lstrip(b"\x00"))
    return "1" * padding + encoded


def b58decode(text: str) -> bytes:
    value = 0
    for ch in text:
        idx = _B58.find(ch)
        if idx < 0:
            raise DeserializationError("invalid base58 character", char=ch)
        value = value * 58 + idx
    body = value.to_bytes((value.bit_length() + 7) // 8, "big") if value else b""
    padding = len(text) - len(text.lstrip("1"))
    return b"\x00" * padding + body


def _ripemd160(data: bytes) -> bytes:
    return RIPEMD160.new(data).digest()


def _check_suffix(payload: bytes, suffix: bytes) -> bytes:
    return _ripemd160(payload + suffix)[:4]


# --------------------------------- keys --------------------------------------


def _point_from_compressed(data: bytes) -> Tuple[int, int]:
    try:
        pub = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), data)
    except ValueError as e:
        raise DeserializationError("invalid secp256k1 point") from e
    nums = pub.public_numbers()
    return nums.x, nums.y


def _compress(x: int, y: int) -> bytes:
    try:
        pub = ec.EllipticCurvePublicNumbers(x, y, ec.SECP256K1()).public_key()
    except ValueError as e:
        raise SerializationError("point is not on secp256k1") from e
    return pub.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )


@dataclass(frozen=True)
class PublicKey:
    data: bytes  # 33-byte compressed point

    def __post_init__(self) -> None:
        if len(self.data) != 33:
            raise DeserializationError("public key must be 33 bytes", size=len(self.data))
        _point_from_compressed(self.data)

    @classmethod
    def from_point(cls, x: int, y: int) -> "PublicKey":
        return cls(_compress(x, y))

    def point(self) -> Tuple[int, int]:
        return _point_from_compressed(self.data)

    # ---- wire ----

    def write(self, w: Writer) -> None:
        w.varuint32(K1).raw(self.data)

    @classmethod
    def read(cls, r: Reader) -> "PublicKey":
        kind = r.varuint32()
        if kind != K1:
            raise DeserializationError("unsupported public key type", kind=kind)
        return cls(r.take(33))

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "PublicKey":
        r = Reader(data)
        out = cls.read(r)
        r.expect_end("public key")
        return out

    # ---- text ----

    def to_string(self, legacy: bool = True) -> str:
        if legacy:
            return "EOS" + b58encode(self.data + _ripemd160(self.data)[:4])
        return "PUB_K1_" + b58encode(self.data + _check_suffix(self.data, b"K1"))

    @classmethod
    def from_string(cls, text: str) -> "PublicKey":
        if text.startswith("PUB_K1_"):
            raw = b58decode(text[7:])
            data, chk = raw[:-4], raw[-4:]
            if _check_suffix(data, b"K1") != chk:
                raise DeserializationError("public key checksum mismatch")
            return cls(data)
        if text.startswith("EOS"):
            raw = b58decode(text[3:])
            data, chk = raw[:-4], raw[-4:]
            if _ripemd160(data)[:4] != chk:
                raise DeserializationError("public key checksum mismatch")
            return cls(data)
        raise DeserializationError("unrecognized public key format")

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class Signature:
    data: bytes  # 65 bytes: header || r || s

    def __post_init__(self) -> None:
        if len(self.data) != 65:
            raise DeserializationError("signature must be 65 bytes", size=len(self.data))

    @property
    def recovery_id(self) -> int:
        return (self.data[0] - 27) & 3

    @property
    def rs(self) -> Tuple[int, int]:
        return int.from_bytes(self.data[1:33], "big"), int.from_bytes(self.data[33:], "big")

    def recover(self, digest: bytes) -> PublicKey:
        """Recover the signing key for a 32-byte digest."""
        if len(digest) != 32:
            raise DeserializationError("digest must be 32 bytes", size=len(digest))
        r, s = self.rs
        if not (0 < r < _SECP256K1_N and 0 < s < _SECP256K1_N):
            raise DeserializationError("signature scalar out of range")
        try:
            x, y = ecdsa_raw_recover(digest, (27 + self.recovery_id, r, s))
        except (ValueError, TypeError) as e:
            raise DeserializationError("signature does not recover to a key") from e
        return PublicKey.from_point(x, y)

    # ---- wire ----

    def write(self, w: Writer) -> None:
        w.varuint32(K1).raw(self.data)

    @classmethod
    def read(cls, r: Reader) -> "Signature":
        kind = r.varuint32()
        if kind != K1:
            raise DeserializationError("unsupported signature type", kind=kind)
        return cls(r.take(65))

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "Signature":
        r = Reader(data)
        out = cls.read(r)
        r.expect_end("signature")
        return out

    def to_string(self) -> str:
        return "SIG_K1_" + b58encode(self.data + _check_suffix(self.data, b"K1"))


@dataclass(frozen=True)
class PrivateKey:
    data: bytes  # 32-byte scalar

    def __post_init__(self) -> None:
        if len(self.data) != 32:
            raise DeserializationError("private key must be 32 bytes", size=len(self.data))
        if not 0 < int.from_bytes(self.data, "big") < _SECP256K1_N:
            raise DeserializationError("private key scalar out of range")

    def public_key(self) -> PublicKey:
        x, y = privtopub(self.data)
        return PublicKey.from_point(x, y)

    def sign(self, digest: bytes) -> Signature:
        if len(digest) != 32:
            raise SerializationError("digest must be 32 bytes", size=len(digest))
        v, r, s = ecdsa_raw_sign(digest, self.data)
        header = v + 4  # compressed-key flag
        return Signature(bytes([header]) + r.to_bytes(32, "big") + s.to_bytes(32, "big"))

    # ---- wire ----

    def write(self, w: Writer) -> None:
        w.varuint32(K1).raw(self.data)

    @classmethod
    def read(cls, r: Reader) -> "PrivateKey":
        kind = r.varuint32()
        if kind != K1:
            raise DeserializationError("unsupported private key type", kind=kind)
        return cls(r.take(32))

    def pack(self) -> bytes:
        w = Writer()
        self.write(w)
        return w.getvalue()

    @classmethod
    def unpack(cls, data: bytes) -> "PrivateKey":
        r = Reader(data)
        out = cls.read(r)
        r.expect_end("private key")
        return out

    # ---- text ----

    @classmethod
    def from_string(cls, text: str) -> "PrivateKey":
        if text.startswith("PVT_K1_"):
            raw = b58decode(text[7:])
            data, chk = raw[:-4], raw[-4:]
            if _check_suffix(data, b"K1") != chk:
                raise DeserializationError("private key checksum mismatch")
            return cls(data)
        raw = b58decode(text)
        if len(raw) != 37 or raw[0] != 0x80:
            raise DeserializationError("unrecognized private key format")
        payload, chk = raw[:-4], raw[-4:]
        if hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4] != chk:
            raise DeserializationError("WIF checksum mismatch")
        return cls(payload[1:])

    def to_wif(self) -> str:
        payload = b"\x80" + self.data
        chk = hashlib.sha256(hashlib.sha256(payload).digest()).digest()[:4]
        return b58encode(payload + chk)

    def __repr__(self) -> str:
        return f"PrivateKey({self.public_key()})"


__all__ = ["K1", "PublicKey", "PrivateKey", "Signature", "b58encode", "b58decode"]
