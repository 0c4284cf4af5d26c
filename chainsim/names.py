"""
chainsim.names: 64-bit account/table/action names.

A name is up to 13 characters from ".12345abcdefghijklmnopqrstuvwxyz". The
first 12 characters take 5 bits each (most significant first); the optional
13th character takes the low 4 bits and is therefore limited to ".1-5a-j".
Trailing dots are not significant: "alice" and "alice..." are the same name.
"""

from __future__ import annotations

from typing import Union

from hostcore.errors import SerializationError

NameLike = Union[int, str]

_CHARMAP = ".12345abcdefghijklmnopqrstuvwxyz"
_MASK64 = (1 << 64) - 1


def _char_value(c: str) -> int:
    if "a" <= c <= "z":
        return ord(c) - ord("a") + 6
    if "1" <= c <= "5":
        return ord(c) - ord("1") + 1
    if c == ".":
        return 0
    raise SerializationError("invalid character in name", char=c)


def string_to_name(s: str) -> int:
    if len(s) > 13:
        raise SerializationError("name is longer than 13 characters", name=s)
    value = 0
    for i, c in enumerate(s):
        v = _char_value(c)
        if i < 12:
            value |= v << (64 - 5 * (i + 1))
        else:
            if v > 0x0F:
                raise SerializationError("thirteenth character of a name must be in .1-5a-j", name=s)
            value |= v
    return value


def name_to_string(value: int) -> str:
    value &= _MASK64
    chars = []
    for i in range(13):
        if i == 0:
            chars.append(_CHARMAP[value & 0x0F])
            value >>= 4
        else:
            chars.append(_CHARMAP[value & 0x1F])
            value >>= 5
    return "".join(reversed(chars)).rstrip(".")


def as_name(v: NameLike) -> int:
    """Accept either the string or the integer form."""
    if isinstance(v, int):
        return v & _MASK64
    return string_to_name(v)


__all__ = ["NameLike", "string_to_name", "name_to_string", "as_name"]
