from __future__ import annotations

import pytest

from chainsim.names import as_name, name_to_string, string_to_name
from hostcore.errors import SerializationError


def test_known_value() -> None:
    assert string_to_name("eosio") == 6138663577826885632
    assert name_to_string(6138663577826885632) == "eosio"


@pytest.mark.parametrize("text", ["a", "alice", "eosio.token", "zzzzzzzzzzzzj", "1.2.3.4.5", ""])
def test_text_forms_are_stable(text: str) -> None:
    assert name_to_string(string_to_name(text)) == text


def test_trailing_dots_are_insignificant() -> None:
    assert string_to_name("alice...") == string_to_name("alice")


@pytest.mark.parametrize("bad", ["Alice", "bob6", "toolongnamexyz", "aaaaaaaaaaaaz"])
def test_rejects_invalid(bad: str) -> None:
    with pytest.raises(SerializationError):
        string_to_name(bad)


def test_as_name_accepts_both_forms() -> None:
    assert as_name("bob") == string_to_name("bob")
    assert as_name(5) == 5
    assert as_name(-1) == (1 << 64) - 1
