"""
Version helpers for the WASM chain tester.

- Exposes __version__.
- WASM_TESTER_VERSION env var overrides the packaged default (useful for CI
  builds that stamp a release tag).
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_VERSION = "0.3.0"

_SEMVER = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)(?:[-+].*)?$"
)


@dataclass(frozen=True)
class VersionInfo:
    major: int
    minor: int
    patch: int
    raw: str


def parse_version(text: str) -> Optional[VersionInfo]:
    m = _SEMVER.match(text.strip())
    if not m:
        return None
    return VersionInfo(
        major=int(m.group("major")),
        minor=int(m.group("minor")),
        patch=int(m.group("patch")),
        raw=text.strip(),
    )


def get_version() -> str:
    override = os.environ.get("WASM_TESTER_VERSION", "").strip()
    if override and parse_version(override) is not None:
        return override.lstrip("v")
    return DEFAULT_VERSION


__version__ = get_version()

__all__ = ["__version__", "DEFAULT_VERSION", "VersionInfo", "parse_version", "get_version"]
