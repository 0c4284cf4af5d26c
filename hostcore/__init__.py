"""
hostcore: ambient plumbing shared by the chain simulator and the WASM tester.

Provides the error taxonomy (`hostcore.errors`), structured logging
(`hostcore.logging`), layered configuration (`hostcore.config`) and the
project version (`hostcore.version`).

Only re-exports the version here to keep import-time side effects near zero.
"""

from __future__ import annotations

from .version import __version__

__all__ = ["__version__"]
