"""
hostcore.config: harness knobs, simulated-chain constants and contract plugins.

Configuration precedence:
  1) Explicit overrides passed to `build_config(**overrides)` (highest)
  2) Environment variables (WASM_TESTER_*)
  3) TOML file named by WASM_TESTER_CONFIG (section [tester])
  4) Hardcoded defaults below (lowest)

Key env vars:
  - WASM_TESTER_BLOCK_INTERVAL_MS     (int)   default: 500
  - WASM_TESTER_BILLED_CPU_US         (int)   default: 2000
  - WASM_TESTER_MAX_TRX_CPU_US        (int)   default: 150_000
  - WASM_TESTER_GENESIS_TIMESTAMP     (str)   default: 2020-01-01T00:00:00.000
  - WASM_TESTER_PRODUCER_KEY          (WIF)   default: the well-known dev key
  - WASM_TESTER_TEMP_ROOT             (path)  default: system temp dir
  - WASM_TESTER_KEEP_TEMP             (bool)  default: false
  - WASM_TESTER_CONTRACTS             (list)  "account=module:Class,..."
  - WASM_TESTER_RECOVERY_THREADS      (int)   default: 1
  - WASM_TESTER_LOG_LEVEL             (str)   default: WARNING
  - WASM_TESTER_LOG_FORMAT            (str)   json|text (read by hostcore.logging)

Usage:
    from hostcore.config import load_config
    cfg = load_config()
    cfg.block_interval_ms
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .errors import ConfigError

# Well-known development key; every simulated chain produces blocks with it.
DEV_PRODUCER_KEY = "5KQwrPbwdL6PhXujxW37FSSQZ1JiwsST4cqQzDeyXtP79zkvFD3"
DEFAULT_GENESIS_TIMESTAMP = "2020-01-01T00:00:00.000"

_ENV_PREFIX = "WASM_TESTER_"


# ----------------------------- helpers ---------------------------------------


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "t", "yes", "y", "on")


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(_ENV_PREFIX + name)
    return None if raw is None else _parse_bool(raw)


def _env_int(name: str, *, min_v: int, max_v: int) -> Optional[int]:
    raw = os.getenv(_ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return None
    try:
        v = int(raw, 0)
    except ValueError as e:
        raise ConfigError(f"{_ENV_PREFIX}{name} must be an integer", value=raw) from e
    return max(min_v, min(max_v, v))


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(_ENV_PREFIX + name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def _split_list(v: str) -> Tuple[str, ...]:
    return tuple(s.strip() for s in v.split(",") if s.strip())


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with path.open("rb") as fh:
            doc = tomllib.load(fh)
    except FileNotFoundError as e:
        raise ConfigError("config file not found", path=str(path)) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"invalid TOML: {e}", path=str(path)) from e
    section = doc.get("tester", doc)
    if not isinstance(section, dict):
        raise ConfigError("[tester] must be a table", path=str(path))
    return section


# ------------------------------- config --------------------------------------


@dataclass(frozen=True)
class TesterConfig:
    # Block production
    block_interval_ms: int = 500
    genesis_timestamp: str = DEFAULT_GENESIS_TIMESTAMP
    producer_key: str = DEV_PRODUCER_KEY

    # Transaction billing
    billed_cpu_time_us: int = 2000
    max_transaction_cpu_us: int = 150_000
    deferred_expiration_window_s: int = 600
    max_transaction_lifetime_s: int = 3600

    # Working directories
    temp_root: Optional[Path] = None
    keep_temp_dirs: bool = False

    # Native contracts deployed on every new chain: "account=module:Class"
    contracts: Tuple[str, ...] = field(default_factory=tuple)

    # Worker pool used for signature recovery
    recovery_threads: int = 1

    log_level: str = "WARNING"

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, Path):
                v = str(v)
            elif isinstance(v, tuple):
                v = list(v)
            out[f.name] = v
        return out

    def with_overrides(self, **overrides: Any) -> "TesterConfig":
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigError("unknown config keys", keys=sorted(unknown))
        return _validate(replace(self, **overrides))


def _from_mapping(base: TesterConfig, data: Dict[str, Any]) -> TesterConfig:
    known = {f.name for f in fields(base)}
    picked: Dict[str, Any] = {}
    for k, v in data.items():
        if k not in known:
            raise ConfigError("unknown config key", key=k)
        if k == "temp_root" and v is not None:
            v = Path(v).expanduser()
        if k == "contracts":
            v = tuple(v) if isinstance(v, (list, tuple)) else _split_list(str(v))
        picked[k] = v
    return replace(base, **picked)


def _from_env(base: TesterConfig) -> TesterConfig:
    env: Dict[str, Any] = {
        "block_interval_ms": _env_int("BLOCK_INTERVAL_MS", min_v=1, max_v=3_600_000),
        "billed_cpu_time_us": _env_int("BILLED_CPU_US", min_v=0, max_v=10_000_000),
        "max_transaction_cpu_us": _env_int("MAX_TRX_CPU_US", min_v=1, max_v=10_000_000),
        "genesis_timestamp": _env_str("GENESIS_TIMESTAMP"),
        "producer_key": _env_str("PRODUCER_KEY"),
        "keep_temp_dirs": _env_bool("KEEP_TEMP"),
        "recovery_threads": _env_int("RECOVERY_THREADS", min_v=1, max_v=64),
        "log_level": _env_str("LOG_LEVEL"),
    }
    root = _env_str("TEMP_ROOT")
    if root:
        env["temp_root"] = Path(root).expanduser()
    contracts = _env_str("CONTRACTS")
    if contracts:
        env["contracts"] = _split_list(contracts)
    return replace(base, **{k: v for k, v in env.items() if v is not None})


def _validate(cfg: TesterConfig) -> TesterConfig:
    if cfg.billed_cpu_time_us > cfg.max_transaction_cpu_us:
        raise ConfigError(
            "billed CPU time exceeds the transaction CPU limit",
            billed=cfg.billed_cpu_time_us,
            limit=cfg.max_transaction_cpu_us,
        )
    for spec in cfg.contracts:
        account, sep, target = spec.partition("=")
        if not sep or not account or ":" not in target:
            raise ConfigError("contract plugin must look like account=module:Class", spec=spec)
    return cfg


def build_config(*, toml_path: Optional[Path] = None, **overrides: Any) -> TesterConfig:
    """Uncached builder; `load_config` memoizes the environment-only variant."""
    cfg = TesterConfig()
    path = toml_path
    if path is None:
        env_path = _env_str("CONFIG")
        path = Path(env_path).expanduser() if env_path else None
    if path is not None:
        cfg = _from_mapping(cfg, _read_toml(path))
    cfg = _from_env(cfg)
    if overrides:
        cfg = _from_mapping(cfg, overrides)
    return _validate(cfg)


@lru_cache(maxsize=1)
def load_config() -> TesterConfig:
    """
    Build and cache a TesterConfig from TOML + environment + defaults.
    Tests call `load_config.cache_clear()` after touching the environment.
    """
    return build_config()


__all__ = [
    "DEV_PRODUCER_KEY",
    "DEFAULT_GENESIS_TIMESTAMP",
    "TesterConfig",
    "build_config",
    "load_config",
]
