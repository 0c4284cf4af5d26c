from __future__ import annotations

from pathlib import Path

import pytest

from hostcore.config import DEV_PRODUCER_KEY, TesterConfig, build_config, load_config
from hostcore.errors import ConfigError

ENV_KEYS = (
    "WASM_TESTER_CONFIG",
    "WASM_TESTER_BLOCK_INTERVAL_MS",
    "WASM_TESTER_BILLED_CPU_US",
    "WASM_TESTER_MAX_TRX_CPU_US",
    "WASM_TESTER_KEEP_TEMP",
    "WASM_TESTER_CONTRACTS",
    "WASM_TESTER_TEMP_ROOT",
    "WASM_TESTER_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    load_config.cache_clear()
    yield
    load_config.cache_clear()


def test_defaults() -> None:
    cfg = build_config()
    assert cfg == TesterConfig()
    assert cfg.block_interval_ms == 500
    assert cfg.billed_cpu_time_us == 2000
    assert cfg.producer_key == DEV_PRODUCER_KEY
    assert cfg.contracts == ()


def test_env_overrides_defaults(monkeypatch) -> None:
    monkeypatch.setenv("WASM_TESTER_BLOCK_INTERVAL_MS", "1000")
    monkeypatch.setenv("WASM_TESTER_KEEP_TEMP", "yes")
    monkeypatch.setenv("WASM_TESTER_CONTRACTS", "alice=pkg.mod:Token, bob=pkg.mod:Other")
    cfg = build_config()
    assert cfg.block_interval_ms == 1000
    assert cfg.keep_temp_dirs is True
    assert cfg.contracts == ("alice=pkg.mod:Token", "bob=pkg.mod:Other")


def test_env_int_must_parse(monkeypatch) -> None:
    monkeypatch.setenv("WASM_TESTER_BILLED_CPU_US", "lots")
    with pytest.raises(ConfigError):
        build_config()


def test_toml_then_env_then_overrides(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "tester.toml"
    path.write_text('[tester]\nblock_interval_ms = 250\nlog_level = "INFO"\nrecovery_threads = 2\n')
    monkeypatch.setenv("WASM_TESTER_LOG_LEVEL", "DEBUG")
    cfg = build_config(toml_path=path, recovery_threads=4)
    assert cfg.block_interval_ms == 250
    assert cfg.log_level == "DEBUG"
    assert cfg.recovery_threads == 4


def test_toml_unknown_key_rejected(tmp_path: Path) -> None:
    path = tmp_path / "tester.toml"
    path.write_text("[tester]\nblock_time = 3\n")
    with pytest.raises(ConfigError):
        build_config(toml_path=path)


def test_missing_toml_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        build_config(toml_path=tmp_path / "absent.toml")


def test_billed_cpu_cannot_exceed_limit() -> None:
    with pytest.raises(ConfigError):
        build_config(billed_cpu_time_us=200_000)


def test_bad_contract_spec() -> None:
    with pytest.raises(ConfigError):
        build_config(contracts="not-a-plugin")


def test_with_overrides_validates_keys() -> None:
    cfg = TesterConfig()
    assert cfg.with_overrides(block_interval_ms=100).block_interval_ms == 100
    with pytest.raises(ConfigError):
        cfg.with_overrides(nope=1)


def test_load_config_is_cached(monkeypatch) -> None:
    first = load_config()
    monkeypatch.setenv("WASM_TESTER_BLOCK_INTERVAL_MS", "750")
    assert load_config() is first
    load_config.cache_clear()
    assert load_config().block_interval_ms == 750


def test_as_dict_is_plain(tmp_path: Path) -> None:
    out = build_config(temp_root=tmp_path).as_dict()
    assert out["temp_root"] == str(tmp_path)
    assert out["contracts"] == []
