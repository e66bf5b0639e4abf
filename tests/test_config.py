"""Configuration loading and validation."""

from pathlib import Path

import pytest

from autocycle.shell.config import Config, ProviderSpec, _validate_config, load_config


def test_config_loading():
    config = load_config()
    assert config.timezone == "UTC"
    assert config.scheduler.learning_interval_seconds == 300
    assert config.scheduler.value_interval_seconds == 600
    assert config.scheduler.first_learning_delay_seconds == 5
    assert config.persistence.backend == "file"
    assert config.persistence.read_attempts == 3
    assert config.backup.retention == 10
    assert config.monitor.growth_history == 100
    assert config.strategies.order == [
        "arbitrage", "liquidity_provision", "yield_farming", "flash_loan", "mev_extraction",
    ]
    arbitrage = config.strategies.providers["arbitrage"]
    assert arbitrage.import_path == "autocycle.strategy.builtin:SimulatedStrategy"
    assert arbitrage.params == {"probability": 0.3, "max_value": 1000}


def test_learning_topic_keys():
    config = load_config()
    topics = config.learning.topics()
    assert ("defi_lending", "lending") in topics
    assert ("contract_ERC20", "ERC20") in topics
    assert len(topics) == 22


def test_settings_file_overrides(tmp_path):
    (tmp_path / "settings.toml").write_text(
        """
[general]
data_dir = "/var/lib/autocycle-test"

[scheduler]
value_interval_seconds = 30

[persistence]
backend = "sqlite"

[learning]
topic_delay_seconds = 0

[learning.groups]
defi = ["lending"]

[strategies]
order = ["custom"]

[strategies.custom]
class = "tests.fake:Custom"
threshold = 5
"""
    )
    config = load_config(tmp_path)
    assert config.data_dir == "/var/lib/autocycle-test"
    assert config.scheduler.value_interval_seconds == 30
    assert config.scheduler.learning_interval_seconds == 300  # default kept
    assert config.persistence.backend == "sqlite"
    assert config.learning.topics() == [("defi_lending", "lending")]
    assert config.strategies.order == ["custom"]
    assert config.strategies.providers["custom"] == ProviderSpec("tests.fake:Custom", {"threshold": 5})


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOCYCLE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("AUTOCYCLE_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("API_KEY", "secret")
    config = load_config(tmp_path)  # no settings.toml here: defaults + env
    assert Path(config.data_dir) == tmp_path / "data"
    assert config.log_level == "DEBUG"
    assert config.api.api_key == "secret"


def test_validation_collects_all_errors():
    config = Config()
    config.scheduler.value_interval_seconds = 0
    config.timeouts.strategy_seconds = -1
    config.persistence.backend = "redis"
    config.persistence.read_attempts = 0
    config.backup.retention = 0
    config.timezone = "Mars/Olympus_Mons"
    with pytest.raises(ValueError) as exc:
        _validate_config(config)
    message = str(exc.value)
    assert "scheduler.value_interval_seconds" in message
    assert "timeouts.strategy_seconds" in message
    assert "persistence.backend" in message
    assert "persistence.read_attempts" in message
    assert "backup.retention" in message
    assert "Invalid timezone" in message


def test_validation_first_learning_delay_may_be_zero():
    config = Config()
    config.scheduler.first_learning_delay_seconds = 0
    _validate_config(config)


def test_validation_rejects_duplicate_strategy():
    config = Config()
    config.strategies.order = ["arbitrage", "arbitrage"]
    with pytest.raises(ValueError, match="Duplicate strategy"):
        _validate_config(config)


def test_validation_rejects_unresolvable_strategy():
    config = Config()
    config.strategies.order = ["arbitrage", "missing"]
    with pytest.raises(ValueError, match="missing"):
        _validate_config(config)


def test_validation_rejects_colliding_topic_keys():
    config = Config()
    config.learning.groups = {"a": ["b_c"], "a_b": ["c"]}
    with pytest.raises(ValueError, match="topic keys"):
        _validate_config(config)
