"""Configuration loading — merges config/settings.toml and .env."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv


PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"

SIMULATED_STRATEGY = "autocycle.strategy.builtin:SimulatedStrategy"
SIMULATED_RESEARCH = "autocycle.knowledge.providers:SimulatedResearchProvider"


@dataclass
class SchedulerConfig:
    learning_interval_seconds: float = 300
    value_interval_seconds: float = 600
    health_interval_seconds: float = 60
    backup_interval_seconds: float = 3600
    snapshot_interval_seconds: float = 120
    first_learning_delay_seconds: float = 5
    task_timeout_seconds: float = 900
    shutdown_grace_seconds: float = 30


@dataclass
class TimeoutConfig:
    strategy_seconds: float = 30
    research_seconds: float = 30
    storage_seconds: float = 10
    health_seconds: float = 10


@dataclass
class LearningConfig:
    topic_delay_seconds: float = 2.0
    # group -> topics; entry key is "<group>_<topic>"
    groups: dict[str, list[str]] = field(default_factory=lambda: {
        "ethereum": ["transactions", "gas-optimization", "smart-contract-security", "layer2-scaling"],
        "contract": ["ERC20", "ERC721", "ERC1155", "UniswapV2", "UniswapV3"],
        "defi": ["lending", "borrowing", "yield-farming", "liquidity-pools", "staking"],
        "bridge": ["polygon", "arbitrum", "optimism", "layerzero"],
        "nft": ["marketplaces", "minting", "royalties", "fractionalization"],
    })

    def topics(self) -> list[tuple[str, str]]:
        """(key, topic) pairs in configured order."""
        return [(f"{group}_{topic}", topic) for group, topics in self.groups.items() for topic in topics]


@dataclass
class ProviderSpec:
    """An importable collaborator: 'module:Class' plus constructor kwargs."""
    import_path: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class StrategiesConfig:
    order: list[str] = field(default_factory=lambda: [
        "arbitrage", "liquidity_provision", "yield_farming", "flash_loan", "mev_extraction",
    ])
    providers: dict[str, ProviderSpec] = field(default_factory=lambda: {
        "arbitrage": ProviderSpec(SIMULATED_STRATEGY, {"probability": 0.3, "max_value": 1000}),
        "liquidity_provision": ProviderSpec(SIMULATED_STRATEGY, {"probability": 0.2, "max_value": 500}),
        "yield_farming": ProviderSpec(SIMULATED_STRATEGY, {"probability": 0.15, "max_value": 300}),
        "flash_loan": ProviderSpec(SIMULATED_STRATEGY, {"probability": 0.1, "max_value": 800}),
        "mev_extraction": ProviderSpec(SIMULATED_STRATEGY, {"probability": 0.2, "max_value": 500}),
    })


@dataclass
class KnowledgeConfig:
    provider: ProviderSpec = field(default_factory=lambda: ProviderSpec(SIMULATED_RESEARCH))


@dataclass
class PersistenceConfig:
    backend: str = "file"               # 'file' or 'sqlite'
    alert_after_failures: int = 3
    read_attempts: int = 3              # startup reads of state and knowledge
    read_retry_delay_seconds: float = 0.5


@dataclass
class BackupConfig:
    retention: int = 10


@dataclass
class MonitorConfig:
    growth_history: int = 100


@dataclass
class ApiConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    api_key: str = ""


@dataclass
class Config:
    log_level: str = "INFO"
    timezone: str = "UTC"
    data_dir: str = ""
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    learning: LearningConfig = field(default_factory=LearningConfig)
    strategies: StrategiesConfig = field(default_factory=StrategiesConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    backup: BackupConfig = field(default_factory=BackupConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def _provider_spec(table: dict, default: ProviderSpec | None = None) -> ProviderSpec:
    params = {k: v for k, v in table.items() if k != "class"}
    import_path = table.get("class", default.import_path if default else "")
    return ProviderSpec(import_path, params)


def _merge_section(target: Any, values: dict) -> None:
    for key, value in values.items():
        if hasattr(target, key) and not isinstance(value, dict):
            setattr(target, key, value)


def load_config(config_dir: Path | None = None) -> Config:
    """Load configuration from settings.toml and environment variables."""
    config_dir = config_dir or CONFIG_DIR
    load_dotenv(PROJECT_ROOT / ".env")

    config = Config()
    config.data_dir = str(PROJECT_ROOT / "data")

    settings_path = config_dir / "settings.toml"
    if settings_path.exists():
        with open(settings_path, "rb") as f:
            settings = tomllib.load(f)

        general = settings.get("general", {})
        config.log_level = general.get("log_level", config.log_level)
        config.timezone = general.get("timezone", config.timezone)
        if "data_dir" in general:
            data_dir = Path(general["data_dir"])
            config.data_dir = str(data_dir if data_dir.is_absolute() else PROJECT_ROOT / data_dir)

        _merge_section(config.scheduler, settings.get("scheduler", {}))
        _merge_section(config.timeouts, settings.get("timeouts", {}))
        _merge_section(config.persistence, settings.get("persistence", {}))
        _merge_section(config.backup, settings.get("backup", {}))
        _merge_section(config.monitor, settings.get("monitor", {}))
        _merge_section(config.api, settings.get("api", {}))

        learning = settings.get("learning", {})
        config.learning.topic_delay_seconds = learning.get(
            "topic_delay_seconds", config.learning.topic_delay_seconds)
        if "groups" in learning:
            config.learning.groups = {g: list(t) for g, t in learning["groups"].items()}

        knowledge = settings.get("knowledge", {})
        if "provider" in knowledge:
            config.knowledge.provider = _provider_spec(knowledge["provider"], config.knowledge.provider)

        strategies = settings.get("strategies", {})
        if "order" in strategies:
            config.strategies.order = list(strategies["order"])
        for name, table in strategies.items():
            if isinstance(table, dict):
                config.strategies.providers[name] = _provider_spec(
                    table, config.strategies.providers.get(name))

    # Environment variables override files
    config.data_dir = os.getenv("AUTOCYCLE_DATA_DIR", config.data_dir)
    config.log_level = os.getenv("AUTOCYCLE_LOG_LEVEL", config.log_level)
    config.api.api_key = os.getenv("API_KEY", config.api.api_key)

    _validate_config(config)

    return config


def _validate_config(config: Config) -> None:
    """Validate config values are within sane ranges."""
    from zoneinfo import ZoneInfo

    errors = []

    for name, value in vars(config.scheduler).items():
        if name == "first_learning_delay_seconds":
            if value < 0:
                errors.append(f"scheduler.{name} must be >= 0, got {value}")
        elif value <= 0:
            errors.append(f"scheduler.{name} must be > 0, got {value}")
    for name, value in vars(config.timeouts).items():
        if value <= 0:
            errors.append(f"timeouts.{name} must be > 0, got {value}")
    if config.learning.topic_delay_seconds < 0:
        errors.append(f"learning.topic_delay_seconds must be >= 0, got {config.learning.topic_delay_seconds}")
    if config.persistence.backend not in ("file", "sqlite"):
        errors.append(f"persistence.backend must be 'file' or 'sqlite', got '{config.persistence.backend}'")
    if config.persistence.alert_after_failures < 1:
        errors.append(f"persistence.alert_after_failures must be >= 1, got {config.persistence.alert_after_failures}")
    if config.persistence.read_attempts < 1:
        errors.append(f"persistence.read_attempts must be >= 1, got {config.persistence.read_attempts}")
    if config.persistence.read_retry_delay_seconds < 0:
        errors.append(f"persistence.read_retry_delay_seconds must be >= 0, got {config.persistence.read_retry_delay_seconds}")
    if config.backup.retention < 1:
        errors.append(f"backup.retention must be >= 1, got {config.backup.retention}")
    if config.monitor.growth_history < 2:
        errors.append(f"monitor.growth_history must be >= 2, got {config.monitor.growth_history}")
    if config.api.enabled and not (1 <= config.api.port <= 65535):
        errors.append(f"api.port must be 1-65535, got {config.api.port}")

    # Strategy order must be unique and resolvable
    seen: set[str] = set()
    for name in config.strategies.order:
        if name in seen:
            errors.append(f"Duplicate strategy in order: '{name}'")
        seen.add(name)
        spec = config.strategies.providers.get(name)
        if spec is None or ":" not in spec.import_path:
            errors.append(f"Strategy '{name}' needs a class = 'module:Class' entry")
    if ":" not in config.knowledge.provider.import_path:
        errors.append(f"knowledge.provider class must be 'module:Class', got '{config.knowledge.provider.import_path}'")

    # Topic keys must be unique
    keys = [key for key, _ in config.learning.topics()]
    if len(keys) != len(set(keys)):
        errors.append("Learning topic keys must be unique across groups")

    try:
        ZoneInfo(config.timezone)
    except Exception:
        errors.append(f"Invalid timezone: '{config.timezone}'")

    if errors:
        raise ValueError("Config validation failed:\n  " + "\n  ".join(errors))
