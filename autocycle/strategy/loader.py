"""Strategy Loader — builds the ordered strategy list from configuration.

Each configured strategy names an importable class ('module:Class') plus
keyword parameters. The class is instantiated with strategy_id=<name> and
must implement the StrategyBase interface from contract.py.
"""

from __future__ import annotations

import importlib
from typing import TYPE_CHECKING

import structlog

from autocycle.shell.contract import StrategyBase

if TYPE_CHECKING:
    from autocycle.shell.config import Config

log = structlog.get_logger()


def resolve_import_path(import_path: str) -> type:
    """Import 'package.module:ClassName' and return the class.

    Raises RuntimeError if the module or attribute cannot be found.
    """
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise RuntimeError(f"Import path must look like 'module:Class', got {import_path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise RuntimeError(f"Cannot import {module_name}: {e}") from e
    cls = getattr(module, attr, None)
    if cls is None:
        raise RuntimeError(f"{module_name} has no attribute {attr!r}")
    return cls


def load_strategies(config: Config) -> list[StrategyBase]:
    """Instantiate the configured strategies in priority order.

    Raises RuntimeError for unloadable or non-StrategyBase classes and
    ValueError for duplicate strategy ids.
    """
    strategies: list[StrategyBase] = []
    seen: set[str] = set()
    for name in config.strategies.order:
        spec = config.strategies.providers.get(name)
        if spec is None:
            raise RuntimeError(f"Strategy '{name}' is in the order but has no configuration")

        cls = resolve_import_path(spec.import_path)
        strategy = cls(strategy_id=name, **spec.params)
        if not isinstance(strategy, StrategyBase):
            raise RuntimeError(f"Strategy '{name}' must inherit from StrategyBase")
        if strategy.strategy_id in seen:
            raise ValueError(f"Duplicate strategy id: '{strategy.strategy_id}'")
        seen.add(strategy.strategy_id)
        strategies.append(strategy)

    log.info("strategy.loaded", order=[s.strategy_id for s in strategies])
    return strategies
