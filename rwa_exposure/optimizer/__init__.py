"""Strategy scoring and rebalance planning."""
from .optimizer import StrategyOptimizer

__all__ = ["StrategyOptimizer"]
