"""External price feeds."""
from .pyth import PythPriceFeed

__all__ = ["PythPriceFeed"]
