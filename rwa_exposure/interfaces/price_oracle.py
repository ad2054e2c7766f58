"""Price oracle protocol — price feed abstraction."""
from typing import Protocol


class PriceOracle(Protocol):
    """Abstract interface for reading asset prices (18 decimals)."""

    def get_price(self, asset: str) -> int: ...
