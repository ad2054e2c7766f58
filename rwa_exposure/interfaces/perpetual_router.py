"""Perpetual router protocol — perpetual-future venue abstraction."""
from typing import Protocol

from ..models import PerpetualPosition


class PerpetualRouter(Protocol):
    """Abstract interface for opening and managing perpetual positions."""

    def open_position(
        self, market: str, size: int, leverage: int, collateral: int
    ) -> str: ...

    def close_position(self, position_id: str) -> int:
        """Close the whole position and return its signed PnL."""
        ...

    def adjust_position(
        self, position_id: str, size_delta: int, collateral_delta: int
    ) -> int:
        """Apply signed deltas; return collateral released (0 when adding)."""
        ...

    def get_position(self, position_id: str) -> PerpetualPosition: ...

    def get_funding_rate(self, market: str) -> int: ...

    def get_position_value(self, position_id: str) -> int: ...
