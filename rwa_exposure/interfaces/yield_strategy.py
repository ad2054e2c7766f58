"""Yield strategy protocol — share-based yield venue abstraction."""
from typing import Protocol


class YieldStrategy(Protocol):
    """Abstract interface for depositing idle capital into a yield source."""

    @property
    def name(self) -> str: ...

    def deposit(self, amount: int) -> int: ...

    def withdraw(self, shares: int) -> int: ...

    def get_total_value(self) -> int: ...

    def harvest_yield(self) -> int: ...
