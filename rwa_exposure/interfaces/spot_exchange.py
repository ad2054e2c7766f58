"""Spot exchange protocol — token swap venue abstraction."""
from typing import Protocol


class SpotExchange(Protocol):
    """Abstract interface for spot swaps between the base and reference tokens."""

    def swap_exact_tokens_for_tokens(
        self, amount_in: int, min_out: int, token_in: str, token_out: str
    ) -> int: ...

    def get_amounts_out(self, amount_in: int, token_in: str, token_out: str) -> int: ...
