"""Share-based yield vault simulator."""
from __future__ import annotations

from ..errors import ValidationError, VenueUnavailableError


class InMemoryYieldStrategy:
    """A single-depositor vault: share price grows with ``accrue``.

    Rewards added with ``add_rewards`` sit outside the share price until
    ``harvest_yield`` pays them out.
    """

    def __init__(self, name: str, *, apy_bps: int = 0) -> None:
        if not name:
            raise ValidationError("yield strategy name is required")
        self._name = name
        self.apy_bps = apy_bps
        self._total_assets = 0
        self._total_shares = 0
        self._pending_rewards = 0
        self._failing = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def total_shares(self) -> int:
        return self._total_shares

    def set_failing(self, failing: bool = True) -> None:
        self._failing = failing

    def _check_available(self) -> None:
        if self._failing:
            raise VenueUnavailableError(f"{self._name} is not responding", code="yield_unavailable")

    def accrue(self, amount: int) -> None:
        self._total_assets += amount

    def add_rewards(self, amount: int) -> None:
        self._pending_rewards += amount

    def deposit(self, amount: int) -> int:
        self._check_available()
        if amount <= 0:
            raise ValidationError("deposit must be positive", code="zero_amount")
        if self._total_shares == 0 or self._total_assets == 0:
            shares = amount
        else:
            shares = amount * self._total_shares // self._total_assets
        self._total_assets += amount
        self._total_shares += shares
        return shares

    def withdraw(self, shares: int) -> int:
        self._check_available()
        if not 0 < shares <= self._total_shares:
            raise ValidationError(
                f"cannot redeem {shares} of {self._total_shares} shares", code="invalid_shares"
            )
        amount = shares * self._total_assets // self._total_shares
        self._total_assets -= amount
        self._total_shares -= shares
        return amount

    def get_total_value(self) -> int:
        self._check_available()
        return self._total_assets

    def harvest_yield(self) -> int:
        self._check_available()
        harvested, self._pending_rewards = self._pending_rewards, 0
        return harvested
