"""Yield-strategy book shared by the perpetual and direct-token strategies.

Each entry pairs a yield venue with its bps allocation and the principal and
shares deposited through it. Deposits and withdrawals iterate entry by entry
and isolate failures: a venue that raises is skipped and logged, the others
proceed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import CapacityError, ValidationError
from ..interfaces.yield_strategy import YieldStrategy
from ..models import BPS, YieldAllocation
from . import calc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DepositReceipt:
    allocation: YieldAllocation
    amount: int
    shares: int


class YieldBook:
    """Ordered yield allocations with aggregate deposit bookkeeping."""

    def __init__(self, owner_id: str, max_allocation: int = BPS) -> None:
        if not 0 <= max_allocation <= BPS:
            raise ValidationError(f"max yield allocation {max_allocation} outside [0, {BPS}]")
        self._owner_id = owner_id
        self._max_allocation = max_allocation
        self._entries: list[YieldAllocation] = []

    @property
    def max_allocation(self) -> int:
        return self._max_allocation

    @property
    def entries(self) -> list[YieldAllocation]:
        return list(self._entries)

    @property
    def active(self) -> list[YieldAllocation]:
        return [e for e in self._entries if e.is_active]

    @property
    def total_allocation(self) -> int:
        return sum(e.allocation for e in self.active)

    @property
    def total_deposited(self) -> int:
        return sum(e.current_deposit for e in self._entries)

    def find(self, name: str) -> YieldAllocation:
        for entry in self._entries:
            if entry.strategy.name == name:
                return entry
        raise ValidationError(f"unknown yield strategy {name}", code="unknown_yield_strategy")

    def _check_cap(self, total: int) -> None:
        cap = min(BPS, self._max_allocation)
        if total > cap:
            raise CapacityError(
                f"yield allocations would total {total} bps, cap is {cap}",
                code="yield_allocation_cap",
            )

    # ------------------------------------------------------------------
    # Allocation changes
    # ------------------------------------------------------------------

    def add(self, strategy: YieldStrategy, allocation: int) -> YieldAllocation:
        if not 0 < allocation <= BPS:
            raise ValidationError(f"allocation {allocation} outside (0, {BPS}]")
        if any(e.strategy.name == strategy.name for e in self._entries):
            raise ValidationError(
                f"yield strategy {strategy.name} already added", code="duplicate_yield_strategy"
            )
        self._check_cap(self.total_allocation + allocation)
        entry = YieldAllocation(strategy=strategy, allocation=allocation)
        self._entries.append(entry)
        return entry

    def update(self, name: str, allocation: int) -> int:
        entry = self.find(name)
        if not 0 <= allocation <= BPS:
            raise ValidationError(f"allocation {allocation} outside [0, {BPS}]")
        others = self.total_allocation - (entry.allocation if entry.is_active else 0)
        self._check_cap(others + allocation)
        before = entry.allocation
        entry.allocation = allocation
        return before

    def remove(self, name: str) -> None:
        entry = self.find(name)
        if entry.shares:
            raise CapacityError(
                f"yield strategy {name} still holds {entry.shares} shares",
                code="yield_strategy_not_empty",
            )
        self._entries.remove(entry)

    def set_max_allocation(self, cap: int) -> int:
        if not 0 <= cap <= BPS:
            raise ValidationError(f"max yield allocation {cap} outside [0, {BPS}]")
        if self.total_allocation > cap:
            raise CapacityError(
                f"current allocations ({self.total_allocation} bps) exceed {cap}",
                code="yield_allocation_cap",
            )
        before = self._max_allocation
        self._max_allocation = cap
        return before

    # ------------------------------------------------------------------
    # Capital movement
    # ------------------------------------------------------------------

    def deposit(self, amount: int) -> list[DepositReceipt]:
        """Deposit ``amount`` split by allocation bps (of ``amount``)."""
        active = self.active
        parts = calc.split_by_allocations(amount, [e.allocation for e in active])
        return self._deposit_parts(active, parts)

    def deposit_all(self, amount: int) -> list[DepositReceipt]:
        """Deposit the whole of ``amount`` in proportion to the allocations."""
        active = [e for e in self.active if e.allocation > 0]
        total = sum(e.allocation for e in active)
        parts = [amount * e.allocation // total for e in active] if total else []
        if parts:
            parts[0] += amount - sum(parts)
        return self._deposit_parts(active, parts)

    def _deposit_parts(
        self, entries: list[YieldAllocation], parts: list[int]
    ) -> list[DepositReceipt]:
        receipts: list[DepositReceipt] = []
        for entry, part in zip(entries, parts):
            if part <= 0:
                continue
            try:
                shares = entry.strategy.deposit(part)
            except Exception as e:
                logger.warning(
                    "%s: deposit of %d into %s failed: %s",
                    self._owner_id, part, entry.strategy.name, e,
                )
                continue
            entry.current_deposit += part
            entry.shares += shares
            receipts.append(DepositReceipt(entry, part, shares))
        return receipts

    def revert(self, receipts: list[DepositReceipt]) -> int:
        """Withdraw the shares behind ``receipts``; used to undo a failed open."""
        recovered = 0
        for receipt in receipts:
            amount = receipt.allocation.strategy.withdraw(receipt.shares)
            receipt.allocation.shares -= receipt.shares
            receipt.allocation.current_deposit -= receipt.amount
            recovered += amount
        return recovered

    def withdraw_fraction(self, part: int, total: int) -> int:
        """Withdraw ``part / total`` of every position; failures are skipped."""
        recovered = 0
        for entry in self._entries:
            if entry.shares == 0 or total <= 0:
                continue
            if part >= total:
                shares, principal = entry.shares, entry.current_deposit
            else:
                shares = entry.shares * part // total
                principal = entry.current_deposit * part // total
            if shares == 0:
                continue
            try:
                amount = entry.strategy.withdraw(shares)
            except Exception as e:
                logger.warning(
                    "%s: withdrawal of %d shares from %s failed: %s",
                    self._owner_id, shares, entry.strategy.name, e,
                )
                continue
            entry.shares -= shares
            entry.current_deposit -= principal
            recovered += amount
        return recovered

    def withdraw_amount(self, needed: int) -> int:
        """Withdraw roughly ``needed`` of value, walking the entries in order."""
        recovered = 0
        for entry in self._entries:
            if recovered >= needed:
                break
            if entry.shares == 0:
                continue
            try:
                value = entry.strategy.get_total_value()
                take = needed - recovered
                if value <= 0:
                    continue
                if take >= value:
                    shares, principal = entry.shares, entry.current_deposit
                else:
                    shares = -(-entry.shares * take // value)
                    principal = entry.current_deposit * take // value
                amount = entry.strategy.withdraw(shares)
            except Exception as e:
                logger.warning(
                    "%s: withdrawal from %s failed: %s", self._owner_id, entry.strategy.name, e
                )
                continue
            entry.shares -= shares
            entry.current_deposit -= min(principal, entry.current_deposit)
            recovered += amount
        return recovered

    def harvest(self) -> int:
        harvested = 0
        for entry in self.active:
            try:
                harvested += entry.strategy.harvest_yield()
            except Exception as e:
                logger.warning(
                    "%s: harvest from %s failed: %s", self._owner_id, entry.strategy.name, e
                )
        return harvested

    def total_value(self) -> int:
        value = 0
        for entry in self._entries:
            if entry.shares == 0:
                continue
            try:
                value += entry.strategy.get_total_value()
            except Exception as e:
                logger.debug("%s: cannot value %s: %s", self._owner_id, entry.strategy.name, e)
                value += entry.current_deposit
        return value
