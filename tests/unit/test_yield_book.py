"""Unit tests for the yield-strategy book shared by perpetual and direct strategies."""
from __future__ import annotations

import pytest

from rwa_exposure.errors import CapacityError, ValidationError
from rwa_exposure.strategies import YieldBook
from rwa_exposure.venues import InMemoryYieldStrategy


@pytest.fixture()
def vaults() -> tuple[InMemoryYieldStrategy, InMemoryYieldStrategy]:
    return InMemoryYieldStrategy("lending"), InMemoryYieldStrategy("treasury")


@pytest.fixture()
def book(vaults) -> YieldBook:
    b = YieldBook("perp", max_allocation=5_000)
    b.add(vaults[0], 3_000)
    b.add(vaults[1], 2_000)
    return b


class TestAllocations:
    def test_cap_enforced(self, book: YieldBook) -> None:
        with pytest.raises(CapacityError) as exc:
            book.add(InMemoryYieldStrategy("extra"), 100)
        assert exc.value.code == "yield_allocation_cap"

    def test_duplicate_rejected(self, book: YieldBook, vaults) -> None:
        book.update("lending", 1_000)
        with pytest.raises(ValidationError) as exc:
            book.add(vaults[0], 100)
        assert exc.value.code == "duplicate_yield_strategy"

    def test_update_within_cap(self, book: YieldBook) -> None:
        assert book.update("lending", 2_500) == 3_000
        assert book.total_allocation == 4_500

    def test_update_over_cap(self, book: YieldBook) -> None:
        with pytest.raises(CapacityError):
            book.update("lending", 3_500)

    def test_remove_with_shares_rejected(self, book: YieldBook) -> None:
        book.deposit(100_000)
        with pytest.raises(CapacityError) as exc:
            book.remove("lending")
        assert exc.value.code == "yield_strategy_not_empty"

    def test_lowering_cap_below_allocations(self, book: YieldBook) -> None:
        with pytest.raises(CapacityError):
            book.set_max_allocation(4_000)

    def test_unknown_strategy(self, book: YieldBook) -> None:
        with pytest.raises(ValidationError):
            book.find("nope")


class TestCapitalMovement:
    def test_deposit_splits_by_bps_of_amount(self, book: YieldBook, vaults) -> None:
        receipts = book.deposit(500_000)
        assert [r.amount for r in receipts] == [150_000, 100_000]
        assert book.total_deposited == 250_000
        assert vaults[0].get_total_value() == 150_000

    def test_deposit_skips_failing_venue(self, book: YieldBook, vaults) -> None:
        vaults[0].set_failing()
        receipts = book.deposit(500_000)
        assert [r.allocation.strategy.name for r in receipts] == ["treasury"]
        assert book.total_deposited == 100_000

    def test_deposit_all_places_everything(self, book: YieldBook, vaults) -> None:
        receipts = book.deposit_all(125_001)
        assert sum(r.amount for r in receipts) == 125_001
        assert vaults[1].get_total_value() == 50_000

    def test_revert_undoes_receipts(self, book: YieldBook, vaults) -> None:
        receipts = book.deposit(500_000)
        assert book.revert(receipts) == 250_000
        assert book.total_deposited == 0
        assert vaults[0].total_shares == 0

    def test_withdraw_fraction(self, book: YieldBook) -> None:
        book.deposit(500_000)
        assert book.withdraw_fraction(2, 5) == 100_000
        assert book.total_deposited == 150_000

    def test_withdraw_fraction_skips_failing_venue(self, book: YieldBook, vaults) -> None:
        book.deposit(500_000)
        vaults[1].set_failing()
        assert book.withdraw_fraction(1, 1) == 150_000
        assert [e.strategy.name for e in book.entries if e.shares] == ["treasury"]

    def test_withdraw_amount_walks_entries(self, book: YieldBook) -> None:
        book.deposit(500_000)
        assert book.withdraw_amount(200_000) == 200_000
        assert book.total_deposited == 50_000

    def test_total_value_falls_back_to_principal(self, book: YieldBook, vaults) -> None:
        book.deposit(500_000)
        vaults[0].accrue(1_500)
        vaults[1].set_failing()
        assert book.total_value() == 151_500 + 100_000

    def test_harvest_isolates_failures(self, book: YieldBook, vaults) -> None:
        vaults[0].add_rewards(700)
        vaults[1].add_rewards(300)
        vaults[1].set_failing()
        assert book.harvest() == 700
