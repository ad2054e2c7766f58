"""Unit tests for the in-memory venue simulators."""
from __future__ import annotations

import pytest

from rwa_exposure.errors import (
    CapacityError,
    TimingError,
    ValidationError,
    VenueUnavailableError,
)
from rwa_exposure.models import ContractStatus
from rwa_exposure.venues import (
    InMemoryPerpetualRouter,
    InMemorySpotExchange,
    InMemorySwapProvider,
    InMemoryYieldStrategy,
    StaticPriceOracle,
    to_price,
)

DAY = 24 * 3600


class TestStaticPriceOracle:
    def test_to_price_is_exact(self) -> None:
        assert to_price("100.5") == 100_500_000_000_000_000_000
        assert to_price(1) == 10**18

    def test_missing_price(self, oracle: StaticPriceOracle) -> None:
        with pytest.raises(VenueUnavailableError) as exc:
            oracle.get_price("GOLD")
        assert exc.value.code == "price_not_set"

    def test_rejects_non_positive(self, oracle: StaticPriceOracle) -> None:
        with pytest.raises(ValidationError):
            oracle.set_price("RWA", 0)


class TestYieldVault:
    def test_share_price_follows_accrual(self) -> None:
        vault = InMemoryYieldStrategy("v")
        assert vault.deposit(1_000) == 1_000
        vault.accrue(1_000)
        assert vault.deposit(1_000) == 500
        assert vault.withdraw(500) == 1_000

    def test_harvest_pays_pending_rewards(self) -> None:
        vault = InMemoryYieldStrategy("v")
        vault.add_rewards(42)
        assert vault.harvest_yield() == 42
        assert vault.harvest_yield() == 0

    def test_failing_vault(self) -> None:
        vault = InMemoryYieldStrategy("v")
        vault.set_failing()
        with pytest.raises(VenueUnavailableError):
            vault.deposit(1)

    def test_overdraw_rejected(self) -> None:
        vault = InMemoryYieldStrategy("v")
        vault.deposit(10)
        with pytest.raises(ValidationError):
            vault.withdraw(11)


class TestSpotExchange:
    def test_quote_charges_fee(self, exchange: InMemorySpotExchange) -> None:
        assert exchange.get_amounts_out(1_000_000, "USDC", "RWA") == 9_970

    def test_swap_enforces_min_out(self, exchange: InMemorySpotExchange) -> None:
        with pytest.raises(CapacityError) as exc:
            exchange.swap_exact_tokens_for_tokens(1_000_000, 10_000, "USDC", "RWA")
        assert exc.value.code == "slippage_exceeded"

    def test_halted(self, exchange: InMemorySpotExchange) -> None:
        exchange.set_halted()
        with pytest.raises(VenueUnavailableError):
            exchange.get_amounts_out(1, "USDC", "RWA")


class TestSwapProvider:
    def test_quotes_from_active_counterparties(self, swap_provider: InMemorySwapProvider) -> None:
        swap_provider.set_counterparty_active("gamma", False)
        quotes = swap_provider.request_quotes("RWA", 1_000, 0, 200)
        assert [q.counterparty for q in quotes] == ["alpha", "beta"]

    def test_quote_capped_by_room(self, oracle: StaticPriceOracle, clock) -> None:
        provider = InMemorySwapProvider(oracle, clock=clock)
        provider.register_counterparty("small", credit_rating=5, max_exposure=500, borrow_rate_bps=100)
        (quote,) = provider.request_quotes("RWA", 1_000, 0, 200)
        assert quote.notional == 500

    def test_contract_lifecycle_with_pnl_and_carry(
        self, swap_provider: InMemorySwapProvider, oracle: StaticPriceOracle, clock
    ) -> None:
        quote = swap_provider.request_quotes("RWA", 2_000_000, clock() + 90 * DAY, 200)[0]
        contract_id = swap_provider.create_contract(quote.quote_id, 1_000_000)

        oracle.set_price("RWA", to_price(110))
        final_value, returned = swap_provider.terminate_contract(contract_id)

        assert final_value == 2_200_000
        assert returned == 1_200_000
        assert swap_provider.contract_status(contract_id) is ContractStatus.TERMINATED

    def test_create_requires_collateral(self, swap_provider: InMemorySwapProvider) -> None:
        quote = swap_provider.request_quotes("RWA", 2_000_000, 0, 200)[0]
        with pytest.raises(CapacityError):
            swap_provider.create_contract(quote.quote_id, 999_999)

    def test_expired_quote(self, swap_provider: InMemorySwapProvider, clock) -> None:
        quote = swap_provider.request_quotes("RWA", 1_000, 0, 200)[0]
        clock.advance(301)
        with pytest.raises(TimingError):
            swap_provider.create_contract(quote.quote_id, 1_000)

    def test_settle_before_maturity(self, swap_provider: InMemorySwapProvider, clock) -> None:
        quote = swap_provider.request_quotes("RWA", 1_000, clock() + DAY, 200)[0]
        contract_id = swap_provider.create_contract(quote.quote_id, 500)
        with pytest.raises(TimingError) as exc:
            swap_provider.settle_contract(contract_id)
        assert exc.value.code == "not_matured"

    def test_stuck_contract(self, swap_provider: InMemorySwapProvider) -> None:
        quote = swap_provider.request_quotes("RWA", 1_000, 0, 200)[0]
        contract_id = swap_provider.create_contract(quote.quote_id, 500)
        swap_provider.set_stuck(contract_id)
        with pytest.raises(VenueUnavailableError):
            swap_provider.terminate_contract(contract_id)

    def test_unknown_counterparty(self, swap_provider: InMemorySwapProvider) -> None:
        with pytest.raises(ValidationError) as exc:
            swap_provider.get_counterparty_info("ghost")
        assert exc.value.code == "unknown_counterparty"


class TestPerpetualRouter:
    def test_open_and_close_with_profit(
        self, router: InMemoryPerpetualRouter, oracle: StaticPriceOracle
    ) -> None:
        position_id = router.open_position("RWA-PERP", 1_000_000, 200, 500_000)
        oracle.set_price("RWA", to_price(105))
        assert router.get_position_value(position_id) == 550_000
        assert router.close_position(position_id) == 50_000
        assert router.get_position_value(position_id) == 0

    def test_partial_reduce_releases_collateral(self, router: InMemoryPerpetualRouter) -> None:
        position_id = router.open_position("RWA-PERP", 1_000_000, 200, 500_000)
        released = router.adjust_position(position_id, -400_000, -200_000)
        position = router.get_position(position_id)
        assert released == 200_000
        assert position.size == 600_000
        assert position.collateral == 300_000
        assert position.leverage == 200

    def test_market_leverage_cap(self, router: InMemoryPerpetualRouter) -> None:
        router.add_market("THIN", "RWA", max_leverage=150)
        with pytest.raises(CapacityError):
            router.open_position("THIN", 1_000, 200, 500)

    def test_unknown_market(self, router: InMemoryPerpetualRouter) -> None:
        with pytest.raises(VenueUnavailableError) as exc:
            router.get_funding_rate("NOPE")
        assert exc.value.code == "market_not_found"
