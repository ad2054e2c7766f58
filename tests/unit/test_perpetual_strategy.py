"""Unit tests for the perpetual-future strategy and its funding-driven leverage."""
from __future__ import annotations

import pytest

from rwa_exposure.errors import (
    AuthorizationError,
    CapacityError,
    TimingError,
    ValidationError,
    VenueUnavailableError,
)
from rwa_exposure.models import StrategyStatus
from rwa_exposure.strategies import PerpetualExposureStrategy
from rwa_exposure.venues import InMemoryYieldStrategy, to_price

OWNER = "admin"
HOUR = 3600


def _record(strategy: PerpetualExposureStrategy, router, clock, rate: int) -> None:
    router.set_funding_rate("RWA-PERP", rate)
    strategy.record_funding_rate()
    clock.advance(HOUR)


class TestConstruction:
    def test_invalid_leverage_bounds(self, oracle, router, clock) -> None:
        with pytest.raises(ValidationError) as exc:
            PerpetualExposureStrategy(
                "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
                market="RWA-PERP", clock=clock, base_leverage=150, min_leverage=200,
            )
        assert exc.value.code == "invalid_leverage_bounds"

    def test_max_above_risk_limit(self, oracle, router, clock) -> None:
        with pytest.raises(CapacityError):
            PerpetualExposureStrategy(
                "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
                market="RWA-PERP", clock=clock, max_leverage=400,
            )


class TestFunding:
    def test_high_funding_lowers_leverage(self, perp_strategy, router, clock) -> None:
        _record(perp_strategy, router, clock, 150)
        assert perp_strategy.average_funding_rate() == 150
        assert perp_strategy.calculate_optimal_leverage() == 160

    def test_optimal_clamped_to_min(self, oracle, router, clock) -> None:
        strategy = PerpetualExposureStrategy(
            "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
            market="RWA-PERP", clock=clock, min_leverage=180,
        )
        _record(strategy, router, clock, 150)
        assert strategy.calculate_optimal_leverage() == 180

    def test_negative_funding_raises_leverage(self, perp_strategy, router, clock) -> None:
        _record(perp_strategy, router, clock, -150)
        assert perp_strategy.calculate_optimal_leverage() == 240

    def test_history_evicts_oldest(self, oracle, router, clock) -> None:
        strategy = PerpetualExposureStrategy(
            "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
            market="RWA-PERP", clock=clock, funding_history_size=3,
        )
        for rate in (400, 10, 20, 30):
            _record(strategy, router, clock, rate)

        assert [rate for _, rate in strategy.funding_history] == [10, 20, 30]
        assert strategy.average_funding_rate() == 20

    def test_update_too_soon(self, perp_strategy, router, clock) -> None:
        perp_strategy.record_funding_rate()
        clock.advance(HOUR - 1)
        with pytest.raises(TimingError) as exc:
            perp_strategy.record_funding_rate()
        assert exc.value.code == "funding_update_too_soon"
        assert len(perp_strategy.funding_history) == 1


class TestExposure:
    def test_open_splits_margin_and_yield(
        self, perp_strategy, router, lending_vault, treasury_vault
    ) -> None:
        ok, exposure = perp_strategy.open_exposure(1_000_000)

        assert ok is True
        assert exposure == 1_000_000
        # 50% margin at 2x; yield takes 30% + 20% of the freed half
        assert lending_vault.get_total_value() == 150_000
        assert treasury_vault.get_total_value() == 100_000
        assert perp_strategy.total_collateral == 750_000
        position = router.get_position(perp_strategy.position_id)
        assert position.size == 1_000_000
        assert position.collateral == 750_000

    def test_first_open_adopts_optimal_leverage(self, perp_strategy, router, clock) -> None:
        _record(perp_strategy, router, clock, 150)
        perp_strategy.open_exposure(1_000_000)
        assert perp_strategy.current_leverage == 160
        # margin 625k, yield 30% + 20% of 375k
        assert perp_strategy.total_collateral == 625_000 + 375_000 // 2

    def test_second_open_increases_position(self, perp_strategy, router) -> None:
        perp_strategy.open_exposure(1_000_000)
        position_id = perp_strategy.position_id
        perp_strategy.open_exposure(500_000)

        assert perp_strategy.position_id == position_id
        assert router.get_position(position_id).size == 1_500_000
        assert perp_strategy.total_exposure_amount == 1_500_000

    def test_full_close(self, perp_strategy, lending_vault) -> None:
        perp_strategy.open_exposure(1_000_000)
        closed, recovered = perp_strategy.close_exposure(1_000_000)

        assert (closed, recovered) == (1_000_000, 1_000_000)
        assert perp_strategy.position_id is None
        assert perp_strategy.status is StrategyStatus.CLOSED
        assert lending_vault.total_shares == 0

    def test_partial_close(self, perp_strategy) -> None:
        perp_strategy.open_exposure(1_000_000)
        closed, recovered = perp_strategy.close_exposure(400_000)

        assert closed == 400_000
        assert recovered == 300_000 + 100_000
        assert perp_strategy.total_exposure_amount == 600_000
        assert perp_strategy.total_collateral == 450_000

    def test_close_with_profit(self, perp_strategy, oracle) -> None:
        perp_strategy.open_exposure(1_000_000)
        oracle.set_price("RWA", to_price(110))
        _, recovered = perp_strategy.close_exposure(1_000_000)
        assert recovered == 1_100_000

    def test_yield_failure_keeps_capital_as_margin(self, perp_strategy, lending_vault) -> None:
        lending_vault.set_failing()
        perp_strategy.open_exposure(1_000_000)
        assert perp_strategy.total_collateral == 900_000
        assert perp_strategy.total_exposure_amount == 1_000_000

    def test_router_failure_reverts_yield(self, perp_strategy, router, lending_vault) -> None:
        router.add_market("RWA-PERP", "RWA", max_leverage=150)
        with pytest.raises(CapacityError):
            perp_strategy.open_exposure(1_000_000)

        assert lending_vault.total_shares == 0
        assert perp_strategy.total_exposure_amount == 0
        assert perp_strategy.position_id is None

    def test_harvest_isolates_failures(self, perp_strategy, lending_vault, treasury_vault) -> None:
        perp_strategy.open_exposure(1_000_000)
        lending_vault.add_rewards(1_000)
        treasury_vault.add_rewards(500)
        treasury_vault.set_failing()
        assert perp_strategy.harvest_yield() == 1_000


class TestRebalance:
    def test_adjusts_when_beyond_threshold(
        self, perp_strategy, router, clock, lending_vault, treasury_vault
    ) -> None:
        perp_strategy.open_exposure(1_000_000)
        _record(perp_strategy, router, clock, 150)

        assert perp_strategy.rebalance() == 160
        # margin falls from 750k to 625k; the 125k released goes to yield 3:2
        assert perp_strategy.total_collateral == 625_000
        assert router.get_position(perp_strategy.position_id).collateral == 625_000
        assert lending_vault.get_total_value() == 150_000 + 75_000
        assert treasury_vault.get_total_value() == 100_000 + 50_000
        event = perp_strategy.events.named("LeverageAdjusted")[0]
        assert event.fields == {"before": 200, "after": 160}

    def test_deleveraging_pulls_margin_from_yield(self, oracle, router, clock) -> None:
        lending = InMemoryYieldStrategy("lending")
        treasury = InMemoryYieldStrategy("treasury")
        strategy = PerpetualExposureStrategy(
            "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
            market="RWA-PERP", clock=clock, leverage_adjustment_factor=5_000,
        )
        strategy.add_yield_strategy(lending, 3_000, caller=OWNER)
        strategy.add_yield_strategy(treasury, 2_000, caller=OWNER)

        _record(strategy, router, clock, -150)
        strategy.open_exposure(1_000_000)
        assert strategy.current_leverage == 300
        assert strategy.total_collateral == 666_667

        _record(strategy, router, clock, 1_000)
        _record(strategy, router, clock, 1_000)

        # average 616 halves the base leverage down to the 1x floor
        assert strategy.rebalance() == 100
        assert strategy.total_collateral == 1_000_000
        assert router.get_position(strategy.position_id).leverage == 100
        assert lending.total_shares == 0
        assert treasury.total_shares == 0

    def test_router_failure_returns_margin_to_yield(self, oracle, router, clock) -> None:
        lending = InMemoryYieldStrategy("lending")
        strategy = PerpetualExposureStrategy(
            "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
            market="RWA-PERP", clock=clock, leverage_adjustment_factor=5_000,
        )
        strategy.add_yield_strategy(lending, 5_000, caller=OWNER)
        strategy.open_exposure(1_000_000)
        _record(strategy, router, clock, 1_000)
        _record(strategy, router, clock, 1_000)
        router.set_stuck(strategy.position_id)

        with pytest.raises(VenueUnavailableError):
            strategy.rebalance()

        assert strategy.current_leverage == 200
        assert strategy.total_collateral == 750_000
        assert strategy.get_yield_value() + strategy.idle_balance == 250_000
        assert lending.get_total_value() == 250_000

    def test_router_failure_when_releasing_margin(
        self, perp_strategy, router, clock, lending_vault, treasury_vault
    ) -> None:
        perp_strategy.open_exposure(1_000_000)
        _record(perp_strategy, router, clock, 150)
        router.set_stuck(perp_strategy.position_id)

        with pytest.raises(VenueUnavailableError):
            perp_strategy.rebalance()

        assert perp_strategy.current_leverage == 200
        assert perp_strategy.total_collateral == 750_000
        assert lending_vault.get_total_value() + treasury_vault.get_total_value() == 250_000
        assert perp_strategy.idle_balance == 0

    def test_small_change_ignored(self, perp_strategy, router, clock) -> None:
        perp_strategy.open_exposure(1_000_000)
        _record(perp_strategy, router, clock, 50)

        assert perp_strategy.rebalance() == 200
        assert perp_strategy.events.named("LeverageAdjusted") == []

    def test_cooldown(self, perp_strategy) -> None:
        perp_strategy.rebalance()
        with pytest.raises(TimingError):
            perp_strategy.rebalance()


class TestEmergencyExit:
    def test_stuck_position_keeps_exposure(self, perp_strategy, router) -> None:
        perp_strategy.open_exposure(1_000_000)
        router.set_stuck(perp_strategy.position_id)

        recovered = perp_strategy.emergency_exit()

        assert recovered == 250_000
        assert perp_strategy.total_exposure_amount == 1_000_000
        assert perp_strategy.status is StrategyStatus.EMERGENCY_EXITED
        assert perp_strategy.events.named("PositionUnwindFailed")

    def test_stuck_yield_reported(self, perp_strategy, treasury_vault) -> None:
        perp_strategy.open_exposure(1_000_000)
        treasury_vault.set_failing()

        recovered = perp_strategy.emergency_exit()

        assert recovered == 750_000 + 150_000
        assert perp_strategy.total_exposure_amount == 0
        assert perp_strategy.events.named("YieldUnwindFailed")[0].fields == {"strategies": ["treasury"]}


class TestAdministration:
    def test_yield_cap(self, perp_strategy) -> None:
        with pytest.raises(CapacityError):
            perp_strategy.add_yield_strategy(InMemoryYieldStrategy("more"), 1, caller=OWNER)

    def test_non_owner(self, perp_strategy) -> None:
        with pytest.raises(AuthorizationError):
            perp_strategy.update_yield_allocation("lending", 1_000, caller="mallory")

    def test_update_allocation_emits_event(self, perp_strategy) -> None:
        perp_strategy.update_yield_allocation("lending", 1_000, caller=OWNER)
        event = perp_strategy.events.last
        assert event.name == "YieldAllocationUpdated"
        assert event.fields == {"strategy": "lending", "before": 3_000, "after": 1_000}


class TestViews:
    def test_cost_estimate(self, perp_strategy) -> None:
        year = 365 * 24 * HOUR
        # funding 50 + management 50 over a year, plus 10 trading and 5 gas
        assert perp_strategy.estimate_exposure_cost(1_000_000, year) == 115

    def test_cost_estimate_unavailable(self, oracle, router, clock) -> None:
        strategy = PerpetualExposureStrategy(
            "perp", owner=OWNER, underlying_asset="RWA", oracle=oracle, router=router,
            market="MISSING", clock=clock,
        )
        assert strategy.estimate_exposure_cost(1_000_000, HOUR) is None

    def test_negative_funding_not_credited(self, perp_strategy, router, clock) -> None:
        _record(perp_strategy, router, clock, -300)
        assert perp_strategy.get_cost_breakdown().funding_rate == 0

    def test_exposure_info(self, perp_strategy) -> None:
        perp_strategy.open_exposure(1_000_000)
        info = perp_strategy.get_exposure_info()
        assert info.leverage == 133
        assert info.collateral_ratio == 7_500
        assert info.current_exposure == 1_000_000
        assert info.liquidation_price > 0
        assert perp_strategy.get_yield_value() == 250_000
