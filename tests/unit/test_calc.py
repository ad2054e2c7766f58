"""Unit tests for the fixed-point strategy helpers."""
from __future__ import annotations

from rwa_exposure.models import PRICE_PRECISION, YEAR
from rwa_exposure.strategies import calc


class TestRatios:
    def test_leverage_of(self) -> None:
        assert calc.leverage_of(2_000_000, 1_000_000) == 200
        assert calc.leverage_of(100, 0) == 0

    def test_collateral_ratio(self) -> None:
        assert calc.collateral_ratio(500, 2_000) == 2_500
        assert calc.collateral_ratio(500, 0) == 0

    def test_concentration(self) -> None:
        assert calc.concentration_bps(4_000_000, 6_000_000) == 6_666
        assert calc.concentration_bps(1, 0) == 0

    def test_proportional_rounds_down(self) -> None:
        assert calc.proportional(100, 1, 3) == 33
        assert calc.proportional(100, 1, 0) == 0


class TestRates:
    def test_annualize_full_year(self) -> None:
        assert calc.annualize_bps(450, YEAR) == 450

    def test_annualize_thirty_days(self) -> None:
        assert calc.annualize_bps(25, 30 * 24 * 3600) == 2

    def test_apply_slippage(self) -> None:
        assert calc.apply_slippage(10_000, 100) == 9_900

    def test_split_keeps_unallocated_rest(self) -> None:
        assert calc.split_by_allocations(500_000, [3_000, 2_000]) == [150_000, 100_000]


class TestAverage:
    def test_empty(self) -> None:
        assert calc.average([]) == 0

    def test_truncates_toward_zero(self) -> None:
        assert calc.average([150, 151]) == 150
        assert calc.average([-150, -151]) == -150


class TestLiquidationPrice:
    def test_two_x_with_buffer(self) -> None:
        price = 100 * PRICE_PRECISION
        # 2x with a 20% buffer: drop = 100 * 1/2 * 0.8 = 40
        assert calc.liquidation_price(price, 200, 2_000) == 60 * PRICE_PRECISION

    def test_one_x_without_buffer(self) -> None:
        assert calc.liquidation_price(100 * PRICE_PRECISION, 100, 0) == 0

    def test_degenerate_inputs(self) -> None:
        assert calc.liquidation_price(0, 200, 2_000) == 0
        assert calc.liquidation_price(PRICE_PRECISION, 0, 2_000) == 0


class TestOptimalLeverage:
    def test_high_funding_cuts_leverage(self) -> None:
        assert calc.optimal_leverage(150, 200, 100, 2_000, 100, 300) == 160

    def test_negative_funding_raises_leverage(self) -> None:
        assert calc.optimal_leverage(-150, 200, 100, 2_000, 100, 300) == 240

    def test_within_threshold_keeps_base(self) -> None:
        assert calc.optimal_leverage(100, 200, 100, 2_000, 100, 300) == 200
        assert calc.optimal_leverage(-100, 200, 100, 2_000, 100, 300) == 200

    def test_clamped_to_bounds(self) -> None:
        assert calc.optimal_leverage(150, 200, 100, 2_000, 180, 300) == 180
        assert calc.optimal_leverage(-150, 200, 100, 2_000, 100, 220) == 220


class TestScores:
    def test_quote_score_without_penalty(self) -> None:
        assert calc.quote_score(9, 450, 0) == 8_550
        assert calc.quote_score(9, 450, 2_000) == 8_550

    def test_quote_score_concentration_penalty(self) -> None:
        assert calc.quote_score(9, 450, 3_333) == 8_550 - 3_333

    def test_risk_score(self) -> None:
        assert calc.risk_score(300, 300) == 60
        assert calc.risk_score(100, 300, 10_000) == 20 + 40
        assert calc.risk_score(0, 0) == 100
