"""Shared test fixtures: a controllable clock, reference venues and strategies."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from rwa_exposure.config import OptimizerConfig
from rwa_exposure.errors import VenueUnavailableError
from rwa_exposure.models import (
    BPS,
    CostBreakdown,
    ExposureInfo,
    StrategyType,
)
from rwa_exposure.optimizer import StrategyOptimizer
from rwa_exposure.strategies import (
    DirectTokenStrategy,
    PerpetualExposureStrategy,
    TRSExposureStrategy,
)
from rwa_exposure.venues import (
    InMemoryPerpetualRouter,
    InMemorySpotExchange,
    InMemorySwapProvider,
    InMemoryYieldStrategy,
    StaticPriceOracle,
    to_price,
)

OWNER = "admin"
START = 1_700_000_000
HOUR = 3600
DAY = 24 * HOUR


class FakeClock:
    def __init__(self, now: int = START) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class StubStrategy:
    """Exposure strategy with scripted readings, for optimizer and bundle tests."""

    def __init__(
        self,
        strategy_id: str,
        *,
        cost_bps: int | None = 100,
        risk: int = 20,
        strategy_type: StrategyType = StrategyType.TRS,
        capacity: int = 10**12,
        can_handle: bool = True,
    ) -> None:
        self.strategy_id = strategy_id
        self.strategy_type = strategy_type
        self.cost_bps = cost_bps
        self.risk = risk
        self.capacity = capacity
        self.can_handle = can_handle
        self.total_exposure_amount = 0
        self.unreadable = False
        self.fail_open = False
        self.harvest_amount = 0

    def _check(self) -> None:
        if self.unreadable:
            raise VenueUnavailableError(f"{self.strategy_id} unreadable")

    def get_exposure_info(self) -> ExposureInfo:
        self._check()
        return ExposureInfo(
            strategy_type=self.strategy_type,
            name=self.strategy_id,
            underlying_asset="RWA",
            leverage=100,
            collateral_ratio=BPS,
            current_exposure=self.total_exposure_amount,
            max_capacity=self.capacity,
            current_cost=self.cost_bps or 0,
            risk_score=self.risk,
            is_active=True,
            liquidation_price=0,
        )

    def get_cost_breakdown(self) -> CostBreakdown:
        self._check()
        return CostBreakdown.build(borrow_rate=self.cost_bps or 0)

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None:
        self._check()
        return self.cost_bps

    def can_handle_exposure(self, amount: int) -> bool:
        return self.can_handle

    def open_exposure(self, amount: int) -> tuple[bool, int]:
        if self.fail_open:
            raise VenueUnavailableError(f"{self.strategy_id} refused to open")
        self.total_exposure_amount += amount
        return True, amount

    def close_exposure(self, amount: int) -> tuple[int, int]:
        self.total_exposure_amount -= amount
        return amount, amount

    def revert_open(self, exposure: int) -> tuple[int, int]:
        return self.close_exposure(exposure)

    def harvest_yield(self) -> int:
        return self.harvest_amount

    def emergency_exit(self) -> int:
        recovered, self.total_exposure_amount = self.total_exposure_amount, 0
        return recovered


# ---------------------------------------------------------------------------
# Venues
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle({"RWA": to_price(100)})


@pytest.fixture()
def swap_provider(oracle: StaticPriceOracle, clock: FakeClock) -> InMemorySwapProvider:
    provider = InMemorySwapProvider(oracle, clock=clock)
    provider.register_counterparty(
        "alpha", credit_rating=9, max_exposure=10**9, borrow_rate_bps=450
    )
    provider.register_counterparty(
        "beta", credit_rating=7, max_exposure=10**9, borrow_rate_bps=400
    )
    provider.register_counterparty(
        "gamma", credit_rating=5, max_exposure=10**9, borrow_rate_bps=350
    )
    return provider


@pytest.fixture()
def router(oracle: StaticPriceOracle) -> InMemoryPerpetualRouter:
    r = InMemoryPerpetualRouter(oracle)
    r.add_market("RWA-PERP", "RWA", funding_rate=50)
    return r


@pytest.fixture()
def exchange(oracle: StaticPriceOracle) -> InMemorySpotExchange:
    return InMemorySpotExchange(oracle, base_asset="USDC", fee_bps=30)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


@pytest.fixture()
def trs_strategy(
    oracle: StaticPriceOracle, swap_provider: InMemorySwapProvider, clock: FakeClock
) -> TRSExposureStrategy:
    strategy = TRSExposureStrategy(
        "trs",
        owner=OWNER,
        underlying_asset="RWA",
        oracle=oracle,
        swap_provider=swap_provider,
        clock=clock,
    )
    strategy.add_counterparty("alpha", 4_000, 10**9, caller=OWNER)
    strategy.add_counterparty("beta", 3_500, 10**9, caller=OWNER)
    strategy.add_counterparty("gamma", 2_500, 10**9, caller=OWNER)
    return strategy


@pytest.fixture()
def lending_vault() -> InMemoryYieldStrategy:
    return InMemoryYieldStrategy("lending", apy_bps=450)


@pytest.fixture()
def treasury_vault() -> InMemoryYieldStrategy:
    return InMemoryYieldStrategy("treasury", apy_bps=500)


@pytest.fixture()
def perp_strategy(
    oracle: StaticPriceOracle,
    router: InMemoryPerpetualRouter,
    clock: FakeClock,
    lending_vault: InMemoryYieldStrategy,
    treasury_vault: InMemoryYieldStrategy,
) -> PerpetualExposureStrategy:
    strategy = PerpetualExposureStrategy(
        "perp",
        owner=OWNER,
        underlying_asset="RWA",
        oracle=oracle,
        router=router,
        market="RWA-PERP",
        clock=clock,
    )
    strategy.add_yield_strategy(lending_vault, 3_000, caller=OWNER)
    strategy.add_yield_strategy(treasury_vault, 2_000, caller=OWNER)
    return strategy


@pytest.fixture()
def buffer_vault() -> InMemoryYieldStrategy:
    return InMemoryYieldStrategy("buffer")


@pytest.fixture()
def direct_strategy(
    oracle: StaticPriceOracle,
    exchange: InMemorySpotExchange,
    clock: FakeClock,
    buffer_vault: InMemoryYieldStrategy,
) -> DirectTokenStrategy:
    strategy = DirectTokenStrategy(
        "direct",
        owner=OWNER,
        underlying_asset="RWA",
        oracle=oracle,
        exchange=exchange,
        base_asset="USDC",
        clock=clock,
    )
    strategy.add_yield_strategy(buffer_vault, BPS, caller=OWNER)
    return strategy


@pytest.fixture()
def optimizer(clock: FakeClock) -> StrategyOptimizer:
    return StrategyOptimizer(OptimizerConfig(), clock=clock)


@pytest.fixture()
def make_stub():
    """Factory for ``StubStrategy`` instances."""
    return StubStrategy


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    strategies:
      underlying_asset: RWA
      base_asset: USDC
      trs:
        target_allocation: 4000
        counterparties:
          - {name: alpha, target_allocation: 5000, max_exposure: 1000000000}
          - {name: beta, target_allocation: 5000, max_exposure: 1000000000}
      perpetual:
        target_allocation: 3000
        market: RWA-PERP
        yield_allocations: {lending: 3000}
      direct_token:
        target_allocation: 2000
        yield_allocations: {lending: 10000}
    optimizer:
      weights: {cost: 30, risk: 25, liquidity: 20, reliability: 15, capacity: 10}
      min_score: 40
    bundle:
      owner: ${RWA_TEST_ADMIN}
      yield_allocations: {treasury: 10000}
    simulation:
      prices: {RWA: 100.0}
      funding_rates: {RWA-PERP: 50}
      yield_venues: {lending: 450, treasury: 500}
      counterparties:
        - {name: alpha, credit_rating: 9, max_exposure: 1000000000, borrow_rate_bps: 450}
        - {name: beta, credit_rating: 7, max_exposure: 1000000000, borrow_rate_bps: 400}
    keeper:
      check_interval_minutes: 5
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {RWA: "aaa"}
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: "999"
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("RWA_TEST_ADMIN", OWNER)
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
