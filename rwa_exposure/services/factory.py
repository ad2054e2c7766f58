"""Wire venues, strategies, optimizer and bundle from an ``AppConfig``."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..bundle import ComposableRWABundle
from ..config import AppConfig
from ..interfaces.notifier import Notifier
from ..models import BundleRiskParameters
from ..notifications import TelegramNotifier
from ..optimizer import StrategyOptimizer
from ..oracles import PythPriceFeed
from ..strategies import DirectTokenStrategy, PerpetualExposureStrategy, TRSExposureStrategy
from ..strategies.base import BaseExposureStrategy, Clock, system_clock
from ..venues import (
    InMemoryPerpetualRouter,
    InMemorySpotExchange,
    InMemorySwapProvider,
    InMemoryYieldStrategy,
    StaticPriceOracle,
    to_price,
)

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60


@dataclass
class Environment:
    config: AppConfig
    oracle: StaticPriceOracle
    swap_provider: InMemorySwapProvider
    router: InMemoryPerpetualRouter
    exchange: InMemorySpotExchange
    optimizer: StrategyOptimizer
    bundle: ComposableRWABundle
    strategies: list[BaseExposureStrategy] = field(default_factory=list)
    yield_vaults: list[InMemoryYieldStrategy] = field(default_factory=list)
    price_feed: PythPriceFeed | None = None
    notifiers: list[Notifier] = field(default_factory=list)

    def strategy(self, strategy_id: str) -> BaseExposureStrategy:
        for s in self.strategies:
            if s.strategy_id == strategy_id:
                return s
        raise KeyError(strategy_id)


def build_environment(config: AppConfig, clock: Clock | None = None) -> Environment:
    """Build a fully wired simulation from configuration.

    Each consumer gets its own vault instance per configured yield venue, so a
    vault's total value is always that consumer's position.
    """
    clock = clock or system_clock
    sim = config.simulation
    sc = config.strategies
    owner = config.bundle.owner
    vaults: list[InMemoryYieldStrategy] = []

    def vault(name: str) -> InMemoryYieldStrategy:
        v = InMemoryYieldStrategy(name, apy_bps=sim.yield_venues.get(name, 0))
        vaults.append(v)
        return v

    oracle = StaticPriceOracle({asset: to_price(p) for asset, p in sim.prices.items()})

    provider = InMemorySwapProvider(oracle, clock=clock, quote_validity=sim.quote_validity)
    for cp in sim.counterparties:
        provider.register_counterparty(
            cp.name,
            credit_rating=cp.credit_rating,
            max_exposure=cp.max_exposure,
            borrow_rate_bps=cp.borrow_rate_bps,
            collateral_requirement_bps=cp.collateral_requirement_bps,
        )

    router = InMemoryPerpetualRouter(oracle)
    router.add_market(
        sc.perpetual.market,
        sc.underlying_asset,
        funding_rate=sim.funding_rates.get(sc.perpetual.market, 0),
    )
    exchange = InMemorySpotExchange(oracle, base_asset=sc.base_asset, fee_bps=sim.exchange_fee_bps)

    optimizer = StrategyOptimizer(config.optimizer, clock=clock)
    bc = config.bundle
    bundle = ComposableRWABundle(
        bc.bundle_id,
        owner=owner,
        optimizer=optimizer,
        risk_parameters=BundleRiskParameters(
            max_total_leverage=bc.max_total_leverage,
            max_strategy_count=bc.max_strategy_count,
            rebalance_threshold=bc.rebalance_threshold,
            emergency_threshold=bc.emergency_threshold,
            max_slippage_tolerance=bc.max_slippage_tolerance,
            min_capital_efficiency=bc.min_capital_efficiency,
        ),
        clock=clock,
        min_rebalance_interval=bc.min_rebalance_interval,
        time_horizon=config.optimizer.time_horizon,
    )

    strategies: list[BaseExposureStrategy] = []

    if sc.trs.enabled:
        tc = sc.trs
        trs = TRSExposureStrategy(
            "trs",
            owner=owner,
            underlying_asset=sc.underlying_asset,
            oracle=oracle,
            swap_provider=provider,
            risk_parameters=tc.risk.to_params(),
            clock=clock,
            target_leverage=tc.target_leverage,
            contract_maturity=tc.contract_maturity_days * DAY,
            concentration_limit=tc.concentration_limit,
            max_counterparties=tc.max_counterparties,
            min_rebalance_interval=sc.min_rebalance_interval,
            management_fee_bps=tc.management_fee_bps,
            gas_cost_bps=tc.gas_cost_bps,
        )
        for cp in tc.counterparties:
            trs.add_counterparty(cp.name, cp.target_allocation, cp.max_exposure, caller=owner)
        bundle.add_exposure_strategy(trs, tc.target_allocation, caller=owner, is_primary=True)
        strategies.append(trs)

    if sc.perpetual.enabled:
        pc = sc.perpetual
        perp = PerpetualExposureStrategy(
            "perpetual",
            owner=owner,
            underlying_asset=sc.underlying_asset,
            oracle=oracle,
            router=router,
            market=pc.market,
            risk_parameters=pc.risk.to_params(),
            clock=clock,
            base_leverage=pc.base_leverage,
            min_leverage=pc.min_leverage,
            max_leverage=pc.max_leverage,
            funding_threshold=pc.funding_threshold,
            leverage_adjustment_factor=pc.leverage_adjustment_factor,
            funding_history_size=pc.funding_history_size,
            funding_update_interval=pc.funding_update_interval,
            max_yield_allocation=pc.max_yield_allocation,
            min_rebalance_interval=sc.min_rebalance_interval,
            management_fee_bps=pc.management_fee_bps,
            trading_fee_bps=pc.trading_fee_bps,
            gas_cost_bps=pc.gas_cost_bps,
        )
        for name, allocation in pc.yield_allocations.items():
            perp.add_yield_strategy(vault(name), allocation, caller=owner)
        bundle.add_exposure_strategy(perp, pc.target_allocation, caller=owner)
        strategies.append(perp)

    if sc.direct_token.enabled:
        dc = sc.direct_token
        direct = DirectTokenStrategy(
            "direct_token",
            owner=owner,
            underlying_asset=sc.underlying_asset,
            oracle=oracle,
            exchange=exchange,
            base_asset=sc.base_asset,
            risk_parameters=dc.risk.to_params(),
            clock=clock,
            yield_buffer_bps=dc.yield_buffer_bps,
            min_rebalance_interval=sc.min_rebalance_interval,
            management_fee_bps=dc.management_fee_bps,
            gas_cost_bps=dc.gas_cost_bps,
        )
        for name, allocation in dc.yield_allocations.items():
            direct.add_yield_strategy(vault(name), allocation, caller=owner)
        bundle.add_exposure_strategy(direct, dc.target_allocation, caller=owner)
        strategies.append(direct)

    if bc.yield_allocations:
        names = list(bc.yield_allocations)
        bundle.update_yield_bundle(
            [vault(n) for n in names],
            [bc.yield_allocations[n] for n in names],
            caller=owner,
            max_leverage_ratio=bc.max_leverage_ratio,
        )

    price_feed = None
    if config.price_oracle.provider == "pyth" and config.price_oracle.pyth.feeds:
        price_feed = PythPriceFeed(config.price_oracle.pyth)

    notifiers: list[Notifier] = []
    if config.notifications.telegram.enabled:
        notifiers.append(TelegramNotifier(config.notifications.telegram))

    logger.info(
        "Built environment with %d strategies: %s",
        len(strategies), ", ".join(s.strategy_id for s in strategies),
    )
    return Environment(
        config=config,
        oracle=oracle,
        swap_provider=provider,
        router=router,
        exchange=exchange,
        optimizer=optimizer,
        bundle=bundle,
        strategies=strategies,
        yield_vaults=vaults,
        price_feed=price_feed,
        notifiers=notifiers,
    )
