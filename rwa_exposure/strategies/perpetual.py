"""Perpetual-future exposure strategy with funding-driven leverage.

Each unit of capital buys one unit of notional on a perpetual market. Only
``capital / leverage`` is needed as margin; the rest is spread over yield
strategies. Leverage follows the trailing funding rate: expensive funding
lowers it, negative funding raises it, and the live position is only touched
when the change exceeds a quarter unit.
"""
from __future__ import annotations

import logging
from collections import deque

from ..errors import CapacityError, ExposureError, TimingError, ValidationError
from ..guards import non_reentrant, require_owner
from ..interfaces.perpetual_router import PerpetualRouter
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.yield_strategy import YieldStrategy
from ..models import (
    BPS,
    LEVERAGE_UNIT,
    CostBreakdown,
    ExposureInfo,
    RiskParameters,
    StrategyStatus,
    StrategyType,
    YieldAllocation,
)
from . import calc
from .base import BaseExposureStrategy, Clock
from .yield_book import YieldBook

logger = logging.getLogger(__name__)


class PerpetualExposureStrategy(BaseExposureStrategy):
    """Leveraged long on a perpetual market plus yield on the freed capital."""

    strategy_type = StrategyType.PERPETUAL

    def __init__(
        self,
        strategy_id: str,
        *,
        owner: str,
        underlying_asset: str,
        oracle: PriceOracle,
        router: PerpetualRouter,
        market: str,
        risk_parameters: RiskParameters | None = None,
        clock: Clock | None = None,
        base_leverage: int = 200,
        min_leverage: int = 100,
        max_leverage: int | None = None,
        funding_threshold: int = 100,
        leverage_adjustment_factor: int = 2_000,
        funding_history_size: int = 24,
        funding_update_interval: int = 3600,
        max_yield_allocation: int = 5_000,
        min_rebalance_interval: int = 3600,
        management_fee_bps: int = 50,
        trading_fee_bps: int = 10,
        gas_cost_bps: int = 5,
    ) -> None:
        super().__init__(
            strategy_id,
            owner=owner,
            underlying_asset=underlying_asset,
            oracle=oracle,
            risk_parameters=risk_parameters,
            clock=clock,
            min_rebalance_interval=min_rebalance_interval,
            management_fee_bps=management_fee_bps,
            gas_cost_bps=gas_cost_bps,
        )
        if not market:
            raise ValidationError("market is required")
        max_leverage = self._risk.max_leverage if max_leverage is None else max_leverage
        if not LEVERAGE_UNIT <= min_leverage <= base_leverage <= max_leverage:
            raise ValidationError(
                f"leverage bounds must satisfy 1x <= min ({min_leverage}) <= "
                f"base ({base_leverage}) <= max ({max_leverage})",
                code="invalid_leverage_bounds",
            )
        if max_leverage > self._risk.max_leverage:
            raise CapacityError(
                f"max leverage {max_leverage} exceeds risk limit {self._risk.max_leverage}",
                code="leverage_too_high",
            )
        if not 0 <= leverage_adjustment_factor < BPS:
            raise ValidationError(f"adjustment factor {leverage_adjustment_factor} outside [0, {BPS})")
        if funding_history_size <= 0:
            raise ValidationError("funding_history_size must be positive")

        self._router = router
        self._market = market
        self._base_leverage = base_leverage
        self._min_leverage = min_leverage
        self._max_leverage = max_leverage
        self._funding_threshold = funding_threshold
        self._adjustment_factor = leverage_adjustment_factor
        self._funding_update_interval = funding_update_interval
        self._trading_fee_bps = trading_fee_bps

        self._current_leverage = base_leverage
        self._funding_history: deque[tuple[int, int]] = deque(maxlen=funding_history_size)
        self._last_funding_update = 0
        self._position_id: str | None = None
        self._yield = YieldBook(strategy_id, max_yield_allocation)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def market(self) -> str:
        return self._market

    @property
    def current_leverage(self) -> int:
        return self._current_leverage

    @property
    def position_id(self) -> str | None:
        return self._position_id

    @property
    def funding_history(self) -> list[tuple[int, int]]:
        return list(self._funding_history)

    def get_yield_allocations(self) -> list[YieldAllocation]:
        return self._yield.entries

    def average_funding_rate(self) -> int:
        return calc.average(rate for _, rate in self._funding_history)

    def calculate_optimal_leverage(self) -> int:
        return calc.optimal_leverage(
            self.average_funding_rate(),
            self._base_leverage,
            self._funding_threshold,
            self._adjustment_factor,
            self._min_leverage,
            self._max_leverage,
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_yield_strategy(self, strategy: YieldStrategy, allocation: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "add yield strategies")
        self._yield.add(strategy, allocation)
        self._emit("YieldStrategyAdded", strategy=strategy.name, allocation=allocation)

    def update_yield_allocation(self, name: str, allocation: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "change yield allocations")
        before = self._yield.update(name, allocation)
        self._emit("YieldAllocationUpdated", strategy=name, before=before, after=allocation)

    def remove_yield_strategy(self, name: str, *, caller: str) -> None:
        require_owner(self._owner, caller, "remove yield strategies")
        self._yield.remove(name)
        self._emit("YieldStrategyRemoved", strategy=name)

    def set_max_yield_allocation(self, cap: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "change the yield allocation cap")
        before = self._yield.set_max_allocation(cap)
        self._emit("MaxYieldAllocationUpdated", before=before, after=cap)

    def update_risk_parameters(self, params: RiskParameters, *, caller: str) -> None:
        require_owner(self._owner, caller, "update risk parameters")
        params.validate()
        if self._max_leverage > params.max_leverage:
            raise CapacityError(
                f"configured max leverage {self._max_leverage} exceeds new limit "
                f"{params.max_leverage}",
                code="leverage_too_high",
            )
        super().update_risk_parameters(params, caller=caller)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    @non_reentrant
    def record_funding_rate(self) -> int:
        """Append the router's current funding rate; oldest entry is evicted when full."""
        now = self._now()
        if self._last_funding_update and now - self._last_funding_update < self._funding_update_interval:
            raise TimingError(
                f"funding updated {now - self._last_funding_update}s ago, "
                f"interval is {self._funding_update_interval}s",
                code="funding_update_too_soon",
            )
        rate = self._router.get_funding_rate(self._market)
        self._funding_history.append((now, rate))
        self._last_funding_update = now
        self._emit("FundingRateRecorded", rate=rate, average=self.average_funding_rate())
        return rate

    # ------------------------------------------------------------------
    # Exposure hooks
    # ------------------------------------------------------------------

    def _check_leverage(self) -> None:
        if self._current_leverage > self._risk.max_leverage:
            raise CapacityError(
                f"leverage {self._current_leverage} exceeds max {self._risk.max_leverage}",
                code="leverage_too_high",
            )

    def _open(self, amount: int) -> int:
        self._check_position_size(amount)
        if self._position_id is None:
            self._current_leverage = self.calculate_optimal_leverage()
        self._check_leverage()
        self._price()

        margin = amount * LEVERAGE_UNIT // self._current_leverage
        receipts = self._yield.deposit(amount - margin)
        collateral = amount - sum(r.amount for r in receipts)

        try:
            if self._position_id is None:
                self._position_id = self._router.open_position(
                    self._market, amount, self._current_leverage, collateral
                )
                self._emit(
                    "PositionOpened",
                    position_id=self._position_id,
                    size=amount,
                    collateral=collateral,
                    leverage=self._current_leverage,
                )
            else:
                self._router.adjust_position(self._position_id, amount, collateral)
                self._emit(
                    "PositionIncreased",
                    position_id=self._position_id,
                    size_delta=amount,
                    collateral_delta=collateral,
                )
        except Exception:
            self._yield.revert(receipts)
            raise

        self._total_exposure += amount
        self._total_collateral += collateral
        return amount

    def _close(self, amount: int) -> tuple[int, int]:
        total = self._total_exposure
        if amount == total:
            pnl = self._router.close_position(self._position_id)
            released = max(self._total_collateral + pnl, 0)
            collateral_part = self._total_collateral
            self._emit("PositionClosed", position_id=self._position_id, pnl=pnl, released=released)
            self._position_id = None
        else:
            collateral_part = self._total_collateral * amount // total
            released = self._router.adjust_position(self._position_id, -amount, -collateral_part)
            self._emit(
                "PositionReduced",
                position_id=self._position_id,
                size_delta=-amount,
                collateral_delta=-collateral_part,
                released=released,
            )

        self._total_exposure -= amount
        self._total_collateral -= collateral_part
        recovered = released + self._yield.withdraw_fraction(amount, total)
        return amount, recovered

    def _unwind_all(self) -> int:
        recovered = 0
        if self._position_id is not None:
            ok, pnl = self._attempt(
                f"close {self._position_id}", self._router.close_position, self._position_id
            )
            if ok:
                released = max(self._total_collateral + pnl, 0)
                recovered += released
                self._emit("PositionClosed", position_id=self._position_id, pnl=pnl, released=released)
                self._position_id = None
                self._total_exposure = 0
                self._total_collateral = 0
            else:
                self._emit("PositionUnwindFailed", position_id=self._position_id)

        recovered += self._yield.withdraw_fraction(1, 1)
        stuck = [e.strategy.name for e in self._yield.entries if e.shares]
        if stuck:
            self._emit("YieldUnwindFailed", strategies=stuck)
        return recovered

    def _harvest(self) -> int:
        return self._yield.harvest()

    def _can_handle(self, amount: int) -> bool:
        self._check_position_size(amount)
        self._check_leverage()
        self._price()
        self._router.get_funding_rate(self._market)
        return True

    # ------------------------------------------------------------------
    # Leverage management
    # ------------------------------------------------------------------

    @non_reentrant
    def rebalance(self) -> int:
        """Move the live position toward the optimal leverage; return the new leverage."""
        self._check_rebalance_cooldown()
        optimal = self.calculate_optimal_leverage()
        before = self._current_leverage

        if abs(optimal - before) > calc.MIN_LEVERAGE_CHANGE:
            if self._position_id is not None and self._total_exposure > 0:
                self._apply_leverage(optimal)
            self._current_leverage = optimal
            self._emit("LeverageAdjusted", before=before, after=optimal)
        else:
            logger.debug(
                "%s leverage %d within %d of optimal %d, not adjusting",
                self._strategy_id, before, calc.MIN_LEVERAGE_CHANGE, optimal,
            )

        self._mark_rebalanced()
        return self._current_leverage

    def _apply_leverage(self, leverage: int) -> None:
        target_margin = self._total_exposure * LEVERAGE_UNIT // leverage
        delta = target_margin - self._total_collateral

        if delta > 0:
            raised = self._yield.withdraw_amount(delta)
            if raised < delta:
                logger.warning(
                    "%s raised %d of %d margin from yield strategies",
                    self._strategy_id, raised, delta,
                )
            if raised > 0:
                try:
                    self._router.adjust_position(self._position_id, 0, raised)
                except Exception:
                    self._park(raised)
                    raise
                self._total_collateral += raised
        elif delta < 0:
            released = self._router.adjust_position(self._position_id, 0, delta)
            self._total_collateral += delta
            self._park(released)

    def _park(self, amount: int) -> None:
        """Return freed capital to the yield strategies; whatever they refuse stays idle."""
        deposited = sum(r.amount for r in self._yield.deposit_all(amount))
        self._idle_balance += amount - deposited

    # ------------------------------------------------------------------
    # Cost / risk views
    # ------------------------------------------------------------------

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None:
        self._require_positive(amount)
        try:
            rate = self._router.get_funding_rate(self._market)
        except ExposureError as e:
            logger.debug("%s funding unavailable: %s", self._strategy_id, e)
            return None
        carry = max(rate, 0) + self._management_fee_bps
        return calc.annualize_bps(carry, time_horizon) + self._trading_fee_bps + self._gas_cost_bps

    def get_cost_breakdown(self) -> CostBreakdown:
        return CostBreakdown.build(
            funding_rate=max(self.average_funding_rate(), 0),
            management_fee=self._management_fee_bps,
            slippage_cost=self._trading_fee_bps,
            gas_cost=self._gas_cost_bps,
            last_updated=self._now(),
        )

    def get_exposure_info(self) -> ExposureInfo:
        leverage = calc.leverage_of(self._total_exposure, self._total_collateral)
        liquidation = 0
        if self._position_id is not None:
            try:
                liquidation = calc.liquidation_price(
                    self._price(), leverage, self._risk.liquidation_buffer
                )
            except ExposureError as e:
                logger.debug("%s has no price: %s", self._strategy_id, e)
        return ExposureInfo(
            strategy_type=self.strategy_type,
            name=self._strategy_id,
            underlying_asset=self._underlying_asset,
            leverage=leverage,
            collateral_ratio=calc.collateral_ratio(self._total_collateral, self._total_exposure),
            current_exposure=self._total_exposure,
            max_capacity=self._risk.max_position_size,
            current_cost=self.get_cost_breakdown().total_cost_bps,
            risk_score=calc.risk_score(leverage, self._risk.max_leverage),
            is_active=self._status is StrategyStatus.ACTIVE,
            liquidation_price=liquidation,
        )

    def get_yield_value(self) -> int:
        return self._yield.total_value()
