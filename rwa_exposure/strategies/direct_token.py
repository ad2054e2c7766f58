"""Direct spot holding of the reference token.

Capital is swapped into the token on a spot exchange, keeping a buffer in
yield strategies. There is no leverage, so exposure is simply the base asset
spent on tokens and nothing can be liquidated.
"""
from __future__ import annotations

import logging

from ..errors import ExposureError, ValidationError, VenueUnavailableError
from ..guards import require_owner
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.spot_exchange import SpotExchange
from ..interfaces.yield_strategy import YieldStrategy
from ..models import (
    BPS,
    LEVERAGE_UNIT,
    PRICE_PRECISION,
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


class DirectTokenStrategy(BaseExposureStrategy):
    strategy_type = StrategyType.DIRECT_TOKEN

    def __init__(
        self,
        strategy_id: str,
        *,
        owner: str,
        underlying_asset: str,
        oracle: PriceOracle,
        exchange: SpotExchange,
        base_asset: str,
        risk_parameters: RiskParameters | None = None,
        clock: Clock | None = None,
        yield_buffer_bps: int = 2_000,
        min_rebalance_interval: int = 3600,
        management_fee_bps: int = 25,
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
        if not base_asset:
            raise ValidationError("base_asset is required")
        if not 0 <= yield_buffer_bps < BPS:
            raise ValidationError(f"yield buffer {yield_buffer_bps} outside [0, {BPS})")

        self._exchange = exchange
        self._base_asset = base_asset
        self._yield_buffer_bps = yield_buffer_bps
        self._token_balance = 0
        # Every allocated bps is taken from the buffer, not from capital.
        self._yield = YieldBook(strategy_id)

    @property
    def token_balance(self) -> int:
        return self._token_balance

    @property
    def yield_buffer_bps(self) -> int:
        return self._yield_buffer_bps

    def get_yield_allocations(self) -> list[YieldAllocation]:
        return self._yield.entries

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

    def set_yield_buffer(self, buffer_bps: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "change the yield buffer")
        if not 0 <= buffer_bps < BPS:
            raise ValidationError(f"yield buffer {buffer_bps} outside [0, {BPS})")
        before = self._yield_buffer_bps
        self._yield_buffer_bps = buffer_bps
        self._emit("YieldBufferUpdated", before=before, after=buffer_bps)

    # ------------------------------------------------------------------
    # Spot helpers
    # ------------------------------------------------------------------

    def _buy(self, amount: int) -> int:
        quoted = self._exchange.get_amounts_out(amount, self._base_asset, self._underlying_asset)
        if quoted <= 0:
            raise VenueUnavailableError(
                f"no liquidity for {amount} {self._base_asset}", code="insufficient_liquidity"
            )
        min_out = calc.apply_slippage(quoted, self._risk.slippage_limit)
        return self._exchange.swap_exact_tokens_for_tokens(
            amount, min_out, self._base_asset, self._underlying_asset
        )

    def _sell(self, tokens: int, min_out: int | None = None) -> int:
        if min_out is None:
            quoted = self._exchange.get_amounts_out(tokens, self._underlying_asset, self._base_asset)
            min_out = calc.apply_slippage(quoted, self._risk.slippage_limit)
        return self._exchange.swap_exact_tokens_for_tokens(
            tokens, min_out, self._underlying_asset, self._base_asset
        )

    def get_market_value(self) -> int:
        """Token holdings valued at the oracle price, in base asset units."""
        if self._token_balance == 0:
            return 0
        return self._token_balance * self._price() // PRICE_PRECISION

    # ------------------------------------------------------------------
    # Exposure hooks
    # ------------------------------------------------------------------

    def _open(self, amount: int) -> int:
        self._price()
        buffer = amount * self._yield_buffer_bps // BPS
        spend = amount - buffer
        self._check_position_size(spend)

        receipts = self._yield.deposit_all(buffer) if buffer else []
        undeposited = buffer - sum(r.amount for r in receipts)
        try:
            tokens = self._buy(spend)
        except Exception:
            self._yield.revert(receipts)
            raise

        self._token_balance += tokens
        self._total_exposure += spend
        self._total_collateral += spend
        self._idle_balance += undeposited
        self._emit("TokensPurchased", spent=spend, tokens=tokens, buffer=buffer - undeposited)
        return spend

    def _close(self, amount: int) -> tuple[int, int]:
        total = self._total_exposure
        tokens = self._token_balance if amount == total else self._token_balance * amount // total
        if tokens == 0 and self._token_balance:
            raise ValidationError(
                f"close of {amount} is smaller than one token of {total} exposure",
                code="below_token_unit",
            )
        proceeds = self._sell(tokens) if tokens else 0

        self._token_balance -= tokens
        self._total_exposure -= amount
        self._total_collateral -= amount
        self._emit("TokensSold", tokens=tokens, proceeds=proceeds)
        return amount, proceeds + self._yield.withdraw_fraction(amount, total)

    def _unwind_all(self) -> int:
        recovered = 0
        if self._token_balance:
            # No slippage floor: getting out matters more than the price.
            ok, proceeds = self._attempt("sell tokens", self._sell, self._token_balance, 0)
            if ok:
                self._emit("TokensSold", tokens=self._token_balance, proceeds=proceeds)
                self._token_balance = 0
                self._total_exposure = 0
                self._total_collateral = 0
                recovered += proceeds
            else:
                self._emit("TokenUnwindFailed", tokens=self._token_balance)
        elif self._total_exposure:
            self._total_exposure = 0
            self._total_collateral = 0
        return recovered + self._yield.withdraw_fraction(1, 1)

    def _harvest(self) -> int:
        return self._yield.harvest()

    def _can_handle(self, amount: int) -> bool:
        spend = amount - amount * self._yield_buffer_bps // BPS
        self._check_position_size(spend)
        self._price()
        return self._exchange.get_amounts_out(spend, self._base_asset, self._underlying_asset) > 0

    # ------------------------------------------------------------------
    # Cost / risk views
    # ------------------------------------------------------------------

    def _round_trip_slippage(self, amount: int) -> int:
        tokens = self._exchange.get_amounts_out(amount, self._base_asset, self._underlying_asset)
        back = self._exchange.get_amounts_out(tokens, self._underlying_asset, self._base_asset)
        return max(amount - back, 0) * BPS // amount

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None:
        self._require_positive(amount)
        try:
            slippage = self._round_trip_slippage(amount)
        except ExposureError as e:
            logger.debug("%s cannot price a round trip: %s", self._strategy_id, e)
            return None
        return (
            calc.annualize_bps(self._management_fee_bps, time_horizon)
            + slippage
            + self._gas_cost_bps
        )

    def get_cost_breakdown(self) -> CostBreakdown:
        slippage = 0
        if self._total_exposure:
            try:
                slippage = self._round_trip_slippage(self._total_exposure)
            except ExposureError as e:
                logger.debug("%s cannot price a round trip: %s", self._strategy_id, e)
        return CostBreakdown.build(
            management_fee=self._management_fee_bps,
            slippage_cost=slippage,
            gas_cost=self._gas_cost_bps,
            last_updated=self._now(),
        )

    def get_exposure_info(self) -> ExposureInfo:
        leverage = LEVERAGE_UNIT if self._total_exposure else 0
        return ExposureInfo(
            strategy_type=self.strategy_type,
            name=self._strategy_id,
            underlying_asset=self._underlying_asset,
            leverage=leverage,
            collateral_ratio=BPS if self._total_exposure else 0,
            current_exposure=self._total_exposure,
            max_capacity=self._risk.max_position_size,
            current_cost=self.get_cost_breakdown().total_cost_bps,
            risk_score=calc.risk_score(leverage, self._risk.max_leverage),
            is_active=self._status is StrategyStatus.ACTIVE,
            liquidation_price=0,
        )

    def get_yield_value(self) -> int:
        return self._yield.total_value()
