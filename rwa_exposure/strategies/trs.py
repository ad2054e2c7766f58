"""Total-return-swap exposure strategy.

Capital is posted as collateral on swap contracts written by a registry of
counterparties. Each ``open_exposure`` call creates one contract sized at
``capital * target_leverage``; the counterparty is chosen by
``_select_best_quote``, which trades credit quality against borrow cost and
refuses quotes that would concentrate the book on one name.
"""
from __future__ import annotations

import logging

from ..errors import (
    CapacityError,
    ExposureError,
    TimingError,
    ValidationError,
    VenueUnavailableError,
)
from ..guards import non_reentrant, require_owner
from ..interfaces.price_oracle import PriceOracle
from ..interfaces.swap_provider import SwapProvider
from ..models import (
    BPS,
    LEVERAGE_UNIT,
    ContractStatus,
    CostBreakdown,
    CounterpartyAllocation,
    ExposureInfo,
    Quote,
    RiskParameters,
    StrategyStatus,
    StrategyType,
    TRSContractInfo,
)
from . import calc
from .base import BaseExposureStrategy, Clock

logger = logging.getLogger(__name__)

DEFAULT_MATURITY = 90 * 24 * 60 * 60


class TRSExposureStrategy(BaseExposureStrategy):
    """Synthetic exposure through total-return-swap contracts."""

    strategy_type = StrategyType.TRS

    def __init__(
        self,
        strategy_id: str,
        *,
        owner: str,
        underlying_asset: str,
        oracle: PriceOracle,
        swap_provider: SwapProvider,
        risk_parameters: RiskParameters | None = None,
        clock: Clock | None = None,
        target_leverage: int = 200,
        contract_maturity: int = DEFAULT_MATURITY,
        concentration_limit: int = 6_000,
        max_counterparties: int = 10,
        min_rebalance_interval: int = 3600,
        management_fee_bps: int = 50,
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
        self._check_target_leverage(target_leverage, self._risk)
        if not 0 < concentration_limit <= BPS:
            raise ValidationError(f"concentration_limit {concentration_limit} outside (0, {BPS}]")
        if contract_maturity <= 0:
            raise ValidationError("contract_maturity must be positive")

        self._provider = swap_provider
        self._target_leverage = target_leverage
        self._contract_maturity = contract_maturity
        self._concentration_limit = concentration_limit
        self._max_counterparties = max_counterparties

        self._counterparties: dict[str, CounterpartyAllocation] = {}
        self._contracts: dict[str, TRSContractInfo] = {}
        self._active_contract_ids: list[str] = []
        self._last_opened_id: str | None = None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def target_leverage(self) -> int:
        return self._target_leverage

    @property
    def concentration_limit(self) -> int:
        return self._concentration_limit

    def get_counterparty(self, counterparty: str) -> CounterpartyAllocation:
        try:
            return self._counterparties[counterparty]
        except KeyError:
            raise ValidationError(
                f"unknown counterparty {counterparty}", code="unknown_counterparty"
            ) from None

    def get_counterparties(self) -> list[CounterpartyAllocation]:
        return list(self._counterparties.values())

    def get_contract(self, contract_id: str) -> TRSContractInfo:
        try:
            return self._contracts[contract_id]
        except KeyError:
            raise ValidationError(
                f"unknown contract {contract_id}", code="unknown_contract"
            ) from None

    def get_active_contracts(self) -> list[TRSContractInfo]:
        return [self._contracts[cid] for cid in self._active_contract_ids]

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @staticmethod
    def _check_target_leverage(leverage: int, params: RiskParameters) -> None:
        if leverage < LEVERAGE_UNIT:
            raise ValidationError(f"target leverage {leverage} below 1x")
        if leverage > params.max_leverage:
            raise CapacityError(
                f"target leverage {leverage} exceeds max {params.max_leverage}",
                code="leverage_too_high",
            )

    def add_counterparty(
        self,
        counterparty: str,
        target_allocation: int,
        max_exposure: int,
        *,
        caller: str,
    ) -> None:
        require_owner(self._owner, caller, "add counterparties")
        if not counterparty:
            raise ValidationError("counterparty is required", code="zero_address")
        if counterparty in self._counterparties:
            raise ValidationError(
                f"counterparty {counterparty} already added", code="duplicate_counterparty"
            )
        if not 0 < target_allocation <= BPS:
            raise ValidationError(f"target allocation {target_allocation} outside (0, {BPS}]")
        if max_exposure <= 0:
            raise ValidationError("max_exposure must be positive", code="zero_amount")
        if len(self._counterparties) >= self._max_counterparties:
            raise CapacityError(
                f"already at {self._max_counterparties} counterparties",
                code="too_many_counterparties",
            )
        total_target = sum(c.target_allocation for c in self._counterparties.values())
        if total_target + target_allocation > BPS:
            raise ValidationError(
                f"target allocations would sum to {total_target + target_allocation} bps",
                code="allocation_overflow",
            )
        # Fails loudly when the registry does not know the name.
        self._provider.get_counterparty_info(counterparty)

        self._counterparties[counterparty] = CounterpartyAllocation(
            counterparty=counterparty,
            target_allocation=target_allocation,
            max_exposure=max_exposure,
        )
        self._emit(
            "CounterpartyAdded",
            counterparty=counterparty,
            target_allocation=target_allocation,
            max_exposure=max_exposure,
        )

    def remove_counterparty(self, counterparty: str, *, caller: str) -> None:
        require_owner(self._owner, caller, "remove counterparties")
        alloc = self.get_counterparty(counterparty)
        if alloc.current_exposure != 0:
            raise CapacityError(
                f"counterparty {counterparty} still carries {alloc.current_exposure}",
                code="counterparty_has_exposure",
            )
        del self._counterparties[counterparty]
        self._emit("CounterpartyRemoved", counterparty=counterparty)

    def set_counterparty_active(self, counterparty: str, active: bool, *, caller: str) -> None:
        require_owner(self._owner, caller, "toggle counterparties")
        alloc = self.get_counterparty(counterparty)
        before = alloc.is_active
        alloc.is_active = active
        self._emit("CounterpartyStatusChanged", counterparty=counterparty, before=before, after=active)

    def set_concentration_limit(self, limit: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "change the concentration limit")
        if not 0 < limit <= BPS:
            raise ValidationError(f"concentration limit {limit} outside (0, {BPS}]")
        before = self._concentration_limit
        self._concentration_limit = limit
        self._emit("ConcentrationLimitUpdated", before=before, after=limit)

    def set_target_leverage(self, leverage: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "change target leverage")
        self._check_target_leverage(leverage, self._risk)
        before = self._target_leverage
        self._target_leverage = leverage
        self._emit("LeverageAdjusted", before=before, after=leverage)

    def update_risk_parameters(self, params: RiskParameters, *, caller: str) -> None:
        require_owner(self._owner, caller, "update risk parameters")
        params.validate()
        self._check_target_leverage(self._target_leverage, params)
        super().update_risk_parameters(params, caller=caller)

    # ------------------------------------------------------------------
    # Quote selection
    # ------------------------------------------------------------------

    def _request_quotes(self, notional: int) -> list[Quote]:
        return self._provider.request_quotes(
            self._underlying_asset,
            notional,
            self._now() + self._contract_maturity,
            self._target_leverage,
        )

    def _select_best_quote(self, quotes: list[Quote], notional: int) -> Quote:
        """Pick the highest-scoring eligible quote; first one wins a tie.

        Eligible means unexpired, from an allow-listed active counterparty,
        within that counterparty's cap and, once the book is non-empty, within
        the portfolio concentration limit.
        """
        if not quotes:
            raise VenueUnavailableError(
                f"no quotes for {notional} of {self._underlying_asset}", code="no_quotes"
            )

        now = self._now()
        best: Quote | None = None
        best_score = 0
        expired = 0
        over_capacity = 0

        for quote in quotes:
            if quote.valid_until < now:
                expired += 1
                continue

            alloc = self._counterparties.get(quote.counterparty)
            if alloc is None or not alloc.is_active:
                continue

            try:
                info = self._provider.get_counterparty_info(quote.counterparty)
            except ExposureError as e:
                logger.warning("Skipping %s: registry lookup failed: %s", quote.counterparty, e)
                continue
            if not info.is_active:
                continue

            cap = min(alloc.max_exposure, info.max_exposure)
            if quote.notional < notional or alloc.current_exposure + notional > cap:
                over_capacity += 1
                continue

            if self._total_exposure > 0:
                resulting = calc.concentration_bps(
                    alloc.current_exposure + notional, self._total_exposure + notional
                )
                if resulting > self._concentration_limit:
                    over_capacity += 1
                    continue

            current = calc.concentration_bps(alloc.current_exposure, self._total_exposure)
            score = calc.quote_score(info.credit_rating, quote.borrow_rate_bps, current)
            if best is None or score > best_score:
                best, best_score = quote, score

        if best is not None:
            return best
        if over_capacity:
            raise CapacityError(
                f"every eligible counterparty is at its cap or concentration limit "
                f"for {notional}",
                code="counterparty_limits",
            )
        if expired == len(quotes):
            raise TimingError("all quotes have expired", code="quote_expired")
        raise VenueUnavailableError(
            "no quote from an active allow-listed counterparty", code="no_eligible_counterparty"
        )

    # ------------------------------------------------------------------
    # Ledger maintenance (detail record + aggregates in one place)
    # ------------------------------------------------------------------

    def _record_contract(self, contract: TRSContractInfo) -> None:
        self._contracts[contract.contract_id] = contract
        self._active_contract_ids.append(contract.contract_id)
        self._counterparties[contract.counterparty].current_exposure += contract.notional_amount
        self._total_exposure += contract.notional_amount
        self._total_collateral += contract.collateral_amount

    def _retire_contract(self, contract: TRSContractInfo, status: ContractStatus) -> None:
        contract.status = status
        self._active_contract_ids.remove(contract.contract_id)
        alloc = self._counterparties.get(contract.counterparty)
        if alloc is not None:
            alloc.current_exposure -= contract.notional_amount
        self._total_exposure -= contract.notional_amount
        self._total_collateral -= contract.collateral_amount

    def _require_active_contract(self, contract_id: str) -> TRSContractInfo:
        contract = self.get_contract(contract_id)
        if contract.status is not ContractStatus.ACTIVE:
            raise ValidationError(
                f"contract {contract_id} is {contract.status.value}", code="contract_not_active"
            )
        return contract

    # ------------------------------------------------------------------
    # Exposure hooks
    # ------------------------------------------------------------------

    def _open(self, amount: int) -> int:
        notional = amount * self._target_leverage // LEVERAGE_UNIT
        self._check_position_size(notional)
        self._check_target_leverage(self._target_leverage, self._risk)

        quote = self._select_best_quote(self._request_quotes(notional), notional)
        required = self._provider.calculate_collateral_requirement(notional, quote.counterparty)
        if required > amount:
            raise CapacityError(
                f"{quote.counterparty} requires {required} collateral, only {amount} supplied",
                code="insufficient_collateral",
            )

        contract_id = self._provider.create_contract(quote.quote_id, amount)
        now = self._now()
        contract = TRSContractInfo(
            contract_id=contract_id,
            counterparty=quote.counterparty,
            notional_amount=notional,
            collateral_amount=amount,
            borrow_rate_bps=quote.borrow_rate_bps,
            creation_time=now,
            maturity_time=now + self._contract_maturity,
        )
        self._record_contract(contract)
        self._counterparties[quote.counterparty].last_quote_time = now
        self._last_opened_id = contract_id

        self._emit(
            "ContractCreated",
            contract_id=contract_id,
            counterparty=quote.counterparty,
            notional=notional,
            collateral=amount,
            borrow_rate_bps=quote.borrow_rate_bps,
        )
        return notional

    def _close(self, amount: int) -> tuple[int, int]:
        # Whole contracts only, smallest notional first; may overshoot ``amount``.
        ordered = sorted(self.get_active_contracts(), key=lambda c: c.notional_amount)
        closed = 0
        recovered = 0

        for contract in ordered:
            if closed >= amount:
                break
            recovered += self._terminate(contract)
            closed += contract.notional_amount

        if closed > amount:
            logger.info(
                "%s closed %d to cover a request for %d (overshoot %d)",
                self._strategy_id, closed, amount, closed - amount,
            )
        return closed, recovered

    def _terminate(self, contract: TRSContractInfo) -> int:
        final_value, returned = self._provider.terminate_contract(contract.contract_id)
        self._retire_contract(contract, ContractStatus.TERMINATED)
        self._emit(
            "ContractTerminated",
            contract_id=contract.contract_id,
            notional=contract.notional_amount,
            final_value=final_value,
            collateral_returned=returned,
        )
        return returned

    def _revert_open(self, exposure: int) -> tuple[int, int]:
        # Only the contract the last open created; the greedy close could hit older ones.
        contract = self._contracts.get(self._last_opened_id or "")
        if (
            contract is None
            or contract.status is not ContractStatus.ACTIVE
            or contract.notional_amount != exposure
        ):
            return super()._revert_open(exposure)

        before = self._total_exposure
        recovered = self._terminate(contract)
        self._last_opened_id = None
        if self._total_exposure == 0:
            recovered += self._sweep_idle()
            self._set_status(StrategyStatus.CLOSED)
        self._emit(
            "ExposureReverted",
            contract_id=contract.contract_id,
            recovered=recovered,
            before=before,
            after=self._total_exposure,
        )
        return exposure, recovered

    def _unwind_all(self) -> int:
        recovered = 0
        for contract in self.get_active_contracts():
            ok, result = self._attempt(
                f"terminate {contract.contract_id}",
                self._provider.terminate_contract,
                contract.contract_id,
            )
            if not ok:
                self._emit("ContractUnwindFailed", contract_id=contract.contract_id)
                continue
            final_value, returned = result
            self._retire_contract(contract, ContractStatus.TERMINATED)
            recovered += returned
            self._emit(
                "ContractTerminated",
                contract_id=contract.contract_id,
                notional=contract.notional_amount,
                final_value=final_value,
                collateral_returned=returned,
            )
        return recovered

    def _harvest(self) -> int:
        # Swaps carry no harvestable yield; only refresh valuations.
        for contract in self.get_active_contracts():
            ok, value = self._attempt(
                f"mark {contract.contract_id}",
                self._provider.mark_to_market,
                contract.contract_id,
            )
            if ok:
                logger.debug("%s marked at %d", contract.contract_id, value)
        return 0

    def _can_handle(self, amount: int) -> bool:
        notional = amount * self._target_leverage // LEVERAGE_UNIT
        self._check_position_size(notional)
        quote = self._select_best_quote(self._request_quotes(notional), notional)
        required = self._provider.calculate_collateral_requirement(notional, quote.counterparty)
        return required <= amount

    # ------------------------------------------------------------------
    # Settlement / collateral
    # ------------------------------------------------------------------

    @non_reentrant
    def settle_contract(self, contract_id: str) -> int:
        contract = self._require_active_contract(contract_id)
        if self._now() < contract.maturity_time:
            raise TimingError(
                f"contract {contract_id} matures at {contract.maturity_time}",
                code="not_matured",
            )
        return self._settle(contract)

    def _settle(self, contract: TRSContractInfo) -> int:
        proceeds = self._provider.settle_contract(contract.contract_id)
        self._retire_contract(contract, ContractStatus.SETTLED)
        self._idle_balance += proceeds
        self._emit(
            "ContractSettled",
            contract_id=contract.contract_id,
            notional=contract.notional_amount,
            proceeds=proceeds,
        )
        if self._total_exposure == 0 and self._status is StrategyStatus.ACTIVE:
            self._set_status(StrategyStatus.CLOSED)
        return proceeds

    @non_reentrant
    def settle_matured_contracts(self) -> int:
        return self._settle_matured()

    def _settle_matured(self) -> int:
        now = self._now()
        total = 0
        for contract in self.get_active_contracts():
            if contract.maturity_time > now:
                continue
            ok, proceeds = self._attempt(f"settle {contract.contract_id}", self._settle, contract)
            if ok:
                total += proceeds
        return total

    @non_reentrant
    def rebalance(self) -> int:
        """Settle matured contracts and roll the proceeds into fresh ones."""
        self._check_rebalance_cooldown()
        self._settle_matured()
        rolled = 0
        if self._idle_balance > 0:
            amount = self._idle_balance
            try:
                self._open(amount)
            except ExposureError as e:
                logger.warning("%s could not roll %d: %s", self._strategy_id, amount, e)
            else:
                self._idle_balance = 0
                self._set_status(StrategyStatus.ACTIVE)
                rolled = amount
        self._mark_rebalanced()
        self._emit("Rebalanced", rolled=rolled, exposure=self._total_exposure)
        return rolled

    def post_collateral(self, contract_id: str, amount: int, *, caller: str) -> None:
        require_owner(self._owner, caller, "post collateral")
        self._require_positive(amount)
        contract = self._require_active_contract(contract_id)
        self._provider.post_collateral(contract_id, amount)
        before = contract.collateral_amount
        contract.collateral_amount += amount
        self._total_collateral += amount
        self._emit(
            "CollateralPosted",
            contract_id=contract_id,
            before=before,
            after=contract.collateral_amount,
        )

    def withdraw_collateral(self, contract_id: str, amount: int, *, caller: str) -> int:
        require_owner(self._owner, caller, "withdraw collateral")
        self._require_positive(amount)
        contract = self._require_active_contract(contract_id)
        if amount > contract.collateral_amount:
            raise ValidationError(
                f"cannot withdraw {amount}, contract holds {contract.collateral_amount}",
                code="exceeds_collateral",
            )
        required = self._provider.calculate_collateral_requirement(
            contract.notional_amount, contract.counterparty
        )
        if contract.collateral_amount - amount < required:
            raise CapacityError(
                f"withdrawal leaves {contract.collateral_amount - amount}, "
                f"requirement is {required}",
                code="below_collateral_requirement",
            )
        self._provider.withdraw_collateral(contract_id, amount)
        before = contract.collateral_amount
        contract.collateral_amount -= amount
        self._total_collateral -= amount
        self._emit(
            "CollateralWithdrawn",
            contract_id=contract_id,
            before=before,
            after=contract.collateral_amount,
        )
        return amount

    # ------------------------------------------------------------------
    # Cost / risk views
    # ------------------------------------------------------------------

    def estimate_exposure_cost(self, amount: int, time_horizon: int) -> int | None:
        """Carry cost in bps of ``amount`` over ``time_horizon``; ``None`` without quotes."""
        self._require_positive(amount)
        notional = amount * self._target_leverage // LEVERAGE_UNIT
        try:
            quotes = self._request_quotes(notional)
        except ExposureError as e:
            logger.debug("%s quote request failed: %s", self._strategy_id, e)
            return None

        now = self._now()
        rates = [
            q.borrow_rate_bps
            for q in quotes
            if q.valid_until >= now
            and q.counterparty in self._counterparties
            and self._counterparties[q.counterparty].is_active
        ]
        if not rates:
            return None
        borrow = min(rates) * self._target_leverage // LEVERAGE_UNIT
        return calc.annualize_bps(borrow + self._management_fee_bps, time_horizon) + self._gas_cost_bps

    def _weighted_borrow_rate(self) -> int:
        active = self.get_active_contracts()
        notional = sum(c.notional_amount for c in active)
        if notional == 0:
            return 0
        return sum(c.borrow_rate_bps * c.notional_amount for c in active) // notional

    def get_cost_breakdown(self) -> CostBreakdown:
        return CostBreakdown.build(
            borrow_rate=self._weighted_borrow_rate(),
            management_fee=self._management_fee_bps,
            gas_cost=self._gas_cost_bps,
            last_updated=self._now(),
        )

    def _max_concentration(self) -> int:
        if not self._counterparties:
            return 0
        return max(
            calc.concentration_bps(c.current_exposure, self._total_exposure)
            for c in self._counterparties.values()
        )

    def get_exposure_info(self) -> ExposureInfo:
        leverage = calc.leverage_of(self._total_exposure, self._total_collateral)
        liquidation = 0
        if self._total_exposure > 0:
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
            risk_score=calc.risk_score(leverage, self._risk.max_leverage, self._max_concentration()),
            is_active=self._status is StrategyStatus.ACTIVE,
            liquidation_price=liquidation,
        )
