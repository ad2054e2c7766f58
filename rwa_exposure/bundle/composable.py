"""Composable RWA bundle — allocates capital across exposure and yield strategies.

The bundle tracks capital (base asset), not notional: ``current_allocation``
on each ``StrategyAllocation`` is the capital handed to that strategy. Notional
exposure is always read back from the strategy itself.

Calls into strategies are sequential in list order (or instruction priority
order); nothing here runs concurrently.
"""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from ..errors import CapacityError, CircuitBreakerError, TimingError, ValidationError
from ..events import EventLog
from ..guards import non_reentrant, require_owner
from ..interfaces.exposure_strategy import ExposureStrategy
from ..interfaces.yield_strategy import YieldStrategy
from ..models import (
    BPS,
    LEVERAGE_UNIT,
    BundleRiskParameters,
    BundleStats,
    ExitReport,
    InstructionOutcome,
    PerformanceMetrics,
    RebalanceInstruction,
    RebalanceReport,
    StrategyAllocation,
    YieldStrategyBundle,
)
from ..optimizer import StrategyOptimizer
from ..strategies.base import Clock, system_clock

logger = logging.getLogger(__name__)


class ComposableRWABundle:
    """Orchestrates exposure strategies, a yield sub-bundle and bundle-wide limits."""

    def __init__(
        self,
        bundle_id: str,
        *,
        owner: str,
        optimizer: StrategyOptimizer,
        risk_parameters: BundleRiskParameters | None = None,
        clock: Clock | None = None,
        min_rebalance_interval: int = 3600,
        time_horizon: int | None = None,
    ) -> None:
        if not bundle_id:
            raise ValidationError("bundle_id is required")
        if not owner:
            raise ValidationError("owner is required")
        params = risk_parameters or BundleRiskParameters()
        params.validate()

        self._bundle_id = bundle_id
        self._owner = owner
        self._optimizer = optimizer
        self._risk = params
        self._clock = clock or system_clock
        self._min_rebalance_interval = min_rebalance_interval
        self._time_horizon = time_horizon

        self._allocations: list[StrategyAllocation] = []
        self._yield_bundle = YieldStrategyBundle()
        self._idle_capital = 0
        self._last_rebalance = 0
        self._circuit_breaker_reason = ""
        self._entered = False

        self.performance = PerformanceMetrics()
        self.events = EventLog(bundle_id)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._bundle_id

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def risk_parameters(self) -> BundleRiskParameters:
        return self._risk

    @property
    def circuit_breaker_active(self) -> bool:
        return self._risk.circuit_breaker_active

    @property
    def circuit_breaker_reason(self) -> str:
        return self._circuit_breaker_reason

    @property
    def idle_capital(self) -> int:
        return self._idle_capital

    @property
    def strategies(self) -> list[ExposureStrategy]:
        return [a.strategy for a in self._allocations]

    def get_exposure_strategies(self) -> list[StrategyAllocation]:
        return [replace(a) for a in self._allocations]

    def get_yield_bundle(self) -> YieldStrategyBundle:
        y = self._yield_bundle
        return YieldStrategyBundle(
            strategies=list(y.strategies),
            allocations=list(y.allocations),
            deposits=list(y.deposits),
            shares=list(y.shares),
            max_leverage_ratio=y.max_leverage_ratio,
            is_active=y.is_active,
        )

    def get_allocation(self, strategy_id: str) -> StrategyAllocation:
        for alloc in self._allocations:
            if alloc.strategy_id == strategy_id:
                return alloc
        raise ValidationError(f"unknown strategy {strategy_id}", code="unknown_strategy")

    @property
    def deployed_capital(self) -> int:
        return sum(a.current_allocation for a in self._allocations)

    def _capital_base(self) -> int:
        return self.deployed_capital + self._yield_bundle.total_deposited + self._idle_capital

    def _yield_value(self) -> int:
        y = self._yield_bundle
        value = 0
        for strategy, deposit, shares in zip(y.strategies, y.deposits, y.shares):
            if not shares:
                continue
            try:
                value += strategy.get_total_value()
            except Exception as e:
                logger.debug("Cannot value yield strategy %s: %s", strategy.name, e)
                value += deposit
        return value

    def total_exposure(self) -> int:
        return sum(a.strategy.total_exposure_amount for a in self._allocations)

    def get_bundle_stats(self) -> BundleStats:
        total_value = self.deployed_capital + self._yield_value() + self._idle_capital
        exposure = self.total_exposure()
        leverage = exposure * LEVERAGE_UNIT // total_value if total_value else 0
        efficiency = self.deployed_capital * BPS // total_value if total_value else 0
        healthy = (
            not self._risk.circuit_breaker_active
            and leverage <= self._risk.max_total_leverage
            and (total_value == 0 or efficiency >= self._risk.min_capital_efficiency)
        )
        return BundleStats(
            total_value=total_value,
            total_exposure=exposure,
            current_leverage=leverage,
            capital_efficiency=efficiency,
            is_healthy=healthy,
        )

    def get_performance(self) -> PerformanceMetrics:
        """Counters with ``total_return`` = value + withdrawn - allocated, as of now."""
        perf = self.performance
        perf.total_return = (
            self.get_bundle_stats().total_value + perf.total_withdrawn - perf.total_allocated
        )
        return replace(perf)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _now(self) -> int:
        return self._clock()

    def _emit(self, name: str, **fields: Any) -> None:
        self.events.emit(name, self._now(), **fields)

    @staticmethod
    def _require_positive(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
            raise ValidationError("amount must be a positive integer", code="zero_amount")

    def _check_targets(self, targets: Sequence[int], allocations: Sequence[StrategyAllocation]) -> None:
        for alloc, target in zip(allocations, targets):
            if not alloc.min_allocation <= target <= alloc.max_allocation:
                raise ValidationError(
                    f"target {target} for {alloc.strategy_id} outside "
                    f"[{alloc.min_allocation}, {alloc.max_allocation}]",
                    code="target_out_of_bounds",
                )
        total = sum(targets)
        if total > BPS:
            raise ValidationError(
                f"target allocations sum to {total} bps", code="allocation_overflow"
            )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_exposure_strategy(
        self,
        strategy: ExposureStrategy,
        target_allocation: int,
        *,
        caller: str,
        max_allocation: int = BPS,
        min_allocation: int = 0,
        is_primary: bool = False,
    ) -> None:
        require_owner(self._owner, caller, "add exposure strategies")
        if strategy is None:
            raise ValidationError("strategy is required", code="zero_address")
        if any(a.strategy_id == strategy.strategy_id for a in self._allocations):
            raise ValidationError(
                f"strategy {strategy.strategy_id} already added", code="duplicate_strategy"
            )
        if not 0 <= min_allocation <= max_allocation <= BPS:
            raise ValidationError(
                f"allocation bounds [{min_allocation}, {max_allocation}] invalid"
            )
        if len(self._allocations) >= self._risk.max_strategy_count:
            raise CapacityError(
                f"bundle already holds {self._risk.max_strategy_count} strategies",
                code="too_many_strategies",
            )
        alloc = StrategyAllocation(
            strategy=strategy,
            target_allocation=target_allocation,
            max_allocation=max_allocation,
            min_allocation=min_allocation,
            is_primary=is_primary,
        )
        targets = [a.target_allocation for a in self._allocations] + [target_allocation]
        self._check_targets(targets, self._allocations + [alloc])

        self._allocations.append(alloc)
        self._emit(
            "StrategyAdded",
            strategy=strategy.strategy_id,
            target_allocation=target_allocation,
            is_primary=is_primary,
        )

    def remove_exposure_strategy(self, strategy_id: str, *, caller: str) -> None:
        require_owner(self._owner, caller, "remove exposure strategies")
        alloc = self.get_allocation(strategy_id)
        if alloc.current_allocation or alloc.strategy.total_exposure_amount:
            raise CapacityError(
                f"strategy {strategy_id} still holds capital or exposure",
                code="strategy_has_capital",
            )
        self._allocations.remove(alloc)
        self._emit("StrategyRemoved", strategy=strategy_id)

    def set_strategy_active(self, strategy_id: str, active: bool, *, caller: str) -> None:
        require_owner(self._owner, caller, "toggle exposure strategies")
        alloc = self.get_allocation(strategy_id)
        before = alloc.is_active
        alloc.is_active = active
        self._emit("StrategyStatusChanged", strategy=strategy_id, before=before, after=active)

    def update_target_allocations(self, targets: Sequence[int], *, caller: str) -> None:
        """Replace every target at once; ``targets`` follows strategy order."""
        require_owner(self._owner, caller, "update target allocations")
        if len(targets) != len(self._allocations):
            raise ValidationError(
                f"{len(targets)} targets for {len(self._allocations)} strategies",
                code="length_mismatch",
            )
        self._check_targets(targets, self._allocations)
        before = [a.target_allocation for a in self._allocations]
        for alloc, target in zip(self._allocations, targets):
            alloc.target_allocation = target
        self._emit("TargetAllocationsUpdated", before=before, after=list(targets))

    def update_yield_bundle(
        self,
        strategies: Sequence[YieldStrategy],
        allocations: Sequence[int],
        *,
        caller: str,
        max_leverage_ratio: int | None = None,
    ) -> None:
        require_owner(self._owner, caller, "update the yield bundle")
        if len(strategies) != len(allocations):
            raise ValidationError(
                f"{len(strategies)} yield strategies for {len(allocations)} allocations",
                code="length_mismatch",
            )
        if any(a < 0 for a in allocations) or sum(allocations) > BPS:
            raise ValidationError(
                f"yield allocations {list(allocations)} must be non-negative and sum to <= {BPS}",
                code="allocation_overflow",
            )
        if any(self._yield_bundle.shares):
            raise CapacityError(
                "yield bundle still holds deposits", code="yield_bundle_not_empty"
            )
        ratio = self._yield_bundle.max_leverage_ratio if max_leverage_ratio is None else max_leverage_ratio
        before = [s.name for s in self._yield_bundle.strategies]
        self._yield_bundle = YieldStrategyBundle(
            strategies=list(strategies),
            allocations=list(allocations),
            deposits=[0] * len(strategies),
            shares=[0] * len(strategies),
            max_leverage_ratio=ratio,
            is_active=bool(strategies),
        )
        self._emit(
            "YieldBundleUpdated",
            before=before,
            after=[s.name for s in strategies],
            allocations=list(allocations),
        )

    def update_risk_parameters(self, params: BundleRiskParameters, *, caller: str) -> None:
        require_owner(self._owner, caller, "update bundle risk parameters")
        params.validate()
        if len(self._allocations) > params.max_strategy_count:
            raise CapacityError(
                f"bundle holds {len(self._allocations)} strategies, limit would be "
                f"{params.max_strategy_count}",
                code="too_many_strategies",
            )
        old = self._risk
        self._risk = params
        self._emit("RiskParametersUpdated", old=old, new=params)

    def set_circuit_breaker(self, active: bool, reason: str = "", *, caller: str) -> None:
        require_owner(self._owner, caller, "toggle the circuit breaker")
        self._set_circuit_breaker(active, reason)

    def _set_circuit_breaker(self, active: bool, reason: str) -> None:
        before = self._risk.circuit_breaker_active
        self._risk = replace(self._risk, circuit_breaker_active=active)
        self._circuit_breaker_reason = reason if active else ""
        self._emit("CircuitBreakerToggled", before=before, after=active, reason=reason)
        if active:
            logger.warning("%s circuit breaker tripped: %s", self._bundle_id, reason or "manual")
        else:
            logger.info("%s circuit breaker cleared", self._bundle_id)

    # ------------------------------------------------------------------
    # Yield sub-bundle
    # ------------------------------------------------------------------

    def _deposit_yield(self, amount: int) -> int:
        """Spread ``amount`` over the yield bundle; returns what was deposited."""
        y = self._yield_bundle
        total_alloc = sum(y.allocations)
        if amount <= 0 or not y.is_active or total_alloc == 0:
            return 0
        parts = [amount * a // total_alloc for a in y.allocations]
        parts[parts.index(max(parts))] += amount - sum(parts)

        deposited = 0
        for i, (strategy, part) in enumerate(zip(y.strategies, parts)):
            if part <= 0:
                continue
            try:
                shares = strategy.deposit(part)
            except Exception as e:
                logger.warning("Yield deposit of %d into %s failed: %s", part, strategy.name, e)
                continue
            y.deposits[i] += part
            y.shares[i] += shares
            deposited += part
        return deposited

    def _withdraw_yield(self, part: int, total: int) -> tuple[int, dict[str, str]]:
        y = self._yield_bundle
        recovered = 0
        failures: dict[str, str] = {}
        for i, strategy in enumerate(y.strategies):
            if not y.shares[i] or total <= 0:
                continue
            if part >= total:
                shares, principal = y.shares[i], y.deposits[i]
            else:
                shares = y.shares[i] * part // total
                principal = y.deposits[i] * part // total
            if not shares:
                continue
            try:
                amount = strategy.withdraw(shares)
            except Exception as e:
                logger.warning("Yield withdrawal from %s failed: %s", strategy.name, e)
                failures[strategy.name] = str(e)
                continue
            y.shares[i] -= shares
            y.deposits[i] -= principal
            recovered += amount
        return recovered, failures

    # ------------------------------------------------------------------
    # Capital flows
    # ------------------------------------------------------------------

    @non_reentrant
    def allocate_capital(self, amount: int) -> dict[str, int]:
        """Deploy ``amount`` by target allocation; return notional opened per strategy.

        All-or-nothing for the exposure strategies: if one open fails, the
        opens already made are closed again and the error propagates.
        """
        self._require_positive(amount)
        if self._risk.circuit_breaker_active:
            raise CircuitBreakerError(
                f"{self._bundle_id}: circuit breaker active"
                + (f" ({self._circuit_breaker_reason})" if self._circuit_breaker_reason else "")
            )

        plan = [
            (alloc, amount * alloc.target_allocation // BPS)
            for alloc in self._allocations
            if alloc.is_active and alloc.target_allocation > 0
        ]
        plan = [(alloc, share) for alloc, share in plan if share > 0]
        for alloc, share in plan:
            if not alloc.strategy.can_handle_exposure(share):
                raise CapacityError(
                    f"{alloc.strategy_id} cannot take {share}", code="strategy_cannot_handle"
                )

        opened: list[tuple[StrategyAllocation, int, int]] = []
        try:
            for alloc, share in plan:
                _, actual = alloc.strategy.open_exposure(share)
                alloc.current_allocation += share
                opened.append((alloc, share, actual))
            self._check_leverage(amount - sum(share for _, share, _ in opened))
        except Exception:
            self._compensate(opened)
            raise

        remainder = amount - sum(share for _, share, _ in opened)
        deposited = self._deposit_yield(remainder)
        self._idle_capital += remainder - deposited

        self.performance.total_allocated += amount
        result = {alloc.strategy_id: actual for alloc, _, actual in opened}
        self._emit(
            "CapitalAllocated",
            amount=amount,
            exposures=result,
            yield_deposited=deposited,
            idle=remainder - deposited,
        )
        return result

    def _check_leverage(self, pending: int) -> None:
        value = self._capital_base() + pending
        leverage = self.total_exposure() * LEVERAGE_UNIT // value if value else 0
        if leverage > self._risk.max_total_leverage:
            raise CapacityError(
                f"bundle leverage {leverage} would exceed {self._risk.max_total_leverage}",
                code="bundle_leverage_too_high",
            )

    def _compensate(self, opened: list[tuple[StrategyAllocation, int, int]]) -> None:
        for alloc, share, actual in reversed(opened):
            try:
                _, recovered = alloc.strategy.revert_open(actual)
            except Exception as e:
                # Capital stays booked against the strategy that still holds it.
                logger.error(
                    "Compensation failed: could not revert %d on %s: %s",
                    actual, alloc.strategy_id, e,
                )
                continue
            alloc.current_allocation -= share
            if recovered > share:
                self._idle_capital += recovered - share
            elif recovered < share:
                logger.warning(
                    "Reverting %s returned %d of %d", alloc.strategy_id, recovered, share
                )

    @non_reentrant
    def withdraw_capital(self, amount: int) -> int:
        """Unwind ``amount`` of capital pro rata; never blocked by the circuit breaker.

        Strategies that fail to unwind are skipped; the return value is what
        was actually recovered.
        """
        self._require_positive(amount)
        base = self._capital_base()
        if amount > base:
            raise ValidationError(
                f"withdrawal {amount} exceeds capital {base}", code="exceeds_capital"
            )

        recovered = 0
        for alloc in self._allocations:
            if not alloc.current_allocation:
                continue
            strategy = alloc.strategy
            exposure = strategy.total_exposure_amount
            close = exposure if amount == base else exposure * amount // base
            capital_part = (
                alloc.current_allocation if amount == base
                else alloc.current_allocation * amount // base
            )
            try:
                got = strategy.close_exposure(close)[1] if close else 0
            except Exception as e:
                logger.error("Withdrawal from %s failed: %s", alloc.strategy_id, e)
                continue
            alloc.current_allocation -= capital_part
            recovered += got

        from_yield, _ = self._withdraw_yield(amount, base)
        idle_part = self._idle_capital if amount == base else self._idle_capital * amount // base
        self._idle_capital -= idle_part
        recovered += from_yield + idle_part

        self.performance.total_withdrawn += recovered
        self._emit("CapitalWithdrawn", requested=amount, recovered=recovered)
        return recovered

    # ------------------------------------------------------------------
    # Optimization / rebalancing
    # ------------------------------------------------------------------

    def _active_strategies(self) -> list[ExposureStrategy]:
        return [a.strategy for a in self._allocations if a.is_active]

    def optimize_strategies(self, target_exposure: int | None = None) -> dict[str, int]:
        """Adopt the optimizer's allocations as targets, clamped to each min/max."""
        target = self.deployed_capital if target_exposure is None else target_exposure
        self._require_positive(target)
        scores = self._optimizer.analyze_strategies(
            self._active_strategies(), target, self._time_horizon
        )
        recommended = {s.strategy_id: s.allocation_bps for s in scores}
        targets = [
            min(max(recommended.get(a.strategy_id, 0), a.min_allocation), a.max_allocation)
            if a.is_active else a.target_allocation
            for a in self._allocations
        ]
        if sum(targets) > BPS:
            logger.warning(
                "Clamped targets sum to %d bps, keeping current targets", sum(targets)
            )
            return {a.strategy_id: a.target_allocation for a in self._allocations}

        before = [a.target_allocation for a in self._allocations]
        for alloc, new_target in zip(self._allocations, targets):
            alloc.target_allocation = new_target
        self._emit("TargetAllocationsUpdated", before=before, after=targets)
        return {a.strategy_id: a.target_allocation for a in self._allocations}

    @non_reentrant
    def rebalance_strategies(self) -> RebalanceReport:
        now = self._now()
        if self._last_rebalance and now - self._last_rebalance < self._min_rebalance_interval:
            raise TimingError(
                f"{self._bundle_id}: rebalance cooldown active for "
                f"{self._min_rebalance_interval - (now - self._last_rebalance)}s more",
                code="rebalance_too_soon",
            )
        if self._risk.circuit_breaker_active:
            raise CircuitBreakerError(f"{self._bundle_id}: circuit breaker active")

        current = {a.strategy_id: a.current_allocation for a in self._allocations if a.is_active}
        capital = sum(current.values())
        if capital == 0:
            return RebalanceReport(executed=0, failed=0, skipped_reason="nothing_allocated")

        result = self._optimizer.calculate_optimal_allocation(
            self._active_strategies(), current, capital, self._time_horizon
        )
        if not result.should_rebalance:
            logger.info(
                "%s rebalance skipped: saving %d bps does not beat cost %d bps",
                self._bundle_id, result.expected_cost_saving, result.implementation_cost,
            )
            return RebalanceReport(executed=0, failed=0, skipped_reason="not_worth_it")

        outcomes = [
            self._execute(instruction)
            for instruction in sorted(result.instructions, key=lambda i: i.priority)
        ]
        executed = sum(1 for o in outcomes if o.success)
        failed = len(outcomes) - executed

        # implementation cost is quoted in bps of capital; charge the executed share
        planned = sum(o.instruction.amount for o in outcomes)
        moved = sum(o.instruction.amount for o in outcomes if o.success)
        fees = capital * result.implementation_cost * moved // (BPS * planned) if planned else 0

        self._last_rebalance = now
        self.performance.rebalance_count += 1
        self.performance.last_rebalance = now
        self.performance.total_fees += fees
        self._emit("Rebalanced", executed=executed, failed=failed, fees=fees)
        return RebalanceReport(executed=executed, failed=failed, outcomes=tuple(outcomes))

    def _execute(self, instruction: RebalanceInstruction) -> InstructionOutcome:
        closed = recovered = reopened = 0
        try:
            source = self.get_allocation(instruction.from_strategy)
            sink = self.get_allocation(instruction.to_strategy)
            move = min(instruction.amount, source.current_allocation)
            exposure = source.strategy.total_exposure_amount
            to_close = (
                exposure if move == source.current_allocation
                else exposure * move // source.current_allocation
            )
            if to_close:
                closed, recovered = source.strategy.close_exposure(to_close)
            source.current_allocation -= move

            floor = move * (BPS - instruction.max_slippage) // BPS
            if recovered < floor:
                logger.warning(
                    "%s -> %s recovered %d, below slippage floor %d",
                    instruction.from_strategy, instruction.to_strategy, recovered, floor,
                )
            self._idle_capital += recovered
            if recovered:
                _, reopened = sink.strategy.open_exposure(recovered)
                self._idle_capital -= recovered
                sink.current_allocation += recovered
        except Exception as e:
            logger.error(
                "Instruction %s -> %s (%d) failed: %s",
                instruction.from_strategy, instruction.to_strategy, instruction.amount, e,
            )
            culprit = instruction.to_strategy if closed else instruction.from_strategy
            self._optimizer.record_performance(culprit, False)
            return InstructionOutcome(
                instruction, False, closed=closed, recovered=recovered, reopened=reopened, error=str(e)
            )

        self._optimizer.record_performance(instruction.from_strategy, True)
        self._optimizer.record_performance(instruction.to_strategy, True)
        return InstructionOutcome(
            instruction, True, closed=closed, recovered=recovered, reopened=reopened
        )

    # ------------------------------------------------------------------
    # Harvest / emergency
    # ------------------------------------------------------------------

    @non_reentrant
    def harvest_yield(self) -> int:
        """Collect yield from every strategy and yield venue; failures are skipped."""
        total = 0
        for alloc in self._allocations:
            try:
                total += alloc.strategy.harvest_yield()
            except Exception as e:
                logger.warning("Harvest from %s failed: %s", alloc.strategy_id, e)
        for strategy in self._yield_bundle.strategies:
            try:
                total += strategy.harvest_yield()
            except Exception as e:
                logger.warning("Harvest from yield strategy %s failed: %s", strategy.name, e)

        self._idle_capital += total
        self.performance.yield_harvested += total
        self._emit("YieldHarvested", amount=total)
        return total

    @non_reentrant
    def emergency_exit_all(self, *, caller: str) -> ExitReport:
        """Unwind everything that will unwind and trip the circuit breaker."""
        require_owner(self._owner, caller, "trigger an emergency exit")
        recovered: dict[str, int] = {}
        failures: dict[str, str] = {}

        for alloc in self._allocations:
            try:
                got = alloc.strategy.emergency_exit()
            except Exception as e:
                logger.error("Emergency exit of %s failed: %s", alloc.strategy_id, e)
                failures[alloc.strategy_id] = str(e)
                continue
            recovered[alloc.strategy_id] = got
            if alloc.strategy.total_exposure_amount == 0:
                alloc.current_allocation = 0
            else:
                failures[alloc.strategy_id] = (
                    f"{alloc.strategy.total_exposure_amount} exposure stuck"
                )

        from_yield, yield_failures = self._withdraw_yield(1, 1)
        if from_yield:
            recovered["yield_bundle"] = from_yield
        failures.update(yield_failures)

        total = sum(recovered.values())
        self._idle_capital += total
        if not self._risk.circuit_breaker_active:
            self._set_circuit_breaker(True, "emergency exit")
        self._emit("EmergencyExitAll", recovered=total, failures=sorted(failures))
        logger.warning(
            "%s emergency exit recovered %d with %d failures", self._bundle_id, total, len(failures)
        )
        return ExitReport(total_recovered=total, recovered=recovered, failures=failures)
