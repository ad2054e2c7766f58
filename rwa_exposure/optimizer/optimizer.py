"""Strategy optimizer — scores exposure strategies and plans reallocations.

The optimizer holds no allocation state. Its only memory is a bounded
per-strategy history of execution outcomes, which feeds the reliability
score and the consecutive-failure emergency check.
"""
from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from dataclasses import replace

from ..config import OptimizerConfig
from ..interfaces.exposure_strategy import ExposureStrategy
from ..models import (
    BPS,
    EmergencyState,
    OptimizationResult,
    PerformanceRecord,
    RebalanceInstruction,
    StrategyScore,
)
from ..strategies.base import Clock, system_clock
from . import scoring

logger = logging.getLogger(__name__)


class StrategyOptimizer:
    """Five-factor scoring and greedy surplus-to-deficit rebalance planning."""

    def __init__(self, config: OptimizerConfig | None = None, clock: Clock | None = None) -> None:
        self._config = config or OptimizerConfig()
        if self._config.total_weight != 100:
            raise ValueError(
                f"optimizer weights must sum to 100, got {self._config.total_weight}"
            )
        self._clock = clock or system_clock
        self._history: dict[str, deque[PerformanceRecord]] = {}

    @property
    def config(self) -> OptimizerConfig:
        return self._config

    @property
    def _weights(self) -> tuple[int, ...]:
        c = self._config
        return (
            c.cost_weight,
            c.risk_weight,
            c.liquidity_weight,
            c.reliability_weight,
            c.capacity_weight,
        )

    # ------------------------------------------------------------------
    # Performance history
    # ------------------------------------------------------------------

    def record_performance(self, strategy_id: str, success: bool, cost_bps: int = 0) -> None:
        history = self._history.setdefault(
            strategy_id, deque(maxlen=self._config.performance_history_size)
        )
        history.append(PerformanceRecord(self._clock(), success, cost_bps))

    def get_performance(self, strategy_id: str) -> list[PerformanceRecord]:
        return list(self._history.get(strategy_id, ()))

    def consecutive_failures(self, strategy_id: str) -> int:
        count = 0
        for record in reversed(self._history.get(strategy_id, ())):
            if record.success:
                break
            count += 1
        return count

    def _reliability(self, strategy_id: str) -> int:
        history = self._history.get(strategy_id, ())
        return scoring.reliability_score(sum(1 for r in history if r.success), len(history))

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _score(
        self, strategy: ExposureStrategy, target_exposure: int, time_horizon: int
    ) -> StrategyScore:
        strategy_id = strategy.strategy_id
        try:
            info = strategy.get_exposure_info()
            cost = strategy.estimate_exposure_cost(target_exposure, time_horizon)
            can_handle = strategy.can_handle_exposure(target_exposure)
        except Exception as e:
            logger.warning("Cannot score %s: %s", strategy_id, e)
            return StrategyScore(
                strategy_id=strategy_id,
                strategy_type=getattr(strategy, "strategy_type", None),
                cost_score=0,
                risk_score=0,
                liquidity_score=0,
                reliability_score=0,
                capacity_score=0,
                total_score=0,
                estimated_cost_bps=None,
                recommended=False,
                error=str(e),
            )

        subs = (
            scoring.cost_score(cost, self._config.emergency_cost_bps),
            scoring.risk_score(info.risk_score),
            scoring.liquidity_score(info.strategy_type, info.collateral_ratio),
            self._reliability(strategy_id),
            scoring.capacity_score(info.max_capacity - info.current_exposure, target_exposure),
        )
        total = scoring.weighted_total(subs, self._weights)
        recommended = can_handle and cost is not None and total >= self._config.min_score
        logger.debug(
            "%s scored %d (cost=%d risk=%d liquidity=%d reliability=%d capacity=%d)%s",
            strategy_id, total, *subs, "" if recommended else " not recommended",
        )
        return StrategyScore(
            strategy_id=strategy_id,
            strategy_type=info.strategy_type,
            cost_score=subs[0],
            risk_score=subs[1],
            liquidity_score=subs[2],
            reliability_score=subs[3],
            capacity_score=subs[4],
            total_score=total,
            estimated_cost_bps=cost,
            recommended=recommended,
        )

    def analyze_strategies(
        self,
        strategies: Sequence[ExposureStrategy],
        target_exposure: int,
        time_horizon: int | None = None,
    ) -> list[StrategyScore]:
        """Score every strategy; allocations among recommended ones sum to 10000 bps."""
        horizon = self._config.time_horizon if time_horizon is None else time_horizon
        scores = [self._score(s, target_exposure, horizon) for s in strategies]

        weights = {s.strategy_id: s.total_score for s in scores if s.recommended}
        allocations = scoring.proportional_bps(weights) if weights else {}
        return [replace(s, allocation_bps=allocations.get(s.strategy_id, 0)) for s in scores]

    # ------------------------------------------------------------------
    # Rebalance planning
    # ------------------------------------------------------------------

    def should_rebalance(self, expected_saving: int, implementation_cost: int) -> bool:
        return (
            expected_saving >= self._config.min_cost_saving_bps
            and expected_saving > implementation_cost
        )

    def _weighted_cost(self, amounts: dict[str, int], costs: dict[str, int]) -> int:
        total = sum(amounts.values())
        if total <= 0:
            return 0
        return sum(amount * costs[sid] for sid, amount in amounts.items()) // total

    def _plan_instructions(
        self, current: dict[str, int], targets: dict[str, int]
    ) -> list[RebalanceInstruction]:
        surplus = sorted(
            ((sid, current.get(sid, 0) - targets.get(sid, 0)) for sid in current),
            key=lambda item: item[1],
            reverse=True,
        )
        deficit = sorted(
            ((sid, targets[sid] - current.get(sid, 0)) for sid in targets),
            key=lambda item: item[1],
            reverse=True,
        )
        sources = [[sid, amt] for sid, amt in surplus if amt > 0]
        sinks = [[sid, amt] for sid, amt in deficit if amt > 0]

        moves: list[tuple[str, str, int]] = []
        i = j = 0
        while i < len(sources) and j < len(sinks):
            amount = min(sources[i][1], sinks[j][1])
            moves.append((sources[i][0], sinks[j][0], amount))
            sources[i][1] -= amount
            sinks[j][1] -= amount
            if sources[i][1] == 0:
                i += 1
            if sinks[j][1] == 0:
                j += 1

        moves.sort(key=lambda m: m[2], reverse=True)
        return [
            RebalanceInstruction(
                from_strategy=src,
                to_strategy=dst,
                amount=amount,
                priority=rank,
                max_slippage=self._config.max_slippage_bps,
            )
            for rank, (src, dst, amount) in enumerate(moves, start=1)
        ]

    def calculate_optimal_allocation(
        self,
        strategies: Sequence[ExposureStrategy],
        current_allocations: dict[str, int],
        target_exposure: int,
        time_horizon: int | None = None,
    ) -> OptimizationResult:
        """Plan moves from ``current_allocations`` (capital per strategy) to the optimum.

        Savings and implementation cost are both in bps of ``target_exposure``.
        Strategies without a cost estimate are charged the emergency ceiling.
        """
        scores = self.analyze_strategies(strategies, target_exposure, time_horizon)
        optimum = {s.strategy_id: s.allocation_bps for s in scores if s.allocation_bps > 0}
        if not optimum:
            logger.warning("No strategy recommended for %d, keeping current allocation", target_exposure)
            return OptimizationResult(
                scores=tuple(scores),
                allocations={},
                instructions=(),
                expected_cost_saving=0,
                implementation_cost=0,
                should_rebalance=False,
            )

        capital = sum(current_allocations.values()) or target_exposure
        targets = {sid: capital * bps // BPS for sid, bps in optimum.items()}
        top = max(optimum, key=lambda sid: optimum[sid])
        targets[top] += capital - sum(targets.values())

        ceiling = self._config.emergency_cost_bps
        costs = {
            s.strategy_id: ceiling if s.estimated_cost_bps is None else s.estimated_cost_bps
            for s in scores
        }
        for sid in current_allocations:
            costs.setdefault(sid, ceiling)
        saving = max(
            self._weighted_cost(current_allocations, costs) - self._weighted_cost(targets, costs), 0
        )

        instructions = self._plan_instructions(current_allocations, targets)
        moved = sum(i.amount for i in instructions)
        implementation = len(instructions) * self._config.gas_cost_per_instruction_bps
        if capital > 0:
            implementation += moved * self._config.slippage_estimate_bps // capital

        should = bool(instructions) and self.should_rebalance(saving, implementation)
        logger.info(
            "Optimization: %d instructions, saving %d bps vs cost %d bps, rebalance=%s",
            len(instructions), saving, implementation, should,
        )
        return OptimizationResult(
            scores=tuple(scores),
            allocations=optimum,
            instructions=tuple(instructions),
            expected_cost_saving=saving,
            implementation_cost=implementation,
            should_rebalance=should,
        )

    # ------------------------------------------------------------------
    # Emergency detection
    # ------------------------------------------------------------------

    def check_emergency_states(self, strategies: Sequence[ExposureStrategy]) -> list[EmergencyState]:
        """Flag strategies past emergency thresholds; independent of scoring."""
        c = self._config
        states: list[EmergencyState] = []
        for strategy in strategies:
            sid = strategy.strategy_id
            try:
                info = strategy.get_exposure_info()
                cost = strategy.get_cost_breakdown().total_cost_bps
            except Exception as e:
                logger.error("Strategy %s is unreadable: %s", sid, e)
                states.append(EmergencyState(sid, "unreadable"))
                continue

            if cost > c.emergency_cost_bps:
                states.append(EmergencyState(sid, "cost_exceeded", cost, c.emergency_cost_bps))
            if info.risk_score > c.emergency_risk_score:
                states.append(
                    EmergencyState(sid, "risk_exceeded", info.risk_score, c.emergency_risk_score)
                )
            failures = self.consecutive_failures(sid)
            if failures >= c.max_consecutive_failures:
                states.append(
                    EmergencyState(sid, "consecutive_failures", failures, c.max_consecutive_failures)
                )

        for state in states:
            logger.warning(
                "Emergency state on %s: %s (%d vs %d)",
                state.strategy_id, state.reason, state.value, state.threshold,
            )
        return states
