"""Pure 0-100 sub-scores used by the strategy optimizer."""
from __future__ import annotations

from ..models import BPS, StrategyType
from ..strategies.calc import clamp

MAX_SCORE = 100
NEUTRAL_RELIABILITY = 75

# Exit friction by instrument: spot trades instantly, swaps unwind in whole contracts.
LIQUIDITY_BY_TYPE: dict[StrategyType, int] = {
    StrategyType.DIRECT_TOKEN: 90,
    StrategyType.PERPETUAL: 80,
    StrategyType.TRS: 60,
    StrategyType.SYNTHETIC_TOKEN: 50,
    StrategyType.OPTIONS: 40,
}


def cost_score(cost_bps: int | None, ceiling_bps: int) -> int:
    """Linear from 100 at zero cost to 0 at ``ceiling_bps``; 0 when cost is unknown."""
    if cost_bps is None or ceiling_bps <= 0:
        return 0
    return clamp(MAX_SCORE - cost_bps * MAX_SCORE // ceiling_bps, 0, MAX_SCORE)


def risk_score(strategy_risk: int) -> int:
    """Invert a strategy's 0-100 risk reading so that safer scores higher."""
    return clamp(MAX_SCORE - strategy_risk, 0, MAX_SCORE)


def liquidity_score(strategy_type: StrategyType, collateral_ratio: int) -> int:
    base = LIQUIDITY_BY_TYPE.get(strategy_type, 50)
    # Thinly collateralised books are harder to unwind cleanly.
    if 0 < collateral_ratio < BPS // 4:
        base -= 10
    return clamp(base, 0, MAX_SCORE)


def reliability_score(successes: int, total: int) -> int:
    if total == 0:
        return NEUTRAL_RELIABILITY
    return successes * MAX_SCORE // total


def capacity_score(headroom: int, target_exposure: int) -> int:
    """Full marks once headroom covers twice the target."""
    if target_exposure <= 0:
        return MAX_SCORE
    if headroom <= 0:
        return 0
    return clamp(headroom * MAX_SCORE // (2 * target_exposure), 0, MAX_SCORE)


def weighted_total(scores: tuple[int, ...], weights: tuple[int, ...]) -> int:
    total_weight = sum(weights)
    if total_weight <= 0:
        return 0
    return sum(s * w for s, w in zip(scores, weights)) // total_weight


def proportional_bps(weights: dict[str, int]) -> dict[str, int]:
    """Split 10000 bps by ``weights``; rounding dust goes to the heaviest key.

    Keys with a non-positive weight receive 0. An all-zero input yields zeros.
    """
    total = sum(w for w in weights.values() if w > 0)
    if total == 0:
        return {key: 0 for key in weights}
    result = {key: (w * BPS // total if w > 0 else 0) for key, w in weights.items()}
    heaviest = max(weights, key=lambda k: weights[k])
    result[heaviest] += BPS - sum(result.values())
    return result
