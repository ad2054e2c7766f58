"""Pure fixed-point helpers shared by the exposure strategies; no I/O."""
from __future__ import annotations

from collections.abc import Iterable, Sequence

from ..models import BPS, LEVERAGE_UNIT, YEAR

MIN_LEVERAGE_CHANGE = 25
CONCENTRATION_PENALTY_THRESHOLD = 2_000
CREDIT_RATING_WEIGHT = 1_000


def leverage_of(notional: int, collateral: int) -> int:
    """Leverage in hundredths (``100`` is 1x); 0 when nothing is posted."""
    if collateral <= 0:
        return 0
    return notional * LEVERAGE_UNIT // collateral


def collateral_ratio(collateral: int, notional: int) -> int:
    """Collateral over notional, in bps."""
    if notional <= 0:
        return 0
    return collateral * BPS // notional


def concentration_bps(part: int, total: int) -> int:
    if total <= 0:
        return 0
    return part * BPS // total


def proportional(amount: int, part: int, total: int) -> int:
    """``amount * part / total`` rounded down; 0 for an empty total."""
    if total <= 0:
        return 0
    return amount * part // total


def annualize_bps(rate_bps: int, time_horizon: int) -> int:
    """Scale an annual rate in bps to the given horizon in seconds."""
    return rate_bps * time_horizon // YEAR


def apply_slippage(amount: int, slippage_bps: int) -> int:
    """Minimum acceptable output for a trade quoted at ``amount``."""
    return amount * (BPS - slippage_bps) // BPS


def split_by_allocations(amount: int, allocations: Sequence[int]) -> list[int]:
    """Split ``amount`` by bps weights; the unallocated rest is not returned."""
    return [amount * alloc // BPS for alloc in allocations]


def average(values: Iterable[int]) -> int:
    """Integer mean truncated toward zero; 0 for no values."""
    items = list(values)
    if not items:
        return 0
    return int(sum(items) / len(items))


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


def liquidation_price(price: int, leverage: int, liquidation_buffer: int) -> int:
    """Price at which a long loses all collateral above the liquidation buffer.

    drop = price * (1 / leverage) * (1 - buffer)
    """
    if price <= 0 or leverage <= 0:
        return 0
    drop = price * LEVERAGE_UNIT * (BPS - liquidation_buffer) // (leverage * BPS)
    return max(price - drop, 0)


def risk_score(leverage: int, max_leverage: int, concentration: int = 0) -> int:
    """0-100 risk score: up to 60 points from leverage use, 40 from concentration."""
    if max_leverage <= 0:
        return 100
    leverage_part = min(leverage * 60 // max_leverage, 60)
    concentration_part = min(concentration * 40 // BPS, 40)
    return clamp(leverage_part + concentration_part, 0, 100)


def optimal_leverage(
    average_funding_rate: int,
    base_leverage: int,
    funding_threshold: int,
    adjustment_factor: int,
    min_leverage: int,
    max_leverage: int,
) -> int:
    """Lower leverage when carrying longs gets expensive, raise it when it pays.

    Above ``+threshold`` the base is cut by ``adjustment_factor`` bps, below
    ``-threshold`` it is raised by the same factor; the result is clamped.
    """
    target = base_leverage
    if average_funding_rate > funding_threshold:
        target = base_leverage * (BPS - adjustment_factor) // BPS
    elif average_funding_rate < -funding_threshold:
        target = base_leverage * (BPS + adjustment_factor) // BPS
    return clamp(target, min_leverage, max_leverage)


def quote_score(credit_rating: int, borrow_rate_bps: int, concentration: int) -> int:
    """Rank a TRS quote; concentration above 20% is charged in full as a penalty."""
    score = credit_rating * CREDIT_RATING_WEIGHT - borrow_rate_bps
    if concentration > CONCENTRATION_PENALTY_THRESHOLD:
        score -= concentration
    return score
